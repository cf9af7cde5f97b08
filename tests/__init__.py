"""planloop test suite."""
