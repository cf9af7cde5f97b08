"""planloop - drive coding agents through a graph of plans."""

__version__ = "0.4.0"
