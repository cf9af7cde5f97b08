"""Base exception shared by every planloop error."""


class PlanloopError(Exception):
	"""Base class for errors surfaced to the CLI and MCP layers."""
	pass


class NotFoundError(PlanloopError):
	"""Raised when an identifier resolves to nothing."""

	def __init__(self, identifier: str, kind: str = "Item"):
		self.identifier = identifier
		super().__init__(f"{kind} not found: {identifier}")
