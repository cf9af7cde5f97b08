"""Agent module - the loop that drives plans through executors."""

from .loop import AgentLoop, AgentRunSummary, BatchNoProgressError

__all__ = ["AgentLoop", "AgentRunSummary", "BatchNoProgressError"]
