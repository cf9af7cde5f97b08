"""Executors module - pluggable agent backends."""

from typing import Optional

from ..config import Config
from .base import (
	ExecutionContext,
	ExecutionMode,
	ExecutionResult,
	Executor,
	ExecutorCapabilities,
	ExecutorError,
	ExecutorTimeoutError,
	PromptRequiredError,
	parse_completed_tasks,
)
from .claude_code import ClaudeCodeExecutor
from .codex_cli import CodexCliExecutor

EXECUTORS: dict[str, type[Executor]] = {
	ClaudeCodeExecutor.name: ClaudeCodeExecutor,
	CodexCliExecutor.name: CodexCliExecutor,
}

BOTH = "both"


def build_executor(name: Optional[str], config: Optional[Config] = None) -> Executor:
	"""
	Instantiate an executor by name, defaulting to config.default_executor.

	Raises:
		ExecutorError: Unknown executor name
	"""
	name = name or (config.default_executor if config else ClaudeCodeExecutor.name)
	executor_cls = EXECUTORS.get(name)
	if executor_cls is None:
		raise ExecutorError(f"Unknown executor '{name}' (expected one of {', '.join(EXECUTORS)})")
	return executor_cls()


def resolve_review_executors(selection: Optional[str], config: Optional[Config] = None) -> list[Executor]:
	"""Executors for a review pass; 'both' runs claude-code and codex-cli together."""
	selection = selection or (config.review_executor if config else ClaudeCodeExecutor.name)
	if selection == BOTH:
		return [ClaudeCodeExecutor(), CodexCliExecutor()]
	return [build_executor(selection, config)]


__all__ = [
	"BOTH",
	"EXECUTORS",
	"ClaudeCodeExecutor",
	"CodexCliExecutor",
	"ExecutionContext",
	"ExecutionMode",
	"ExecutionResult",
	"Executor",
	"ExecutorCapabilities",
	"ExecutorError",
	"ExecutorTimeoutError",
	"PromptRequiredError",
	"build_executor",
	"parse_completed_tasks",
	"resolve_review_executors",
]
