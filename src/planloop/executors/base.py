"""Executor contract - run a prompt inside a workspace and report the result."""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..errors import PlanloopError


class ExecutorError(PlanloopError):
	"""Raised when an executor subprocess cannot run or fails."""

	def __init__(self, message: str, executor: Optional[str] = None, exit_code: Optional[int] = None):
		super().__init__(message)
		self.executor = executor
		self.exit_code = exit_code


class PromptRequiredError(ExecutorError):
	"""Raised by executors that cannot start a session without a prompt."""
	pass


class ExecutorTimeoutError(ExecutorError):
	"""Raised when a session produces no output for longer than the inactivity timeout."""
	pass


class ExecutionMode(str, Enum):
	"""What the session is for."""
	NORMAL = "normal"
	BARE = "bare"
	REVIEW = "review"


@dataclass
class ExecutionContext:
	"""Everything an executor needs besides the prompt."""
	plan_id: Optional[int] = None
	plan_title: str = ""
	plan_file: Optional[Path] = None
	workspace_path: Optional[Path] = None
	mode: ExecutionMode = ExecutionMode.NORMAL
	batch_mode: bool = False
	keep_open: bool = False
	inactivity_timeout: Optional[float] = None
	output_schema: Optional[dict[str, Any]] = None


@dataclass
class ExecutionResult:
	"""Outcome of one executor call."""
	success: bool
	output: str = ""
	structured: Optional[Any] = None
	completed_task_indices: list[int] = field(default_factory=list)
	exit_code: Optional[int] = None
	error: Optional[str] = None


@dataclass(frozen=True)
class ExecutorCapabilities:
	"""What callers may rely on instead of checking executor names."""
	supports_terminal_input: bool = False
	supports_batch: bool = False
	requires_prompt: bool = True
	supports_structured_output: bool = False


class Executor(ABC):
	"""An external agent that turns a prompt into changes or findings."""

	name: str = ""
	capabilities: ExecutorCapabilities = ExecutorCapabilities()

	@abstractmethod
	async def execute(self, prompt: Optional[str], context: ExecutionContext) -> ExecutionResult:
		"""
		Run one session.

		Args:
			prompt: Initial prompt; None starts an empty interactive session where supported
			context: Plan, workspace and mode information

		Returns:
			ExecutionResult

		Raises:
			PromptRequiredError: prompt is None and the executor needs one
			ExecutorTimeoutError: The session went quiet past the inactivity timeout
		"""

	def check_prompt(self, prompt: Optional[str]) -> None:
		"""Fail fast when a prompt is required but missing."""
		if self.capabilities.requires_prompt and not (prompt and prompt.strip()):
			raise PromptRequiredError(f"Executor '{self.name}' requires a prompt", executor=self.name)


_COMPLETED_TASKS_RE = re.compile(r"\{\s*\"completedTasks\"\s*:\s*\[[^\[\]]*\]\s*\}")


def parse_completed_tasks(output: str) -> list[int]:
	"""
	Task indices from the last `{"completedTasks": [...]}` object in batch output.

	Non-integer entries are ignored; an absent or unreadable object yields [].
	"""
	matches = _COMPLETED_TASKS_RE.findall(output or "")
	if not matches:
		return []
	try:
		data = json.loads(matches[-1])
	except json.JSONDecodeError:
		return []
	return [i for i in data.get("completedTasks", []) if isinstance(i, int) and not isinstance(i, bool)]
