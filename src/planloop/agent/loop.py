"""
Agent Loop - drive one plan to completion through an executor.

Serial mode runs one actionable step or task per iteration. Batch mode
offers every incomplete task each round and applies whatever the executor
reports done; two rounds in a row without progress abort the run.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import Config
from ..errors import PlanloopError
from ..executors.base import ExecutionContext, ExecutionMode, ExecutionResult, Executor, ExecutorError
from ..plans.models import Plan
from ..plans.state import (
	ActionableStep,
	TaskStateMachine,
	find_next_actionable_item,
	get_all_incomplete_tasks,
)
from ..plans.store import PlanStore
from ..workspace.commands import run_command_sequence
from .prompts import build_batch_prompt, build_step_prompt, build_task_prompt

logger = logging.getLogger(__name__)

MAX_NO_PROGRESS_ROUNDS = 2


class BatchNoProgressError(PlanloopError):
	"""Raised when consecutive batch rounds complete no tasks."""

	def __init__(self, plan_id: int, rounds: int):
		self.plan_id = plan_id
		self.rounds = rounds
		super().__init__(f"Plan {plan_id}: {rounds} consecutive batch rounds completed no tasks; aborting")


@dataclass
class AgentRunSummary:
	"""What a run accomplished."""
	plan_id: int
	batch: bool
	iterations: int = 0
	items_completed: int = 0
	plan_complete: bool = False
	stopped_reason: Optional[str] = None


class AgentLoop:
	"""
	Reads the plan, dispatches the next piece of work, records the result.

	Usage:
		loop = AgentLoop(store, TaskStateMachine(store), build_executor("claude-code"), config, workspace)
		summary = await loop.run(12)
	"""

	def __init__(
		self,
		store: PlanStore,
		state_machine: TaskStateMachine,
		executor: Executor,
		config: Config,
		workspace_path: Optional[Path] = None,
	):
		self.store = store
		self.state_machine = state_machine
		self.executor = executor
		self.config = config
		self.workspace_path = workspace_path
		self._current: Optional[asyncio.Future] = None

	def cancel(self) -> None:
		"""Cancel the in-flight executor call; run() then raises CancelledError."""
		if self._current is not None and not self._current.done():
			logger.info("Cancelling running executor")
			self._current.cancel()

	def _reload(self, plan_id: int) -> Plan:
		self.store.invalidate()
		return self.store.load(plan_id)

	def _context(self, plan: Plan, batch_mode: bool) -> ExecutionContext:
		return ExecutionContext(
			plan_id=plan.id,
			plan_title=plan.display_title,
			plan_file=Path(plan.filename) if plan.filename else None,
			workspace_path=self.workspace_path,
			mode=ExecutionMode.NORMAL,
			batch_mode=batch_mode,
			inactivity_timeout=self.config.inactivity_timeout,
		)

	async def _execute(self, prompt: str, context: ExecutionContext) -> ExecutionResult:
		self._current = asyncio.ensure_future(self.executor.execute(prompt, context))
		try:
			result = await self._current
		finally:
			self._current = None
		if not result.success:
			raise ExecutorError(
				f"{self.executor.name} failed on plan {context.plan_id}: {result.error or 'no details'}",
				executor=self.executor.name,
				exit_code=result.exit_code,
			)
		return result

	async def _post_apply(self, plan_id: int) -> bool:
		commands = self.config.post_apply_commands
		if not commands:
			return True
		root = self.workspace_path or self.config.repo_root or Path.cwd()
		return await run_command_sequence(commands, Path(root), {"PLANLOOP_PLAN_ID": str(plan_id)})

	async def run(self, plan_id: int, batch: Optional[bool] = None, max_iterations: Optional[int] = None) -> AgentRunSummary:
		"""
		Work on a plan until it is complete or the loop has to stop.

		Args:
			plan_id: Plan to drive
			batch: Force batch (True) or serial (False); None uses batch when the executor supports it
			max_iterations: Stop after this many executor calls

		Returns:
			AgentRunSummary

		Raises:
			ExecutorError: The executor failed
			BatchNoProgressError: Batch rounds stopped making progress
			TaskIndexError: The executor reported task indices that do not exist
		"""
		supports_batch = self.executor.capabilities.supports_batch
		use_batch = supports_batch if batch is None else batch
		if use_batch and not supports_batch:
			logger.warning(f"{self.executor.name} does not support batch mode; running serially")
			use_batch = False

		plan = self._reload(plan_id)
		if find_next_actionable_item(plan) is None:
			logger.info(f"Plan {plan_id} has nothing left to do")
			return AgentRunSummary(plan_id=plan_id, batch=use_batch, plan_complete=True)

		self.state_machine.start_plan(plan_id)
		summary = AgentRunSummary(plan_id=plan_id, batch=use_batch)
		if use_batch:
			await self._run_batch(summary, max_iterations)
		else:
			await self._run_serial(summary, max_iterations)

		logger.info(
			f"Plan {plan_id}: {summary.items_completed} item(s) completed in {summary.iterations} iteration(s)"
			+ (f", stopped: {summary.stopped_reason}" if summary.stopped_reason else "")
		)
		return summary

	async def _run_serial(self, summary: AgentRunSummary, max_iterations: Optional[int]) -> None:
		plan_id = summary.plan_id
		while max_iterations is None or summary.iterations < max_iterations:
			plan = self._reload(plan_id)
			item = find_next_actionable_item(plan)
			if item is None:
				summary.plan_complete = True
				return

			if isinstance(item, ActionableStep):
				prompt = build_step_prompt(plan, item.task_index, item.step_index)
			else:
				prompt = build_task_prompt(plan, item.task_index)

			logger.info(f"Plan {plan_id}: running {item.kind} {item}")
			await self._execute(prompt, self._context(plan, batch_mode=False))
			summary.iterations += 1

			if isinstance(item, ActionableStep):
				completion = self.state_machine.mark_step_done(plan_id, item.task_index, item.step_index)
			else:
				completion = self.state_machine.mark_task_done(plan_id, item.task_index)
			summary.items_completed += 1

			if not await self._post_apply(plan_id):
				summary.stopped_reason = "post-apply command failed"
				return
			if completion.plan_complete:
				summary.plan_complete = True
				return

		summary.stopped_reason = f"reached max iterations ({max_iterations})"

	async def _run_batch(self, summary: AgentRunSummary, max_iterations: Optional[int]) -> None:
		plan_id = summary.plan_id
		no_progress_rounds = 0
		while max_iterations is None or summary.iterations < max_iterations:
			plan = self._reload(plan_id)
			incomplete = get_all_incomplete_tasks(plan)
			if not incomplete:
				summary.plan_complete = True
				return

			logger.info(f"Plan {plan_id}: batch round {summary.iterations + 1} with {len(incomplete)} open task(s)")
			result = await self._execute(build_batch_prompt(plan, incomplete), self._context(plan, batch_mode=True))
			summary.iterations += 1

			# The executor may also have edited the plan file; re-read before applying
			self.store.invalidate()
			completion = self.state_machine.apply_batch_completion(plan_id, result.completed_task_indices)
			remaining = len(get_all_incomplete_tasks(completion.plan))
			progress = len(incomplete) - remaining
			summary.items_completed += max(progress, 0)

			if progress > 0:
				no_progress_rounds = 0
			else:
				no_progress_rounds += 1
				logger.warning(f"Plan {plan_id}: batch round made no progress ({no_progress_rounds} in a row)")
				if no_progress_rounds >= MAX_NO_PROGRESS_ROUNDS:
					raise BatchNoProgressError(plan_id, no_progress_rounds)

			if not await self._post_apply(plan_id):
				summary.stopped_reason = "post-apply command failed"
				return
			if completion.plan_complete:
				summary.plan_complete = True
				return

		summary.stopped_reason = f"reached max iterations ({max_iterations})"
