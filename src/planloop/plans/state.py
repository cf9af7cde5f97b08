"""
Task State Machine - step/task completion inside a plan.

find_next_actionable_item doubles as the completion predicate: when it
returns None the plan is complete, which marks the plan done and cascades
upward through epic parents.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from ..errors import PlanloopError
from .models import Plan, PlanStatus, Task
from .store import PlanStore

logger = logging.getLogger(__name__)

FINISHED_STATUSES = (PlanStatus.DONE, PlanStatus.CANCELLED)


class TaskIndexError(PlanloopError):
	"""Raised for task or step indices outside a plan's task list."""
	pass


class TaskMatchError(PlanloopError):
	"""Raised when a task title matches nothing or more than one task."""
	pass


@dataclass(frozen=True)
class ActionableStep:
	"""The next unfinished step of a task."""
	task_index: int
	step_index: int
	kind: str = "step"


@dataclass(frozen=True)
class ActionableTask:
	"""A task without steps that is not yet done."""
	task_index: int
	kind: str = "task"


ActionableItem = Union[ActionableStep, ActionableTask]


@dataclass
class CompletionResult:
	"""Outcome of a completion call."""
	plan: Plan
	plan_complete: bool
	message: str
	parents_completed: list[int] = field(default_factory=list)
	newly_completed: list[int] = field(default_factory=list)


def find_next_actionable_item(plan: Plan) -> Optional[ActionableItem]:
	"""
	Return the first unfinished step or step-less task, scanning tasks in order.

	None means every task is done.
	"""
	for task_index, task in enumerate(plan.tasks):
		if task.is_complete:
			continue
		if task.steps:
			for step_index, step in enumerate(task.steps):
				if not step.done:
					return ActionableStep(task_index=task_index, step_index=step_index)
		return ActionableTask(task_index=task_index)
	return None


def get_all_incomplete_tasks(plan: Plan) -> list[tuple[int, Task]]:
	"""(index, task) pairs for every task not yet complete."""
	return [(i, task) for i, task in enumerate(plan.tasks) if not task.is_complete]


def _complete_task(task: Task) -> None:
	task.done = True
	for step in task.steps:
		step.done = True


class TaskStateMachine:
	"""
	Records completion against plans held in a PlanStore.

	Usage:
		machine = TaskStateMachine(store)
		result = machine.mark_task_done(1, 0)
		if result.plan_complete:
			print(result.message)
	"""

	def __init__(self, store: PlanStore):
		self.store = store

	def _task(self, plan: Plan, task_index: int) -> Task:
		if not 0 <= task_index < len(plan.tasks):
			raise TaskIndexError(
				f"Task index {task_index} out of range for plan {plan.id} "
				f"({len(plan.tasks)} tasks)"
			)
		return plan.tasks[task_index]

	def mark_step_done(self, plan_id: int, task_index: int, step_index: int) -> CompletionResult:
		"""
		Mark one step done and cascade completion.

		Raises:
			PlanNotFoundError: Unknown plan
			TaskIndexError: Task or step index out of range
		"""
		plan = self.store.load(plan_id)
		task = self._task(plan, task_index)
		if not 0 <= step_index < len(task.steps):
			raise TaskIndexError(
				f"Step index {step_index} out of range for task {task_index} of plan {plan.id} "
				f"({len(task.steps)} steps)"
			)

		task.steps[step_index].done = True
		newly = []
		if all(step.done for step in task.steps) and not task.done:
			task.done = True
			newly.append(task_index)
		logger.info(f"Plan {plan.id}: step {step_index + 1} of task {task_index + 1} done")
		return self._finish(plan, f"Marked step {step_index + 1} of task '{task.title}' done", newly)

	def mark_task_done(self, plan_id: int, task_index: int) -> CompletionResult:
		"""
		Mark a task (and any of its steps) done and cascade completion.

		Raises:
			PlanNotFoundError: Unknown plan
			TaskIndexError: Index out of range
		"""
		plan = self.store.load(plan_id)
		task = self._task(plan, task_index)
		newly = [] if task.is_complete else [task_index]
		_complete_task(task)
		logger.info(f"Plan {plan.id}: task {task_index + 1} done")
		return self._finish(plan, f"Marked task '{task.title}' done", newly)

	def find_task_index(self, plan: Plan, title: str) -> int:
		"""
		Resolve a task title: exact match first, then a unique prefix.

		Raises:
			TaskMatchError: No match, or an ambiguous prefix
		"""
		wanted = title.strip()
		for i, task in enumerate(plan.tasks):
			if task.title == wanted:
				return i
		lowered = wanted.lower()
		for i, task in enumerate(plan.tasks):
			if task.title.lower() == lowered:
				return i

		prefixed = [i for i, task in enumerate(plan.tasks) if task.title.lower().startswith(lowered)]
		if len(prefixed) == 1:
			return prefixed[0]
		if not prefixed:
			raise TaskMatchError(f"No task titled '{title}' in plan {plan.id}")
		names = ", ".join(f"'{plan.tasks[i].title}'" for i in prefixed)
		raise TaskMatchError(f"Task title '{title}' is ambiguous in plan {plan.id}: {names}")

	def set_task_done(self, plan_id: int, title_or_index: Union[int, str]) -> CompletionResult:
		"""Mark a task done by index or by title."""
		if isinstance(title_or_index, int):
			return self.mark_task_done(plan_id, title_or_index)
		plan = self.store.load(plan_id)
		return self.mark_task_done(plan_id, self.find_task_index(plan, title_or_index))

	def apply_batch_completion(self, plan_id: int, done_task_indices: list[int]) -> CompletionResult:
		"""
		Apply the task indices an executor reported done in one batch round.

		Every index is validated before anything is written.

		Raises:
			TaskIndexError: If any index is not an integer in range
		"""
		plan = self.store.load(plan_id)
		invalid = [
			idx for idx in done_task_indices
			if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < len(plan.tasks)
		]
		if invalid:
			raise TaskIndexError(
				f"Invalid task indices for plan {plan.id} ({len(plan.tasks)} tasks): "
				f"{', '.join(str(i) for i in invalid)}"
			)

		newly = []
		for idx in dict.fromkeys(done_task_indices):
			task = plan.tasks[idx]
			if not task.is_complete:
				newly.append(idx)
			_complete_task(task)

		logger.info(f"Plan {plan.id}: batch completed {len(newly)} new task(s)")
		return self._finish(plan, f"Marked {len(newly)} task(s) done", newly)

	def start_plan(self, plan_id: int) -> CompletionResult:
		"""Move a pending plan, and pending epic ancestors, to in_progress."""
		plan = self.store.load(plan_id)
		if plan.status == PlanStatus.PENDING:
			plan.status = PlanStatus.IN_PROGRESS
			self.store.save(plan)

		visited = {plan.id}
		parent_id = plan.parent
		while parent_id is not None and parent_id not in visited:
			visited.add(parent_id)
			parent = self.store.all_plans().get(parent_id)
			if parent is None:
				break
			if parent.epic and parent.status == PlanStatus.PENDING:
				parent.status = PlanStatus.IN_PROGRESS
				self.store.save(parent)
			parent_id = parent.parent

		return CompletionResult(
			plan=plan,
			plan_complete=plan.status == PlanStatus.DONE,
			message=f"Plan {plan.id} is {plan.status.value}",
		)

	def check_and_mark_parent_done(self, parent_id: Optional[int], visited: Optional[set[int]] = None) -> list[int]:
		"""
		Mark an epic parent done once all of its children are finished, recursing upward.

		Returns:
			Ids of plans marked done, nearest first
		"""
		visited = visited if visited is not None else set()
		completed: list[int] = []
		while parent_id is not None and parent_id not in visited:
			visited.add(parent_id)
			parent = self.store.all_plans().get(parent_id)
			if parent is None or not parent.epic or parent.status == PlanStatus.DONE:
				break
			children = self.store.children_of(parent_id)
			if not children or any(child.status not in FINISHED_STATUSES for child in children):
				break
			parent.status = PlanStatus.DONE
			self.store.save(parent)
			logger.info(f"Epic {parent.id} done: all {len(children)} children finished")
			completed.append(parent.id)
			parent_id = parent.parent
		return completed

	def _finish(self, plan: Plan, message: str, newly: list[int]) -> CompletionResult:
		parents_completed: list[int] = []
		if find_next_actionable_item(plan) is None:
			plan.status = PlanStatus.DONE
			self.store.save(plan)
			logger.info(f"Plan {plan.id} complete")
			message = f"{message}. Plan {plan.id} is complete."
			parents_completed = self.check_and_mark_parent_done(plan.parent, visited={plan.id})
		else:
			if plan.status == PlanStatus.PENDING:
				plan.status = PlanStatus.IN_PROGRESS
			self.store.save(plan)

		return CompletionResult(
			plan=plan,
			plan_complete=plan.status == PlanStatus.DONE,
			message=message,
			parents_completed=parents_completed,
			newly_completed=newly,
		)
