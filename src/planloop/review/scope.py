"""Review scoping - restrict a review to selected tasks of a plan."""

from dataclasses import dataclass, field

from ..errors import PlanloopError
from ..plans.models import Plan, Task


class TaskScopeError(PlanloopError):
	"""Raised when requested task indexes or titles match nothing."""

	def __init__(self, unknown_indexes: list[int], unknown_titles: list[str], task_count: int):
		self.unknown_indexes = unknown_indexes
		self.unknown_titles = unknown_titles
		parts = []
		if unknown_indexes:
			parts.append(
				f"task index(es) {', '.join(str(i) for i in unknown_indexes)} out of range "
				f"(plan has {task_count} tasks, indexes start at 0)"
			)
		if unknown_titles:
			parts.append(f"no task titled {', '.join(repr(t) for t in unknown_titles)}")
		super().__init__("; ".join(parts))


@dataclass
class TaskFilter:
	"""Zero-based indexes and case-insensitive exact titles."""
	indexes: list[int] = field(default_factory=list)
	titles: list[str] = field(default_factory=list)

	@property
	def is_empty(self) -> bool:
		return not self.indexes and not self.titles


@dataclass
class ReviewScope:
	"""Tasks a review covers, in plan order."""
	tasks: list[tuple[int, Task]]
	is_scoped: bool
	remaining: list[tuple[int, Task]] = field(default_factory=list)


def resolve_task_scope(plan: Plan, task_filter: TaskFilter | None = None) -> ReviewScope:
	"""
	Select the tasks matching a filter.

	The result is the union of index and title matches in original plan
	order. Every unmatched index and title is reported before anything runs.

	Raises:
		TaskScopeError: If any index or title matches no task
	"""
	all_tasks = list(enumerate(plan.tasks))
	if task_filter is None or task_filter.is_empty:
		return ReviewScope(tasks=all_tasks, is_scoped=False)

	count = len(plan.tasks)
	unknown_indexes = [i for i in task_filter.indexes if not 0 <= i < count]
	selected = {i for i in task_filter.indexes if 0 <= i < count}

	unknown_titles = []
	for title in task_filter.titles:
		wanted = title.strip().lower()
		matches = {i for i, task in all_tasks if task.title.strip().lower() == wanted}
		if not matches:
			unknown_titles.append(title)
		selected |= matches

	if unknown_indexes or unknown_titles:
		raise TaskScopeError(unknown_indexes, unknown_titles, count)

	return ReviewScope(
		tasks=[(i, task) for i, task in all_tasks if i in selected],
		is_scoped=True,
		remaining=[(i, task) for i, task in all_tasks if i not in selected],
	)
