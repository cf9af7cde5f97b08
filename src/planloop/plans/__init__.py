"""Plans module - plan files, readiness and task completion."""

from .models import Plan, PlanStatus, Priority, Step, Task
from .readiness import ReadyFilter, filter_and_sort, is_ready, sort_ready_plans
from .state import (
	ActionableStep,
	ActionableTask,
	CompletionResult,
	TaskIndexError,
	TaskStateMachine,
	find_next_actionable_item,
)
from .store import LoadResult, PlanNotFoundError, PlanStore, PlanValidationError

__all__ = [
	"Plan",
	"PlanStatus",
	"Priority",
	"Step",
	"Task",
	"PlanStore",
	"LoadResult",
	"PlanNotFoundError",
	"PlanValidationError",
	"ReadyFilter",
	"filter_and_sort",
	"is_ready",
	"sort_ready_plans",
	"ActionableStep",
	"ActionableTask",
	"CompletionResult",
	"TaskIndexError",
	"TaskStateMachine",
	"find_next_actionable_item",
]
