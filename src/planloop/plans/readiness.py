"""
Readiness Resolver - which plans may execute next.

A plan is ready when it is pending or in progress, has at least one task,
and every dependency resolves to a done plan. Dependencies are checked one
hop deep, so cyclic graphs never recurse; parent chains are walked with a
visited set.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional

from .models import PRIORITY_RANK, Plan, PlanStatus, Priority, parse_timestamp

READY_STATUSES = (PlanStatus.PENDING, PlanStatus.IN_PROGRESS)

SORT_FIELDS = ("priority", "id", "title", "created", "updated")

# Missing timestamps sort after any real one
_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _plans_by_id(all_plans: Mapping[int, Plan] | Iterable[Plan]) -> Mapping[int, Plan]:
	if isinstance(all_plans, Mapping):
		return all_plans
	return {p.id: p for p in all_plans}


def is_ready(
	plan: Plan,
	all_plans: Mapping[int, Plan] | Iterable[Plan],
	pending_only: bool = False,
) -> bool:
	"""
	Check whether a plan can be picked up now.

	Args:
		plan: Candidate plan
		all_plans: Every known plan, keyed by id or as an iterable
		pending_only: Only accept pending plans (not in-progress ones)

	Returns:
		True iff status is eligible, tasks is non-empty and all dependencies are done
	"""
	statuses = (PlanStatus.PENDING,) if pending_only else READY_STATUSES
	if plan.status not in statuses:
		return False
	if not plan.tasks:
		return False

	by_id = _plans_by_id(all_plans)
	for dep_id in plan.dependencies:
		dep = by_id.get(dep_id)
		if dep is None or dep.status != PlanStatus.DONE:
			return False
	return True


def blocking_dependencies(plan: Plan, all_plans: Mapping[int, Plan] | Iterable[Plan]) -> list[int]:
	"""Dependency ids that are missing or not yet done."""
	by_id = _plans_by_id(all_plans)
	return [
		dep_id for dep_id in plan.dependencies
		if dep_id not in by_id or by_id[dep_id].status != PlanStatus.DONE
	]


def ancestor_ids(plan: Plan, all_plans: Mapping[int, Plan] | Iterable[Plan]) -> list[int]:
	"""
	Walk parent links upward, nearest first.

	Stops at a missing parent or at the first id already visited.
	"""
	by_id = _plans_by_id(all_plans)
	visited = {plan.id}
	chain: list[int] = []
	current = plan.parent
	while current is not None and current not in visited:
		visited.add(current)
		chain.append(current)
		parent = by_id.get(current)
		if parent is None:
			break
		current = parent.parent
	return chain


def _created_key(plan: Plan) -> datetime:
	return parse_timestamp(plan.created_at) or _FAR_FUTURE


def _updated_key(plan: Plan) -> datetime:
	return parse_timestamp(plan.updated_at) or _FAR_FUTURE


def _sort_key(plan: Plan, sort_by: str) -> tuple:
	tie = (_created_key(plan), plan.id)
	if sort_by == "priority":
		return (-PRIORITY_RANK.get(plan.priority, 0),) + tie
	if sort_by == "id":
		return (plan.id,)
	if sort_by == "title":
		return (plan.display_title.lower(),) + tie
	if sort_by == "created":
		return tie
	if sort_by == "updated":
		return (_updated_key(plan),) + tie
	raise ValueError(f"Unknown sort field: {sort_by} (expected one of {', '.join(SORT_FIELDS)})")


def sort_ready_plans(plans: Iterable[Plan], sort_by: str = "priority", reverse: bool = False) -> list[Plan]:
	"""
	Deterministically order plans.

	The default priority order is priority descending, then created_at
	ascending (oldest first), then id ascending. Other fields sort ascending
	with the same created_at/id tie-breaks.
	"""
	ordered = sorted(plans, key=lambda p: _sort_key(p, sort_by))
	if reverse:
		ordered.reverse()
	return ordered


@dataclass
class ReadyFilter:
	"""Options for filter_and_sort."""
	priorities: list[Priority] = field(default_factory=list)
	tags: list[str] = field(default_factory=list)
	epic_id: Optional[int] = None
	pending_only: bool = False
	limit: Optional[int] = None
	sort_by: str = "priority"
	reverse: bool = False


def filter_and_sort(
	all_plans: Mapping[int, Plan] | Iterable[Plan],
	options: Optional[ReadyFilter] = None,
) -> list[Plan]:
	"""
	Ready plans matching the filter, sorted and limited.

	Tags match if the plan carries any of the requested tags. The epic filter
	matches when the epic id appears anywhere in the plan's parent chain.
	"""
	options = options or ReadyFilter()
	by_id = _plans_by_id(all_plans)
	wanted_tags = {t.strip().lower() for t in options.tags if t.strip()}
	wanted_priorities = {Priority(p) for p in options.priorities}

	matches = []
	for plan in by_id.values():
		if not is_ready(plan, by_id, pending_only=options.pending_only):
			continue
		if wanted_priorities and plan.priority not in wanted_priorities:
			continue
		if wanted_tags and not wanted_tags.intersection(plan.tags):
			continue
		if options.epic_id is not None and options.epic_id not in ancestor_ids(plan, by_id):
			continue
		matches.append(plan)

	ordered = sort_ready_plans(matches, sort_by=options.sort_by, reverse=options.reverse)
	if options.limit is not None and options.limit >= 0:
		ordered = ordered[:options.limit]
	return ordered


def find_next_ready_plan(all_plans: Mapping[int, Plan] | Iterable[Plan]) -> Optional[Plan]:
	"""The plan an agent should pick up next, if any."""
	ready = filter_and_sort(all_plans)
	return ready[0] if ready else None
