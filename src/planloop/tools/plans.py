"""Plan tools and resources for MCP clients."""

import json
from dataclasses import asdict
from typing import Optional

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..errors import PlanloopError
from ..plans.models import Plan, PlanStatus, Priority, Task
from ..plans.readiness import ReadyFilter, blocking_dependencies, filter_and_sort, is_ready
from ..plans.state import TaskStateMachine, find_next_actionable_item
from ..plans.store import PlanStore


def _split(value: str) -> list[str]:
	return [v.strip() for v in value.split(",") if v.strip()]


def _store(config: Config) -> PlanStore:
	# Fresh store per call so edits made outside the server are seen
	return PlanStore(config.resolve_tasks_dir())


def plan_summary(plan: Plan, all_plans: dict[int, Plan]) -> dict:
	"""Compact description used in list results."""
	done, total = plan.progress()
	return {
		"id": plan.id,
		"title": plan.display_title,
		"status": plan.status.value,
		"priority": plan.priority.value if plan.priority else None,
		"tags": plan.tags,
		"parent": plan.parent,
		"epic": plan.epic,
		"tasks_done": done,
		"tasks_total": total,
		"ready": is_ready(plan, all_plans),
	}


def plan_detail(plan: Plan, all_plans: dict[int, Plan]) -> dict:
	"""Full plan plus derived state."""
	item = find_next_actionable_item(plan)
	return {
		"plan": {**plan.to_header(), "details": plan.details},
		"file": plan.filename,
		"ready": is_ready(plan, all_plans),
		"blocked_by": blocking_dependencies(plan, all_plans),
		"next_item": None if item is None else asdict(item),
	}


def register_plan_tools(mcp: FastMCP, config: Config) -> None:
	"""Register plan query and update tools."""

	@mcp.tool()
	async def get_plan(plan: str) -> str:
		"""
		Get a plan by id or file path.

		Args:
			plan: Plan id (e.g. "12") or path to the plan file
		"""
		store = _store(config)
		try:
			found = store.load(plan)
		except PlanloopError as e:
			return json.dumps({"error": str(e)})
		return json.dumps(plan_detail(found, store.all_plans()), indent=2)

	@mcp.tool()
	async def list_ready_plans(
		priority: str = "",
		tags: str = "",
		epic_id: int = 0,
		pending_only: bool = False,
		limit: int = 0,
		sort_by: str = "priority",
	) -> str:
		"""
		List plans that can be worked on now, best candidate first.

		Args:
			priority: Comma-separated priorities to include (urgent, high, medium, low, maybe)
			tags: Comma-separated tags; a plan matches if it has any of them
			epic_id: Only plans under this epic (0 = any)
			pending_only: Exclude plans already in progress
			limit: Maximum number of plans (0 = no limit)
			sort_by: priority, id, title, created or updated
		"""
		store = _store(config)
		all_plans = store.all_plans()
		try:
			options = ReadyFilter(
				priorities=[Priority(p) for p in _split(priority)],
				tags=_split(tags),
				epic_id=epic_id or None,
				pending_only=pending_only,
				limit=limit or None,
				sort_by=sort_by,
			)
			ready = filter_and_sort(all_plans, options)
		except ValueError as e:
			return json.dumps({"error": str(e)})
		return json.dumps({
			"count": len(ready),
			"plans": [plan_summary(p, all_plans) for p in ready],
		}, indent=2)

	@mcp.tool()
	async def list_plans(status: str = "", tags: str = "") -> str:
		"""
		List all plans, optionally filtered.

		Args:
			status: Comma-separated statuses (pending, in_progress, done, cancelled, deferred)
			tags: Comma-separated tags; a plan matches if it has any of them
		"""
		store = _store(config)
		result = store.load_all()
		try:
			statuses = {PlanStatus(s) for s in _split(status)}
		except ValueError as e:
			return json.dumps({"error": str(e)})
		wanted_tags = {t.lower() for t in _split(tags)}

		plans = [
			p for _, p in sorted(result.plans.items())
			if (not statuses or p.status in statuses) and (not wanted_tags or wanted_tags.intersection(p.tags))
		]
		return json.dumps({
			"count": len(plans),
			"plans": [plan_summary(p, result.plans) for p in plans],
			"skipped_files": [{"path": s.path, "reason": s.reason} for s in result.skipped],
		}, indent=2)

	@mcp.tool()
	async def create_plan(
		title: str,
		goal: str = "",
		details: str = "",
		priority: str = "",
		dependencies: str = "",
		parent: int = 0,
		tags: str = "",
		tasks: Optional[list[dict]] = None,
		epic: bool = False,
	) -> str:
		"""
		Create a new pending plan.

		Args:
			title: Short plan title
			goal: What the plan achieves
			details: Free-form markdown body
			priority: urgent, high, medium, low or maybe
			dependencies: Comma-separated plan ids that must be done first
			parent: Parent plan id (0 = none)
			tags: Comma-separated tags
			tasks: List of {"title", "description", "files"} objects
			epic: Organizational plan with no direct work
		"""
		store = _store(config)
		try:
			plan = store.create_plan(
				title=title,
				goal=goal,
				details=details,
				priority=Priority(priority) if priority else None,
				dependencies=[int(d) for d in _split(dependencies)],
				parent=parent or None,
				tags=_split(tags),
				tasks=[Task.model_validate(t) for t in (tasks or [])],
				epic=epic,
			)
		except (ValueError, PlanloopError) as e:
			return json.dumps({"error": str(e)})
		return json.dumps({
			"success": True,
			"plan_id": plan.id,
			"file": plan.filename,
		}, indent=2)

	@mcp.tool()
	async def add_plan_task(plan: str, title: str, description: str = "", files: str = "") -> str:
		"""
		Append a task to a plan.

		Args:
			plan: Plan id or file path
			title: Task title
			description: What needs to be done
			files: Comma-separated file paths related to the task
		"""
		store = _store(config)
		try:
			found = store.load(plan)
		except PlanloopError as e:
			return json.dumps({"error": str(e)})

		found.tasks.append(Task(title=title, description=description, files=_split(files)))
		if found.status == PlanStatus.DONE:
			# New work reopens a finished plan
			found.status = PlanStatus.IN_PROGRESS
		store.save(found)
		return json.dumps({
			"success": True,
			"plan_id": found.id,
			"task_index": len(found.tasks) - 1,
		}, indent=2)

	@mcp.tool()
	async def mark_task_done(plan: str, task: str) -> str:
		"""
		Mark a task done by zero-based index or by title (exact, or a unique prefix).

		Args:
			plan: Plan id
			task: Task index (e.g. "0") or title
		"""
		store = _store(config)
		machine = TaskStateMachine(store)
		try:
			plan_id = store.load(plan).id
			target: int | str = int(task) if task.strip().isdigit() else task
			result = machine.set_task_done(plan_id, target)
		except PlanloopError as e:
			return json.dumps({"error": str(e)})
		return json.dumps({
			"success": True,
			"message": result.message,
			"plan_complete": result.plan_complete,
			"parents_completed": result.parents_completed,
		}, indent=2)


def register_plan_resources(mcp: FastMCP, config: Config) -> None:
	"""Register read-only plan resources."""

	@mcp.resource("planloop://plans/list")
	def plans_list() -> str:
		"""All plans with status and progress."""
		store = _store(config)
		all_plans = store.all_plans()
		return json.dumps([plan_summary(p, all_plans) for _, p in sorted(all_plans.items())], indent=2)

	@mcp.resource("planloop://plans/ready")
	def plans_ready() -> str:
		"""Ready plans in pick-up order."""
		store = _store(config)
		all_plans = store.all_plans()
		return json.dumps([plan_summary(p, all_plans) for p in filter_and_sort(all_plans)], indent=2)

	@mcp.resource("planloop://plans/{plan_id}")
	def plan_resource(plan_id: str) -> str:
		"""One plan with derived readiness."""
		store = _store(config)
		try:
			found = store.load(plan_id)
		except PlanloopError as e:
			return json.dumps({"error": str(e)})
		return json.dumps(plan_detail(found, store.all_plans()), indent=2)
