"""Prompts handed to executors by the agent loop."""

from ..plans.models import Plan, Task


def _plan_context(plan: Plan) -> list[str]:
	lines = [f"# Plan {plan.id}: {plan.display_title}", ""]
	if plan.goal:
		lines.extend(["## Goal", plan.goal, ""])
	if plan.details:
		lines.extend(["## Details", plan.details, ""])
	return lines


def _task_block(index: int, task: Task) -> list[str]:
	lines = [f"### Task {index}: {task.title}"]
	if task.description:
		lines.append(task.description)
	if task.files:
		lines.append("Relevant files:")
		lines.extend(f"- {path}" for path in task.files)
	return lines


def build_step_prompt(plan: Plan, task_index: int, step_index: int) -> str:
	"""Prompt for one step of a task."""
	task = plan.tasks[task_index]
	step = task.steps[step_index]
	lines = _plan_context(plan)
	lines.extend(_task_block(task_index, task))
	done_steps = [s for s in task.steps[:step_index] if s.done]
	if done_steps:
		lines.extend(["", "Already completed steps:"])
		lines.extend(f"- {s.prompt.splitlines()[0]}" for s in done_steps)
	lines.extend([
		"",
		f"## Current step ({step_index + 1} of {len(task.steps)})",
		step.prompt,
	])
	return "\n".join(lines)


def build_task_prompt(plan: Plan, task_index: int) -> str:
	"""Prompt for a task without steps."""
	lines = _plan_context(plan)
	lines.append("## Your task")
	lines.extend(_task_block(task_index, plan.tasks[task_index]))
	lines.extend(["", "Complete this task only. Other tasks in the plan are handled separately."])
	return "\n".join(lines)


def build_batch_prompt(plan: Plan, incomplete: list[tuple[int, Task]]) -> str:
	"""
	Prompt offering every incomplete task at once.

	The executor picks which to do and reports them as the last line of its
	reply, e.g. {"completedTasks": [0, 2]}.
	"""
	lines = _plan_context(plan)
	lines.append("## Incomplete tasks")
	for index, task in incomplete:
		lines.extend(_task_block(index, task))
		lines.append("")
	lines.extend([
		"## Instructions",
		"Choose a sensible subset of these tasks that belong together and complete them.",
		"Do not edit the plan file; task status is recorded for you.",
		"When finished, end your reply with a single line of JSON listing the task numbers you completed:",
		'{"completedTasks": [<task numbers>]}',
	])
	return "\n".join(lines)
