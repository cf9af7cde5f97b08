"""Review prompt construction."""

import json
from typing import Optional

from ..plans.models import Plan
from .models import review_output_schema
from .scope import ReviewScope


def build_review_prompt(plan: Plan, scope: ReviewScope, diff_summary: Optional[str] = None) -> str:
	"""
	Prompt asking an executor to review the work done for a plan.

	Only the tasks in scope are listed as under review; the rest are named as
	context so the reviewer does not flag them as missing.
	"""
	lines = [
		f"# Code review: plan {plan.id} - {plan.display_title}",
		"",
	]
	if plan.goal:
		lines.extend(["## Goal", plan.goal, ""])
	if plan.details:
		lines.extend(["## Details", plan.details, ""])

	heading = "## Tasks under review" if scope.is_scoped else "## Tasks"
	lines.append(heading)
	for index, task in scope.tasks:
		marker = "x" if task.is_complete else " "
		lines.append(f"- [{marker}] ({index}) {task.title}")
		if task.description:
			lines.append(f"  {task.description}")
		for path in task.files:
			lines.append(f"  - file: {path}")
	lines.append("")

	if scope.is_scoped and scope.remaining:
		lines.append("## Other tasks in this plan (not under review)")
		for index, task in scope.remaining:
			lines.append(f"- ({index}) {task.title}")
		lines.append("")

	if diff_summary:
		lines.extend(["## Changes", "```diff", diff_summary.rstrip(), "```", ""])

	lines.extend([
		"## Instructions",
		"Review the changes in this workspace against the tasks above. Report real problems only.",
		"Reply with a single JSON object matching this schema and nothing else:",
		"",
		"```json",
		json.dumps(review_output_schema(), indent=2),
		"```",
	])
	return "\n".join(lines)
