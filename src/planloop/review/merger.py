"""
Review Merger - run one or more executors over a plan and merge their findings.

With several executors, a failing one only drops its findings and adds a
warning; the review fails only when every executor fails.
"""

import logging
from pathlib import Path
from typing import Optional

from ..errors import PlanloopError
from ..executors.base import ExecutionContext, ExecutionMode, Executor, ExecutorError
from ..plans.models import Plan
from .fanout import Branch, FanOut
from .models import (
	ReviewIssue,
	ReviewIssueOutput,
	ReviewOutput,
	ReviewResult,
	derive_verdict,
	generate_review_summary,
	parse_review_output,
	review_output_schema,
)
from .prompt import build_review_prompt
from .scope import TaskFilter, resolve_task_scope

logger = logging.getLogger(__name__)


class ReviewFailedError(PlanloopError):
	"""Raised when no executor produced a usable review."""

	def __init__(self, failures: list[str]):
		self.failures = failures
		super().__init__("All review executors failed: " + "; ".join(failures))


def _issue_sort_key(issue: ReviewIssueOutput) -> tuple:
	return (
		issue.file is None,
		issue.file or "",
		issue.line is None,
		issue.line if issue.line is not None else 0,
	)


def sort_issues(issues: list[ReviewIssue]) -> list[ReviewIssue]:
	"""File ascending, then line ascending; issues without a file or line go last."""
	return sorted(issues, key=_issue_sort_key)


def _dedupe(items: list[str]) -> list[str]:
	return list(dict.fromkeys(item.strip() for item in items if item.strip()))


def merge_review_outputs(outputs: list[tuple[str, ReviewOutput]]) -> tuple[list[ReviewIssue], list[str], list[str]]:
	"""
	Merge executor outputs.

	Issues are concatenated without deduplication, sorted, and re-numbered
	issue-1..N. Recommendations and action items are concatenated with exact
	duplicates dropped.

	Returns:
		(issues, recommendations, action_items)
	"""
	issues: list[ReviewIssue] = []
	recommendations: list[str] = []
	action_items: list[str] = []
	for source, output in outputs:
		for issue in output.issues:
			issues.append(ReviewIssue(**issue.model_dump(), source=source))
		recommendations.extend(output.recommendations)
		action_items.extend(output.action_items)

	issues = sort_issues(issues)
	for number, issue in enumerate(issues, start=1):
		issue.id = f"issue-{number}"
	return issues, _dedupe(recommendations), _dedupe(action_items)


class ReviewMerger:
	"""
	Runs review executors concurrently and builds one ReviewResult.

	Usage:
		merger = ReviewMerger(inactivity_timeout=config.inactivity_timeout)
		result = await merger.run_review(plan, resolve_review_executors("both"))
		for warning in result.warnings:
			print(warning, file=sys.stderr)
	"""

	def __init__(self, inactivity_timeout: Optional[float] = None, max_concurrency: int = 4):
		self.inactivity_timeout = inactivity_timeout
		self.fanout: FanOut[Executor, ReviewOutput] = FanOut(max_concurrency=max_concurrency)

	async def run_review(
		self,
		plan: Plan,
		executors: list[Executor],
		task_filter: Optional[TaskFilter] = None,
		workspace_path: Optional[Path] = None,
		diff_summary: Optional[str] = None,
	) -> ReviewResult:
		"""
		Review a plan with every given executor and merge the findings.

		Args:
			plan: Plan under review
			executors: One or more executors, run concurrently
			task_filter: Restrict the prompt to selected tasks
			workspace_path: Directory the executors run in
			diff_summary: Optional diff text included in the prompt

		Returns:
			Merged ReviewResult; warnings name executors that failed

		Raises:
			TaskScopeError: The filter names tasks that do not exist (nothing is run)
			ReviewFailedError: Every executor failed
		"""
		if not executors:
			raise ReviewFailedError(["no executors selected"])

		scope = resolve_task_scope(plan, task_filter)
		prompt = build_review_prompt(plan, scope, diff_summary)
		context = ExecutionContext(
			plan_id=plan.id,
			plan_title=plan.display_title,
			plan_file=Path(plan.filename) if plan.filename else None,
			workspace_path=workspace_path,
			mode=ExecutionMode.REVIEW,
			inactivity_timeout=self.inactivity_timeout,
			output_schema=review_output_schema(),
		)

		names = [executor.name for executor in executors]
		branches = [
			Branch(name=name if names.count(name) == 1 else f"{name}#{i + 1}", data=executor)
			for i, (name, executor) in enumerate(zip(names, executors))
		]

		async def review_with(branch: Branch[Executor]) -> ReviewOutput:
			executor = branch.data
			result = await executor.execute(prompt, context)
			if not result.success:
				raise ExecutorError(
					result.error or f"exited with code {result.exit_code}",
					executor=executor.name,
					exit_code=result.exit_code,
				)
			raw = result.structured if result.structured is not None else result.output
			return parse_review_output(raw, executor=executor.name)

		logger.info(f"Reviewing plan {plan.id} with {', '.join(b.name for b in branches)}")
		summary = await self.fanout.run(branches, review_with)

		failures = [f"{r.name}: {r.error}" for r in summary.failed]
		if not summary.succeeded:
			raise ReviewFailedError(failures)

		warnings = []
		for failure in failures:
			message = f"Review by {failure}; its findings are omitted"
			logger.warning(message)
			warnings.append(message)

		outputs = [(r.name, r.result) for r in summary.succeeded]
		issues, recommendations, action_items = merge_review_outputs(outputs)
		return ReviewResult(
			plan_id=plan.id,
			plan_title=plan.display_title,
			summary=generate_review_summary(issues),
			issues=issues,
			recommendations=recommendations,
			action_items=action_items,
			executors=[r.name for r in summary.succeeded],
			warnings=warnings,
			verdict=derive_verdict(issues),
		)


def format_review_json(result: ReviewResult) -> str:
	"""JSON document printed by `review --print`."""
	return result.model_dump_json(indent=2)
