"""Review module - concurrent multi-executor reviews with merged findings."""

from .merger import ReviewFailedError, ReviewMerger, format_review_json, merge_review_outputs, sort_issues
from .models import (
	ReviewIssue,
	ReviewOutput,
	ReviewParseError,
	ReviewResult,
	ReviewSummary,
	Verdict,
	parse_review_output,
)
from .scope import TaskFilter, TaskScopeError, resolve_task_scope

__all__ = [
	"ReviewFailedError",
	"ReviewIssue",
	"ReviewMerger",
	"ReviewOutput",
	"ReviewParseError",
	"ReviewResult",
	"ReviewSummary",
	"TaskFilter",
	"TaskScopeError",
	"Verdict",
	"format_review_json",
	"merge_review_outputs",
	"parse_review_output",
	"resolve_task_scope",
	"sort_issues",
]
