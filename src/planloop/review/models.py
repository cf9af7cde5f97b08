"""
Review Models - strict schemas for executor review output and merged results.

Executors must return JSON matching ReviewOutput exactly; anything else is a
ReviewParseError for that executor.
"""

import json
import re
from collections import Counter
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..executors.base import ExecutorError
from ..plans.models import utc_now_iso


class ReviewParseError(ExecutorError):
	"""Raised when review output is not valid structured JSON."""
	pass


class Severity(str, Enum):
	CRITICAL = "critical"
	MAJOR = "major"
	MINOR = "minor"
	INFO = "info"


class Category(str, Enum):
	SECURITY = "security"
	PERFORMANCE = "performance"
	BUG = "bug"
	STYLE = "style"
	COMPLIANCE = "compliance"
	TESTING = "testing"
	OTHER = "other"


class Verdict(str, Enum):
	ACCEPTABLE = "ACCEPTABLE"
	NEEDS_FIXES = "NEEDS_FIXES"


class ReviewIssueOutput(BaseModel):
	"""One finding as an executor reports it."""
	model_config = ConfigDict(extra="forbid")

	severity: Severity
	category: Category
	content: str
	file: Optional[str] = None
	line: Optional[int] = None
	suggestion: Optional[str] = None


class ReviewOutput(BaseModel):
	"""The whole structured reply of one executor."""
	model_config = ConfigDict(extra="forbid", populate_by_name=True)

	issues: list[ReviewIssueOutput] = Field(default_factory=list)
	recommendations: list[str] = Field(default_factory=list)
	action_items: list[str] = Field(default_factory=list, alias="actionItems")


class ReviewIssue(ReviewIssueOutput):
	"""A finding after merge, with a unique id and the executor it came from."""
	model_config = ConfigDict(extra="forbid")

	id: str = ""
	source: Optional[str] = None


class ReviewSummary(BaseModel):
	"""Counts recomputed from the merged issue list."""
	total_issues: int = 0
	critical_count: int = 0
	major_count: int = 0
	minor_count: int = 0
	info_count: int = 0
	category_counts: dict[str, int] = Field(default_factory=dict)
	files_reviewed: int = 0


class ReviewResult(BaseModel):
	"""Merged review of one plan."""
	plan_id: int
	plan_title: str
	timestamp: str = Field(default_factory=utc_now_iso)
	summary: ReviewSummary = Field(default_factory=ReviewSummary)
	issues: list[ReviewIssue] = Field(default_factory=list)
	recommendations: list[str] = Field(default_factory=list)
	action_items: list[str] = Field(default_factory=list)
	executors: list[str] = Field(default_factory=list)
	warnings: list[str] = Field(default_factory=list)
	verdict: Verdict = Verdict.ACCEPTABLE


def review_output_schema() -> dict[str, Any]:
	"""JSON schema handed to executors that support structured output."""
	return ReviewOutput.model_json_schema(by_alias=True)


_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


def parse_review_output(raw: Any, executor: Optional[str] = None) -> ReviewOutput:
	"""
	Validate an executor's review reply.

	Accepts an already-decoded object, a JSON string, or a JSON string inside
	a ```json fence.

	Raises:
		ReviewParseError: Not JSON, or JSON that does not match ReviewOutput
	"""
	data = raw
	if isinstance(raw, str):
		text = raw.strip()
		fenced = _FENCED_JSON.search(text)
		if fenced and not text.startswith("{"):
			text = fenced.group(1).strip()
		try:
			data = json.loads(text)
		except json.JSONDecodeError as e:
			raise ReviewParseError(f"Review output is not valid JSON: {e}", executor=executor) from e

	try:
		return ReviewOutput.model_validate(data)
	except ValidationError as e:
		raise ReviewParseError(
			f"Review output does not match the schema: {e.error_count()} error(s): {e.errors()[0]['msg']}",
			executor=executor,
		) from e


def generate_review_summary(issues: list[ReviewIssueOutput], files_reviewed: Optional[int] = None) -> ReviewSummary:
	"""Severity and category counts for an issue list."""
	severities = Counter(issue.severity for issue in issues)
	categories = Counter(issue.category.value for issue in issues)
	if files_reviewed is None:
		files_reviewed = len({issue.file for issue in issues if issue.file})
	return ReviewSummary(
		total_issues=len(issues),
		critical_count=severities[Severity.CRITICAL],
		major_count=severities[Severity.MAJOR],
		minor_count=severities[Severity.MINOR],
		info_count=severities[Severity.INFO],
		category_counts={c.value: categories.get(c.value, 0) for c in Category},
		files_reviewed=files_reviewed,
	)


def derive_verdict(issues: list[ReviewIssueOutput]) -> Verdict:
	"""NEEDS_FIXES if anything above info severity was found."""
	if any(issue.severity != Severity.INFO for issue in issues):
		return Verdict.NEEDS_FIXES
	return Verdict.ACCEPTABLE
