"""
Plan Models - Pydantic schemas for plan files.

A plan is a unit of work with metadata, dependencies on other plans and an
ordered list of tasks. Tasks are completed directly or through their steps.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now_iso() -> str:
	"""Current time as an ISO-8601 UTC timestamp."""
	return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
	"""Parse a stored timestamp, returning None when absent or unreadable."""
	if not value:
		return None
	try:
		parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
	except ValueError:
		return None
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


class PlanStatus(str, Enum):
	"""Status of a plan."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	DONE = "done"
	CANCELLED = "cancelled"
	DEFERRED = "deferred"


class Priority(str, Enum):
	"""Priority of a plan."""
	LOW = "low"
	MEDIUM = "medium"
	HIGH = "high"
	URGENT = "urgent"
	MAYBE = "maybe"


PRIORITY_RANK: dict[Optional[Priority], int] = {
	Priority.URGENT: 5,
	Priority.HIGH: 4,
	Priority.MEDIUM: 3,
	Priority.LOW: 2,
	Priority.MAYBE: 1,
	None: 0,
}


class Step(BaseModel):
	"""A single prompt inside a task. Once done it stays done."""
	prompt: str
	done: bool = False


class Task(BaseModel):
	"""A task within a plan."""
	title: str
	description: str = ""
	files: list[str] = Field(default_factory=list, description="Files associated with the task")
	done: bool = False
	steps: list[Step] = Field(default_factory=list)

	@property
	def is_complete(self) -> bool:
		"""A task with steps is complete once every step is done."""
		if self.done:
			return True
		return bool(self.steps) and all(step.done for step in self.steps)


def _coerce_timestamp(value: Any) -> Any:
	# YAML turns unquoted timestamps into datetime objects
	if isinstance(value, datetime):
		if value.tzinfo is None:
			value = value.replace(tzinfo=timezone.utc)
		return value.isoformat().replace("+00:00", "Z")
	return value


class Plan(BaseModel):
	"""
	A plan record as stored in `<id>-<slug>.plan.md`.

	Header keys are camelCase on disk; attributes are snake_case.
	"""
	model_config = ConfigDict(populate_by_name=True)

	id: int = Field(description="Unique positive plan id")
	uuid: Optional[str] = None
	title: str = ""
	goal: str = ""
	details: str = ""
	status: PlanStatus = PlanStatus.PENDING
	priority: Optional[Priority] = None
	dependencies: list[int] = Field(default_factory=list)
	parent: Optional[int] = None
	discovered_from: Optional[int] = Field(default=None, alias="discoveredFrom")
	epic: bool = False
	tags: list[str] = Field(default_factory=list)
	branch: Optional[str] = None
	issue: list[str] = Field(default_factory=list)
	base_branch: Optional[str] = Field(default=None, alias="baseBranch")
	tasks: list[Task] = Field(default_factory=list)
	created_at: Optional[str] = Field(default=None, alias="createdAt")
	updated_at: Optional[str] = Field(default=None, alias="updatedAt")

	# Not persisted: path of the file this plan was read from
	filename: Optional[str] = Field(default=None, exclude=True)

	@field_validator("id")
	@classmethod
	def _positive_id(cls, value: int) -> int:
		if value <= 0:
			raise ValueError("plan id must be a positive integer")
		return value

	@field_validator("tags", mode="before")
	@classmethod
	def _normalize_tags(cls, value: Any) -> list[str]:
		if value is None:
			return []
		if isinstance(value, str):
			value = value.split(",")
		if not isinstance(value, (list, tuple)):
			raise ValueError("tags must be a list or a comma-separated string")
		tags = {str(tag).strip().lower() for tag in value}
		return sorted(tag for tag in tags if tag)

	@field_validator("dependencies", mode="before")
	@classmethod
	def _dedupe_dependencies(cls, value: Any) -> list[int]:
		if value is None:
			return []
		if not isinstance(value, (list, tuple)):
			raise ValueError("dependencies must be a list of plan ids")
		seen: list[int] = []
		for dep in value:
			dep = int(dep)
			if dep not in seen:
				seen.append(dep)
		return seen

	@field_validator("issue", mode="before")
	@classmethod
	def _issue_list(cls, value: Any) -> list[str]:
		if value is None:
			return []
		if isinstance(value, str):
			return [value]
		return [str(v) for v in value]

	@field_validator("created_at", "updated_at", mode="before")
	@classmethod
	def _timestamps(cls, value: Any) -> Any:
		return _coerce_timestamp(value)

	@property
	def display_title(self) -> str:
		return self.title or self.goal or f"Plan {self.id}"

	def progress(self) -> tuple[int, int]:
		"""Return (done, total) task counts."""
		done = sum(1 for task in self.tasks if task.is_complete)
		return done, len(self.tasks)

	def to_header(self) -> dict:
		"""Serialize the metadata header (everything except details) with camelCase keys."""
		data = self.model_dump(
			mode="json",
			by_alias=True,
			exclude_none=True,
			exclude={"details", "filename"},
		)
		for key in ("dependencies", "tags", "issue"):
			if not data.get(key):
				data.pop(key, None)
		if not data.get("epic"):
			data.pop("epic", None)
		return data
