"""
Plan Store - file-backed plan storage.

Plans live in a directory of `<id>-<slug>.plan.md` files: a YAML header
between `---` fences followed by free-form markdown that becomes `details`.
Whole-YAML `.yml`/`.yaml` records are read as well.

Features:
- Directory scan with per-file validation (bad files are skipped, not fatal)
- Id-indexed cache, invalidated explicitly or on save
- Atomic writes (temp file + rename)
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from ..errors import NotFoundError, PlanloopError
from ..fileio import write_atomic
from .models import Plan, PlanStatus, Priority, Task, utc_now_iso

logger = logging.getLogger(__name__)

PLAN_SUFFIX = ".plan.md"
YAML_SUFFIXES = (".yml", ".yaml")

FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n(.*))?$", re.DOTALL)


class PlanValidationError(PlanloopError):
	"""Raised when a plan file cannot be parsed or validated."""

	def __init__(self, path: Union[str, Path], message: str):
		self.path = str(path)
		self.message = message
		super().__init__(f"Invalid plan file {path}: {message}")


class PlanNotFoundError(NotFoundError):
	"""Raised when a plan id or path does not resolve to a plan."""

	def __init__(self, identifier: Union[int, str]):
		super().__init__(str(identifier), kind="Plan")


@dataclass
class SkippedFile:
	"""A plan file that failed validation during a scan."""
	path: str
	reason: str


@dataclass
class LoadResult:
	"""Outcome of a directory scan."""
	plans: dict[int, Plan] = field(default_factory=dict)
	skipped: list[SkippedFile] = field(default_factory=list)


def slugify(text: str, max_length: int = 50) -> str:
	"""Lowercase, dash-separated slug suitable for a filename."""
	slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
	return slug[:max_length].rstrip("-") or "plan"


def is_plan_file(path: Path) -> bool:
	return path.name.endswith(PLAN_SUFFIX) or path.suffix in YAML_SUFFIXES


def parse_plan_text(content: str, source_path: Union[str, Path]) -> Plan:
	"""
	Parse plan file content.

	Args:
		content: File content
		source_path: Path used for error messages and Plan.filename

	Returns:
		Validated Plan

	Raises:
		PlanValidationError: If the header is missing, not YAML, or fails validation
	"""
	source = str(source_path)
	if source.endswith(YAML_SUFFIXES):
		header_text, body = content, None
	else:
		match = FRONTMATTER_RE.match(content)
		if not match:
			raise PlanValidationError(source, "missing YAML header")
		header_text, body = match.group(1), match.group(2) or ""

	try:
		header = yaml.safe_load(header_text)
	except yaml.YAMLError as e:
		raise PlanValidationError(source, f"invalid YAML: {e}") from e

	if not isinstance(header, dict):
		raise PlanValidationError(source, "header is not a mapping")

	if body is not None:
		header["details"] = body.strip()

	try:
		plan = Plan.model_validate(header)
	except ValidationError as e:
		errors = "; ".join(
			f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
		)
		raise PlanValidationError(source, errors) from e
	except TypeError as e:
		raise PlanValidationError(source, str(e)) from e

	plan.filename = source
	return plan


def render_plan_text(plan: Plan, yaml_only: bool = False) -> str:
	"""Serialize a plan to its on-disk form."""
	header = plan.to_header()
	if yaml_only:
		if plan.details:
			header["details"] = plan.details
		return yaml.safe_dump(header, sort_keys=False, allow_unicode=True)

	header_text = yaml.safe_dump(header, sort_keys=False, allow_unicode=True).rstrip("\n")
	body = plan.details.strip()
	text = f"---\n{header_text}\n---\n"
	if body:
		text += f"\n{body}\n"
	return text


def read_plan_file(path: Union[str, Path]) -> Plan:
	"""Read and validate a single plan file."""
	path = Path(path)
	try:
		content = path.read_text(encoding="utf-8")
	except FileNotFoundError as e:
		raise PlanNotFoundError(str(path)) from e
	except UnicodeDecodeError as e:
		raise PlanValidationError(path, f"not valid UTF-8: {e}") from e
	except OSError as e:
		raise PlanValidationError(path, f"unreadable: {e}") from e
	return parse_plan_text(content, path)


class PlanStore:
	"""
	Directory-backed plan storage with an id-indexed cache.

	Usage:
		store = PlanStore("tasks")
		result = store.load_all()
		for skipped in result.skipped:
			print(skipped.path, skipped.reason)

		plan = store.load(12)
		plan.status = PlanStatus.IN_PROGRESS
		store.save(plan)
	"""

	def __init__(self, tasks_dir: Union[str, Path]):
		"""Initialize the plan store."""
		self.tasks_dir = Path(tasks_dir)
		self._cache: Optional[LoadResult] = None

	def invalidate(self) -> None:
		"""Drop the cache so the next read rescans the directory."""
		self._cache = None

	def load_all(self, reload: bool = False) -> LoadResult:
		"""
		Scan the plan directory.

		Args:
			reload: Force a rescan even if cached

		Returns:
			LoadResult with plans keyed by id and the files that were skipped
		"""
		if self._cache is not None and not reload:
			return self._cache

		result = LoadResult()
		if self.tasks_dir.is_dir():
			paths = sorted(p for p in self.tasks_dir.rglob("*") if p.is_file() and is_plan_file(p))
			for path in paths:
				try:
					plan = read_plan_file(path)
				except PlanValidationError as e:
					logger.warning(f"Skipping {path}: {e.message}")
					result.skipped.append(SkippedFile(path=str(path), reason=e.message))
					continue

				existing = result.plans.get(plan.id)
				if existing is not None:
					reason = f"duplicate id {plan.id} (already defined in {existing.filename})"
					logger.warning(f"Skipping {path}: {reason}")
					result.skipped.append(SkippedFile(path=str(path), reason=reason))
					continue
				result.plans[plan.id] = plan

		logger.debug(f"Loaded {len(result.plans)} plans from {self.tasks_dir}")
		self._cache = result
		return result

	def all_plans(self) -> dict[int, Plan]:
		"""Plans keyed by id (cached)."""
		return self.load_all().plans

	def load(self, id_or_path: Union[int, str, Path]) -> Plan:
		"""
		Load a plan by id or by file path.

		Args:
			id_or_path: Plan id, numeric string, or path to a plan file

		Returns:
			The plan

		Raises:
			PlanNotFoundError: If nothing matches
			PlanValidationError: If the path names an invalid plan file
		"""
		if isinstance(id_or_path, int) or (isinstance(id_or_path, str) and id_or_path.strip().isdigit()):
			plan_id = int(id_or_path)
			plan = self.all_plans().get(plan_id)
			if plan is None:
				raise PlanNotFoundError(plan_id)
			return plan

		path = Path(id_or_path)
		candidates = [path] if path.is_absolute() else [path, self.tasks_dir / path]
		for candidate in candidates:
			if candidate.is_file():
				return read_plan_file(candidate)
		raise PlanNotFoundError(str(id_or_path))

	def path_for(self, plan: Plan) -> Path:
		"""File a plan is (or will be) stored in."""
		if plan.filename:
			return Path(plan.filename)
		return self.tasks_dir / f"{plan.id}-{slugify(plan.display_title)}{PLAN_SUFFIX}"

	def save(self, plan: Plan) -> Path:
		"""
		Persist a plan atomically and refresh the cache entry.

		Args:
			plan: Plan to write; updated_at is stamped

		Returns:
			Path the plan was written to
		"""
		now = utc_now_iso()
		if not plan.created_at:
			plan.created_at = now
		plan.updated_at = now

		path = self.path_for(plan)
		write_atomic(path, render_plan_text(plan, yaml_only=path.suffix in YAML_SUFFIXES))
		plan.filename = str(path)

		if self._cache is not None:
			self._cache.plans[plan.id] = plan
		logger.debug(f"Saved plan {plan.id} to {path}")
		return path

	def next_id(self) -> int:
		"""Smallest id greater than every existing id."""
		plans = self.all_plans()
		return max(plans, default=0) + 1

	def create_plan(
		self,
		title: str,
		goal: str = "",
		details: str = "",
		priority: Optional[Priority] = None,
		dependencies: Optional[list[int]] = None,
		parent: Optional[int] = None,
		discovered_from: Optional[int] = None,
		tags: Optional[list[str]] = None,
		tasks: Optional[list[Task]] = None,
		epic: bool = False,
	) -> Plan:
		"""
		Create and persist a new pending plan.

		Returns:
			The new plan with its allocated id
		"""
		plan = Plan(
			id=self.next_id(),
			uuid=str(uuid.uuid4()),
			title=title,
			goal=goal,
			details=details,
			status=PlanStatus.PENDING,
			priority=priority,
			dependencies=dependencies or [],
			parent=parent,
			discovered_from=discovered_from,
			tags=tags or [],
			tasks=tasks or [],
			epic=epic,
		)
		self.save(plan)
		logger.info(f"Created plan {plan.id}: {plan.title}")
		return plan

	def children_of(self, plan_id: int) -> list[Plan]:
		"""Plans whose parent is plan_id, in id order."""
		return [p for _, p in sorted(self.all_plans().items()) if p.parent == plan_id]
