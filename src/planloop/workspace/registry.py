"""
Workspace Registry - JSON file tracking every known workspace.

The registry is a single JSON object keyed by normalized absolute workspace
path. Updates are read-modify-write with an atomic replace; there is no
cross-process conflict detection.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

from pydantic import BaseModel

from ..errors import NotFoundError
from ..fileio import write_atomic
from ..plans.models import utc_now_iso
from .vcs import current_branch

if TYPE_CHECKING:
	from .lock import LockInfo, WorkspaceLock

logger = logging.getLogger(__name__)


class WorkspaceNotFoundError(NotFoundError):
	"""Raised when a workspace path is not tracked."""

	def __init__(self, path: Union[str, Path]):
		super().__init__(str(path), kind="Workspace")


def normalize_path(path: Union[str, Path]) -> str:
	"""Registry key for a path: absolute and normalized, symlinks left alone."""
	return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


class RegistryEntry(BaseModel):
	"""One tracked workspace. The branch is never stored; it is read live."""
	workspace_path: str
	name: Optional[str] = None
	description: Optional[str] = None
	repository_id: Optional[str] = None
	task_id: Optional[str] = None
	original_plan_file_path: Optional[str] = None
	plan_id: Optional[int] = None
	plan_title: Optional[str] = None
	issue_urls: Optional[list[str]] = None
	created_at: Optional[str] = None
	updated_at: Optional[str] = None


class _PatchKind(str, Enum):
	UNSET = "unset"
	CLEAR = "clear"
	SET = "set"


@dataclass(frozen=True)
class FieldPatch:
	"""Tri-state field update: leave unchanged, clear, or set to a value."""
	kind: _PatchKind
	value: Any = None

	@classmethod
	def set_to(cls, value: Any) -> "FieldPatch":
		return cls(_PatchKind.SET, value)

	@classmethod
	def from_input(cls, value: Any) -> "FieldPatch":
		"""Map user input: None leaves the field alone, "" clears it."""
		if value is None:
			return UNSET
		if value == "" or value == []:
			return CLEAR
		return cls.set_to(value)

	@property
	def is_unset(self) -> bool:
		return self.kind == _PatchKind.UNSET


UNSET = FieldPatch(_PatchKind.UNSET)
CLEAR = FieldPatch(_PatchKind.CLEAR)


@dataclass
class WorkspacePatch:
	"""Partial update for a registry entry; every field defaults to UNSET."""
	name: FieldPatch = UNSET
	description: FieldPatch = UNSET
	repository_id: FieldPatch = UNSET
	task_id: FieldPatch = UNSET
	original_plan_file_path: FieldPatch = UNSET
	plan_id: FieldPatch = UNSET
	plan_title: FieldPatch = UNSET
	issue_urls: FieldPatch = UNSET

	@classmethod
	def from_values(cls, **values: Any) -> "WorkspacePatch":
		"""Build a patch from plain values using FieldPatch.from_input."""
		return cls(**{key: FieldPatch.from_input(val) for key, val in values.items()})

	def apply(self, entry: RegistryEntry) -> RegistryEntry:
		data = entry.model_dump()
		for f in fields(self):
			patch: FieldPatch = getattr(self, f.name)
			if patch.kind == _PatchKind.CLEAR:
				data[f.name] = None
			elif patch.kind == _PatchKind.SET:
				data[f.name] = patch.value
		return RegistryEntry.model_validate(data)


@dataclass
class ListEntry:
	"""A registry entry as seen by `workspace list`."""
	entry: RegistryEntry
	status: str = "ok"
	branch: Optional[str] = None
	lock: Optional["LockInfo"] = None
	error: Optional[str] = None

	@property
	def path(self) -> str:
		return self.entry.workspace_path


# stat failures that prove the directory is gone
MISSING_ERRORS = (FileNotFoundError, NotADirectoryError)


class WorkspaceRegistry:
	"""
	Registry of workspaces stored at an injected tracking file path.

	Usage:
		registry = WorkspaceRegistry(config.tracking_file_path)
		registry.patch_metadata("/ws/a", WorkspacePatch(name=FieldPatch.set_to("foo")))
		for item in await registry.list_entries():
			print(item.path, item.branch)
	"""

	def __init__(self, tracking_file: Union[str, Path]):
		self.tracking_file = Path(tracking_file)

	def _read(self) -> dict[str, RegistryEntry]:
		if not self.tracking_file.exists():
			return {}
		text = self.tracking_file.read_text(encoding="utf-8")
		if not text.strip():
			return {}
		raw = json.loads(text)
		entries = {}
		for key, value in raw.items():
			value.setdefault("workspace_path", key)
			entries[normalize_path(key)] = RegistryEntry.model_validate(value)
		return entries

	def _write(self, entries: dict[str, RegistryEntry]) -> None:
		data = {
			key: entry.model_dump(exclude_none=True)
			for key, entry in sorted(entries.items())
		}
		write_atomic(self.tracking_file, json.dumps(data, indent=2) + "\n")

	def entries(self) -> dict[str, RegistryEntry]:
		"""All entries keyed by normalized path."""
		return self._read()

	def get(self, path: Union[str, Path]) -> Optional[RegistryEntry]:
		return self._read().get(normalize_path(path))

	def require(self, path: Union[str, Path]) -> RegistryEntry:
		"""Like get, but raises WorkspaceNotFoundError."""
		entry = self.get(path)
		if entry is None:
			raise WorkspaceNotFoundError(normalize_path(path))
		return entry

	def patch_metadata(
		self,
		path: Union[str, Path],
		patch: WorkspacePatch,
		created: bool = False,
	) -> RegistryEntry:
		"""
		Merge a partial update into an entry, creating a minimal entry if needed.

		Cleared fields are removed, unset fields are left as they are, and
		updated_at is always stamped.

		Args:
			path: Workspace path
			patch: Fields to set or clear
			created: The workspace was just created; stamp created_at if missing

		Returns:
			The stored entry
		"""
		key = normalize_path(path)
		entries = self._read()
		entry = entries.get(key) or RegistryEntry(workspace_path=key)
		entry = patch.apply(entry)
		now = utc_now_iso()
		if created and not entry.created_at:
			entry.created_at = now
		entry.updated_at = now
		entries[key] = entry
		self._write(entries)
		return entry

	def remove(self, path: Union[str, Path]) -> bool:
		"""Drop an entry. Returns False if it was not tracked."""
		key = normalize_path(path)
		entries = self._read()
		if entries.pop(key, None) is None:
			return False
		self._write(entries)
		logger.info(f"Removed workspace {key} from registry")
		return True

	def find_by_repository_id(self, repository_id: str) -> list[RegistryEntry]:
		return [e for e in self._read().values() if e.repository_id == repository_id]

	def find_by_task_id(self, task_id: str) -> list[RegistryEntry]:
		return [e for e in self._read().values() if e.task_id == task_id]

	def remove_missing(self) -> list[str]:
		"""
		Remove entries whose directory is confirmed gone.

		Only FileNotFoundError/NotADirectoryError count as gone; any other stat
		error keeps the entry.

		Returns:
			Removed paths
		"""
		entries = self._read()
		removed = []
		for key in list(entries):
			try:
				os.stat(key)
			except MISSING_ERRORS:
				removed.append(key)
				del entries[key]
			except OSError as e:
				logger.warning(f"Keeping workspace {key}: cannot stat ({e})")
		if removed:
			self._write(entries)
			logger.info(f"Removed {len(removed)} missing workspace(s) from registry")
		return removed

	async def list_entries(
		self,
		repository_id: Optional[str] = None,
		lock: Optional["WorkspaceLock"] = None,
		task_id: Optional[str] = None,
	) -> list[ListEntry]:
		"""
		Entries whose directories still exist, with live branch and lock state.

		Args:
			repository_id: Only entries for this repository identity
			lock: Lock manager used to attach lock status
			task_id: Only entries created for this task

		Returns:
			ListEntry items sorted by path; unreadable directories are flagged unknown
		"""
		task_paths = None
		if task_id is not None:
			task_paths = {normalize_path(e.workspace_path) for e in self.find_by_task_id(task_id)}

		results = []
		for key, entry in sorted(self._read().items()):
			if repository_id is not None and entry.repository_id != repository_id:
				continue
			if task_paths is not None and key not in task_paths:
				continue

			item = ListEntry(entry=entry)
			try:
				os.stat(key)
			except MISSING_ERRORS:
				continue
			except OSError as e:
				logger.warning(f"Workspace {key} status unknown: {e}")
				item.status = "unknown"
				item.error = str(e)

			if item.status == "ok":
				try:
					item.branch = await current_branch(Path(key))
				except OSError as e:
					logger.debug(f"Branch lookup failed for {key}: {e}")

			if lock is not None:
				item.lock = lock.get_lock_info(key)
			results.append(item)
		return results
