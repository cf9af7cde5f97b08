"""
Workspace Lock - one owner per workspace at a time.

Each workspace gets a lock file in the lock directory named from a hash of
its normalized path. The record is written to a temp file and hard-linked
into place, so a lock file is either absent or complete. pid locks whose
owner died (or that are older than a day) are stale and get reclaimed on the
next acquire. An unreadable lock file still counts as held until it is older
than UNREADABLE_GRACE.
"""

import logging
import os
import socket
from datetime import datetime, timedelta, timezone
from enum import Enum
from hashlib import sha256
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import PlanloopError
from ..fileio import write_exclusive
from ..plans.models import parse_timestamp, utc_now_iso
from .registry import normalize_path

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(hours=24)
UNREADABLE_GRACE = timedelta(minutes=1)


class LockType(str, Enum):
	"""pid locks die with their process; persistent locks are released explicitly."""
	PID = "pid"
	PERSISTENT = "persistent"


class LockInfo(BaseModel):
	"""Contents of a lock file."""
	workspace_path: str
	type: LockType = LockType.PID
	pid: int
	hostname: str
	command: str = ""
	owner: Optional[str] = None
	started_at: str = Field(default_factory=utc_now_iso)

	# Set on the returned object only, never written
	reclaimed_stale: bool = Field(default=False, exclude=True)

	def describe(self) -> str:
		who = f"pid {self.pid} on {self.hostname}"
		if self.owner:
			who = f"{self.owner} ({who})"
		if self.command:
			who += f" running '{self.command}'"
		return who


class LockConflictError(PlanloopError):
	"""Raised when a workspace is locked by a live owner."""

	def __init__(self, path: str, holder: Optional[LockInfo]):
		self.path = path
		self.holder = holder
		if holder is None:
			super().__init__(f"Workspace {path} is locked (lock file unreadable)")
		else:
			super().__init__(f"Workspace {path} is locked by {holder.describe()} since {holder.started_at}")


def pid_alive(pid: int) -> bool:
	"""True if a process with this pid exists on this host."""
	if pid <= 0:
		return False
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except PermissionError:
		return True
	return True


class WorkspaceLock:
	"""
	Lock files stored in an injected directory.

	Usage:
		locks = WorkspaceLock(config.lock_dir_path)
		info = locks.acquire("/ws/a", command="planloop agent 12")
		try:
			...
		finally:
			locks.release("/ws/a")
	"""

	def __init__(self, lock_dir: Union[str, Path]):
		self.lock_dir = Path(lock_dir)

	def lock_file_for(self, path: Union[str, Path]) -> Path:
		"""Deterministic lock file path for a workspace."""
		digest = sha256(normalize_path(path).encode()).hexdigest()
		return self.lock_dir / f"{digest}.lock"

	def _read(self, lock_file: Path) -> Optional[LockInfo]:
		try:
			return LockInfo.model_validate_json(lock_file.read_text(encoding="utf-8"))
		except FileNotFoundError:
			return None
		except (ValidationError, ValueError) as e:
			logger.warning(f"Unreadable lock file {lock_file}: {e}")
			return None

	def _unreadable_expired(self, lock_file: Path) -> bool:
		try:
			mtime = datetime.fromtimestamp(lock_file.stat().st_mtime, tz=timezone.utc)
		except FileNotFoundError:
			return True
		return datetime.now(timezone.utc) - mtime > UNREADABLE_GRACE

	def get_lock_info(self, path: Union[str, Path]) -> Optional[LockInfo]:
		return self._read(self.lock_file_for(path))

	def is_stale(self, info: LockInfo) -> bool:
		"""Persistent locks never go stale; pid locks do when the owner is gone or after a day."""
		if info.type == LockType.PERSISTENT:
			return False
		started = parse_timestamp(info.started_at)
		if started is not None and datetime.now(timezone.utc) - started > STALE_AFTER:
			return True
		if info.hostname != socket.gethostname():
			return False
		return not pid_alive(info.pid)

	def is_locked(self, path: Union[str, Path]) -> bool:
		"""True if a non-stale lock is held."""
		lock_file = self.lock_file_for(path)
		info = self._read(lock_file)
		if info is None:
			return lock_file.exists() and not self._unreadable_expired(lock_file)
		return not self.is_stale(info)

	def acquire(
		self,
		path: Union[str, Path],
		command: str = "",
		lock_type: LockType = LockType.PID,
		owner: Optional[str] = None,
	) -> LockInfo:
		"""
		Take the lock for a workspace.

		A stale lock is removed and taken over with a warning.

		Returns:
			The LockInfo written; reclaimed_stale is True when a stale lock was replaced

		Raises:
			LockConflictError: If a live owner holds the lock
		"""
		key = normalize_path(path)
		lock_file = self.lock_file_for(key)
		self.lock_dir.mkdir(parents=True, exist_ok=True)
		info = LockInfo(
			workspace_path=key,
			type=LockType(lock_type),
			pid=os.getpid(),
			hostname=socket.gethostname(),
			command=command,
			owner=owner,
		)

		reclaimed = False
		for _ in range(3):
			if write_exclusive(lock_file, info.model_dump_json(indent=2)):
				info.reclaimed_stale = reclaimed
				logger.debug(f"Locked {key}")
				return info

			existing = self._read(lock_file)
			if existing is None:
				if not lock_file.exists():
					# Released between our attempt and the read
					continue
				if not self._unreadable_expired(lock_file):
					raise LockConflictError(key, None)
				holder = "unreadable lock"
			elif not self.is_stale(existing):
				raise LockConflictError(key, existing)
			else:
				holder = existing.describe()

			logger.warning(f"Reclaiming stale lock on {key} held by {holder}")
			lock_file.unlink(missing_ok=True)
			reclaimed = True

		# Another process won the race after the stale lock was removed
		existing = self._read(lock_file)
		if existing is None:
			raise PlanloopError(f"Could not acquire lock on {key}")
		raise LockConflictError(key, existing)

	def release(self, path: Union[str, Path], force: bool = False) -> bool:
		"""
		Release a workspace lock.

		Args:
			path: Workspace path
			force: Remove the lock even if another live process holds it

		Returns:
			False if no lock existed

		Raises:
			LockConflictError: If another live process holds it and force is False
		"""
		key = normalize_path(path)
		lock_file = self.lock_file_for(key)
		existing = self._read(lock_file)
		if existing is None and not lock_file.exists():
			return False

		if (
			not force
			and existing is not None
			and existing.type == LockType.PID
			and existing.pid != os.getpid()
			and not self.is_stale(existing)
		):
			raise LockConflictError(key, existing)

		lock_file.unlink(missing_ok=True)
		logger.debug(f"Unlocked {key}")
		return True

