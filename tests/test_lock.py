"""Tests for workspace lock files."""

import os
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from planloop.workspace.lock import (
	LockConflictError,
	LockInfo,
	LockType,
	WorkspaceLock,
	pid_alive,
)
from planloop.workspace.registry import normalize_path


@pytest.fixture
def locks(tmp_path: Path) -> WorkspaceLock:
	return WorkspaceLock(tmp_path / "locks")


def _write_lock(locks: WorkspaceLock, path: str, **fields) -> LockInfo:
	info = LockInfo(
		workspace_path=normalize_path(path),
		pid=fields.pop("pid", os.getpid()),
		hostname=fields.pop("hostname", socket.gethostname()),
		**fields,
	)
	lock_file = locks.lock_file_for(path)
	lock_file.parent.mkdir(parents=True, exist_ok=True)
	lock_file.write_text(info.model_dump_json())
	return info


def _hours_ago(hours: float) -> str:
	return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat().replace("+00:00", "Z")


class TestLockFiles:
	"""Naming and basic acquire/release."""

	def test_lock_file_name_is_deterministic(self, locks: WorkspaceLock):
		assert locks.lock_file_for("/ws/a") == locks.lock_file_for("/ws/a/")
		assert locks.lock_file_for("/ws/a") != locks.lock_file_for("/ws/b")
		assert locks.lock_file_for("/ws/a").suffix == ".lock"

	def test_acquire_and_release(self, locks: WorkspaceLock):
		info = locks.acquire("/ws/a", command="planloop agent 3")
		assert info.pid == os.getpid()
		assert info.type == LockType.PID
		assert not info.reclaimed_stale
		assert locks.is_locked("/ws/a")
		assert locks.get_lock_info("/ws/a").command == "planloop agent 3"

		assert locks.release("/ws/a") is True
		assert not locks.is_locked("/ws/a")
		assert locks.release("/ws/a") is False

	def test_live_holder_conflicts(self, locks: WorkspaceLock):
		locks.acquire("/ws/a", command="first")
		with pytest.raises(LockConflictError) as exc_info:
			locks.acquire("/ws/a", command="second")
		assert exc_info.value.holder.command == "first"
		assert f"pid {os.getpid()}" in str(exc_info.value)

	def test_acquire_leaves_only_the_lock_file(self, locks: WorkspaceLock):
		locks.acquire("/ws/a")
		assert [p.name for p in locks.lock_dir.iterdir()] == [locks.lock_file_for("/ws/a").name]

	@pytest.mark.parametrize("content", ["", "{\"workspace_path\": \"/ws/a\", \"pi"])
	def test_fresh_unreadable_lock_conflicts(self, locks: WorkspaceLock, content: str):
		lock_file = locks.lock_file_for("/ws/a")
		lock_file.parent.mkdir(parents=True)
		lock_file.write_text(content)

		assert locks.is_locked("/ws/a")
		with pytest.raises(LockConflictError) as exc_info:
			locks.acquire("/ws/a")
		assert exc_info.value.holder is None
		assert "unreadable" in str(exc_info.value)
		assert lock_file.read_text() == content

	def test_old_unreadable_lock_is_reclaimed(self, locks: WorkspaceLock):
		lock_file = locks.lock_file_for("/ws/a")
		lock_file.parent.mkdir(parents=True)
		lock_file.write_text("not json")
		old = (datetime.now() - timedelta(minutes=5)).timestamp()
		os.utime(lock_file, (old, old))

		assert not locks.is_locked("/ws/a")
		info = locks.acquire("/ws/a")
		assert info.reclaimed_stale
		assert locks.get_lock_info("/ws/a").pid == os.getpid()


class TestStaleness:
	"""Dead owners and old locks are reclaimed; persistent locks are not."""

	def test_dead_pid_is_stale_and_reclaimed(self, locks: WorkspaceLock):
		_write_lock(locks, "/ws/a", pid=9999)
		with patch("planloop.workspace.lock.pid_alive", return_value=False):
			assert not locks.is_locked("/ws/a")
			info = locks.acquire("/ws/a", command="new owner")
		assert info.reclaimed_stale
		assert info.pid == os.getpid()
		assert locks.get_lock_info("/ws/a").command == "new owner"

	def test_old_lock_is_stale_even_if_pid_alive(self, locks: WorkspaceLock):
		info = _write_lock(locks, "/ws/a", pid=os.getpid(), started_at=_hours_ago(25))
		assert locks.is_stale(info)

	def test_recent_live_lock_is_not_stale(self, locks: WorkspaceLock):
		info = _write_lock(locks, "/ws/a", started_at=_hours_ago(1))
		assert not locks.is_stale(info)

	def test_other_host_pid_is_not_checked(self, locks: WorkspaceLock):
		info = _write_lock(locks, "/ws/a", pid=9999, hostname="elsewhere.example")
		with patch("planloop.workspace.lock.pid_alive", return_value=False) as alive:
			assert not locks.is_stale(info)
		alive.assert_not_called()

	def test_persistent_lock_never_stale(self, locks: WorkspaceLock):
		info = _write_lock(locks, "/ws/a", pid=9999, type=LockType.PERSISTENT, started_at=_hours_ago(100))
		with patch("planloop.workspace.lock.pid_alive", return_value=False):
			assert not locks.is_stale(info)
			with pytest.raises(LockConflictError):
				locks.acquire("/ws/a")

	def test_persistent_lock_released_without_force(self, locks: WorkspaceLock):
		locks.acquire("/ws/a", lock_type=LockType.PERSISTENT, owner="alice")
		assert locks.get_lock_info("/ws/a").owner == "alice"
		assert locks.release("/ws/a") is True


class TestRelease:
	"""Release refuses to steal a live lock unless forced."""

	def test_release_other_live_pid_requires_force(self, locks: WorkspaceLock):
		_write_lock(locks, "/ws/a", pid=4242)
		with patch("planloop.workspace.lock.pid_alive", return_value=True):
			with pytest.raises(LockConflictError):
				locks.release("/ws/a")
			assert locks.release("/ws/a", force=True) is True
		assert locks.get_lock_info("/ws/a") is None

	def test_release_stale_lock_without_force(self, locks: WorkspaceLock):
		_write_lock(locks, "/ws/a", pid=4242)
		with patch("planloop.workspace.lock.pid_alive", return_value=False):
			assert locks.release("/ws/a") is True


def test_pid_alive():
	assert pid_alive(os.getpid())
	assert not pid_alive(0)
	assert not pid_alive(-5)
