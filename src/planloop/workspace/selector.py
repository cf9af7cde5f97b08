"""Workspace auto-selection - reuse a free workspace for the repository or create one."""

import logging
from pathlib import Path
from typing import Optional, Union

from ..plans.models import Plan, parse_timestamp
from .lock import LockConflictError
from .manager import Workspace, WorkspaceManager
from .registry import ListEntry
from .vcs import current_branch, get_repository_identity

logger = logging.getLogger(__name__)


class WorkspaceAutoSelector:
	"""
	Picks a workspace for a task.

	Candidates are tracked workspaces with the same repository identity.
	Unlocked ones are tried first, newest first; stale locks are reclaimed.
	When nothing can be reused a new workspace is created.
	"""

	def __init__(self, manager: WorkspaceManager):
		self.manager = manager

	def _candidate_order(self, items: list[ListEntry]) -> list[ListEntry]:
		def key(item: ListEntry):
			locked = item.lock is not None and not self.manager.lock.is_stale(item.lock)
			updated = parse_timestamp(item.entry.updated_at or item.entry.created_at)
			return (locked, -(updated.timestamp() if updated else 0.0))
		return sorted((i for i in items if i.status == "ok"), key=key)

	async def select(
		self,
		task_id: str,
		plan_file: Optional[Union[str, Path]] = None,
		repo_root: Optional[Path] = None,
		prefer_new: bool = False,
		plan: Optional[Plan] = None,
	) -> Optional[Workspace]:
		"""
		Lock and prepare an existing workspace, or create a new one.

		Args:
			task_id: Task identifier for branch and registry
			plan_file: Plan file to copy into the workspace
			repo_root: Repository to match against
			prefer_new: Skip reuse and always create
			plan: Plan recorded on a newly created entry

		Returns:
			The Workspace (locked by this process), or None if creation failed
		"""
		root = await self.manager.resolve_root(repo_root)
		identity = await get_repository_identity(root)

		if not prefer_new:
			items = await self.manager.registry.list_entries(
				repository_id=identity.repository_id,
				lock=self.manager.lock,
			)
			for item in self._candidate_order(items):
				try:
					info = self.manager.lock.acquire(item.path, command=f"planloop workspace {task_id}")
				except LockConflictError as e:
					logger.debug(f"Skipping {item.path}: {e}")
					continue

				if not await self.manager.prepare_existing(item.path, task_id, plan_file, root):
					self.manager.lock.release(item.path)
					continue

				logger.info(f"Reusing workspace {item.path} for {task_id}")
				return Workspace(
					path=Path(item.path),
					task_id=task_id,
					repository_id=identity.repository_id,
					branch=await current_branch(Path(item.path)),
					lock=info,
				)

		return await self.manager.create(task_id, plan_file=plan_file, repo_root=root, plan=plan)
