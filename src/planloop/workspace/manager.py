"""
Workspace Manager - provisions isolated working directories for tasks.

Two strategies, chosen by `[workspace] method`:
- script: a user executable prints the absolute path of a workspace it made
- managed: clone the repository under workspace_base_dir, branch it, copy
  the plan file in, then run post-clone commands inside the clone
"""

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..config import Config, WorkspaceMethod
from ..plans.models import Plan
from .commands import run_command_sequence
from .lock import LockInfo, WorkspaceLock
from .registry import FieldPatch, WorkspacePatch, WorkspaceRegistry
from .vcs import (
	RepositoryIdentity,
	find_repo_root,
	get_repository_identity,
	is_jj_repo,
	repository_name,
	run_command,
	run_git,
	run_jj,
)

logger = logging.getLogger(__name__)

CLONE_TIMEOUT = 600
SCRIPT_TIMEOUT = 600


@dataclass
class Workspace:
	"""A workspace ready for an executor."""
	path: Path
	task_id: str
	repository_id: str
	branch: Optional[str] = None
	plan_file: Optional[Path] = None
	lock: Optional[LockInfo] = None


def _task_env(task_id: str, plan_file: Optional[Path]) -> dict[str, str]:
	env = {"PLANLOOP_TASK_ID": task_id}
	if plan_file is not None:
		env["PLANLOOP_PLAN_FILE_PATH"] = str(plan_file)
	return env


class WorkspaceManager:
	"""
	Creates and prepares workspaces, registering them and optionally locking them.

	Usage:
		manager = WorkspaceManager(config, registry, locks)
		workspace = await manager.create("task-12", plan_file=Path("tasks/12-x.plan.md"))
		if workspace is None:
			...  # failure details are logged
	"""

	def __init__(self, config: Config, registry: WorkspaceRegistry, lock: WorkspaceLock):
		self.config = config
		self.registry = registry
		self.lock = lock

	async def resolve_root(self, repo_root: Optional[Path]) -> Path:
		start = Path(repo_root or self.config.repo_root or Path.cwd())
		return await find_repo_root(start) or start.resolve()

	async def create(
		self,
		task_id: str,
		plan_file: Optional[Union[str, Path]] = None,
		repo_root: Optional[Path] = None,
		plan: Optional[Plan] = None,
		lock: bool = True,
	) -> Optional[Workspace]:
		"""
		Create a workspace for a task using the configured strategy.

		Args:
			task_id: Task identifier; used for the directory and branch names
			plan_file: Plan file to hand to the workspace
			repo_root: Source repository (defaults to the configured or current one)
			plan: Plan whose id/title are recorded on the registry entry
			lock: Acquire the workspace lock for this process

		Returns:
			The Workspace, or None on failure (the cause is logged)
		"""
		root = await self.resolve_root(repo_root)
		identity = await get_repository_identity(root)
		plan_path = Path(plan_file).resolve() if plan_file else None

		if self.config.workspace.method == WorkspaceMethod.SCRIPT:
			workspace = await self._create_with_script(task_id, plan_path, root, identity)
		else:
			workspace = await self._create_managed(task_id, plan_path, root, identity)

		if workspace is None:
			return None

		patch = WorkspacePatch(
			repository_id=FieldPatch.set_to(identity.repository_id),
			task_id=FieldPatch.set_to(task_id),
		)
		if plan_path is not None:
			patch.original_plan_file_path = FieldPatch.set_to(str(plan_path))
		if plan is not None:
			patch.plan_id = FieldPatch.set_to(plan.id)
			patch.plan_title = FieldPatch.set_to(plan.display_title)
			if plan.issue:
				patch.issue_urls = FieldPatch.set_to(list(plan.issue))
		self.registry.patch_metadata(workspace.path, patch, created=True)

		if lock:
			workspace.lock = self.lock.acquire(workspace.path, command=f"planloop workspace {task_id}")

		logger.info(f"Created workspace {workspace.path} for {task_id}")
		return workspace

	async def _create_with_script(
		self,
		task_id: str,
		plan_file: Optional[Path],
		root: Path,
		identity: RepositoryIdentity,
	) -> Optional[Workspace]:
		script = self.config.workspace.script_path
		if not script:
			logger.error("Workspace method is 'script' but no script_path is configured")
			return None

		script_path = Path(script).expanduser()
		if not script_path.is_absolute():
			script_path = root / script_path

		env = {**os.environ, **_task_env(task_id, plan_file)}
		stdout, stderr, rc = await run_command([str(script_path)], root, timeout=SCRIPT_TIMEOUT, env=env)
		if rc != 0:
			logger.error(f"Workspace script {script_path} failed with exit code {rc}: {stderr}")
			return None

		lines = [line.strip() for line in stdout.splitlines() if line.strip()]
		if not lines:
			logger.error(f"Workspace script {script_path} printed no workspace path")
			return None

		path = Path(lines[-1])
		if not path.is_absolute() or not path.is_dir():
			logger.error(f"Workspace script {script_path} printed an invalid path: {lines[-1]}")
			return None

		return Workspace(path=path, task_id=task_id, repository_id=identity.repository_id, plan_file=plan_file)

	def _clone_target(self, identity: RepositoryIdentity, task_id: str) -> Path:
		base = self.config.workspace_base_dir.expanduser()
		name = f"{repository_name(identity)}-{task_id}"
		target = base / name
		counter = 2
		while target.exists():
			target = base / f"{name}-{counter}"
			counter += 1
		return target

	async def _create_managed(
		self,
		task_id: str,
		plan_file: Optional[Path],
		root: Path,
		identity: RepositoryIdentity,
	) -> Optional[Workspace]:
		source = self.config.workspace.repository_url or identity.remote_url
		if not source:
			logger.info(f"No remote configured; cloning from local repository {root}")
			source = str(root)

		target = self._clone_target(identity, task_id)
		target.parent.mkdir(parents=True, exist_ok=True)
		try:
			return await self._clone_into(target, source, task_id, plan_file, root, identity)
		except BaseException:
			logger.warning(f"Workspace creation interrupted; removing {target}")
			shutil.rmtree(target, ignore_errors=True)
			raise

	async def _clone_into(
		self,
		target: Path,
		source: str,
		task_id: str,
		plan_file: Optional[Path],
		root: Path,
		identity: RepositoryIdentity,
	) -> Optional[Workspace]:
		use_jj = is_jj_repo(root)

		if use_jj:
			_, stderr, rc = await run_jj(["git", "clone", source, str(target)], target.parent, timeout=CLONE_TIMEOUT)
		else:
			_, stderr, rc = await run_git(["clone", source, str(target)], target.parent, timeout=CLONE_TIMEOUT)
		if rc != 0:
			logger.error(f"Clone of {source} failed: {stderr}")
			shutil.rmtree(target, ignore_errors=True)
			return None

		branch = None
		if self.config.workspace.create_branch:
			branch = task_id
			if not await self._create_branch(target, branch, use_jj):
				shutil.rmtree(target, ignore_errors=True)
				return None

		copied_plan = self._copy_plan_file(plan_file, root, target)

		ok = await run_command_sequence(
			self.config.workspace.post_clone_commands,
			target,
			_task_env(task_id, copied_plan),
		)
		if not ok:
			logger.error(f"Post-clone commands failed; removing {target}")
			shutil.rmtree(target, ignore_errors=True)
			return None

		return Workspace(
			path=target,
			task_id=task_id,
			repository_id=identity.repository_id,
			branch=branch,
			plan_file=copied_plan,
		)

	async def _create_branch(self, path: Path, branch: str, use_jj: bool) -> bool:
		if use_jj:
			_, stderr, rc = await run_jj(["new"], path)
			if rc == 0:
				_, stderr, rc = await run_jj(["bookmark", "set", branch, "-r", "@"], path)
		else:
			_, stderr, rc = await run_git(["checkout", "-b", branch], path)
			if rc != 0 and "already exists" in stderr:
				_, stderr, rc = await run_git(["checkout", branch], path)
		if rc != 0:
			logger.error(f"Could not create branch {branch} in {path}: {stderr}")
			return False
		return True

	def _copy_plan_file(self, plan_file: Optional[Path], root: Path, target: Path) -> Optional[Path]:
		"""Copy the plan into the workspace at the same path relative to the repository root."""
		if plan_file is None or not plan_file.is_file():
			return None
		try:
			relative = plan_file.resolve().relative_to(root.resolve())
		except ValueError:
			relative = Path(plan_file.name)
		dest = target / relative
		dest.parent.mkdir(parents=True, exist_ok=True)
		shutil.copy2(plan_file, dest)
		return dest

	async def prepare_existing(
		self,
		path: Union[str, Path],
		task_id: str,
		plan_file: Optional[Union[str, Path]] = None,
		repo_root: Optional[Path] = None,
	) -> bool:
		"""
		Reuse a tracked workspace for a new task.

		Runs update commands, switches to the task branch when create_branch is
		set, copies the plan file and updates the registry entry.

		Returns:
			False if a non-allowed command or the branch switch failed
		"""
		path = Path(path)
		plan_path = Path(plan_file).resolve() if plan_file else None
		root = await self.resolve_root(repo_root)
		copied_plan = self._copy_plan_file(plan_path, root, path)

		env = _task_env(task_id, copied_plan)
		if not await run_command_sequence(self.config.workspace.update_commands, path, env):
			logger.error(f"Update commands failed in {path}")
			return False

		if self.config.workspace.create_branch:
			if not await self._create_branch(path, task_id, is_jj_repo(path)):
				return False

		patch = WorkspacePatch(task_id=FieldPatch.set_to(task_id))
		if plan_path is not None:
			patch.original_plan_file_path = FieldPatch.set_to(str(plan_path))
		self.registry.patch_metadata(path, patch)
		return True
