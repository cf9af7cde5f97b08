"""Tests for VCS helpers: remote normalization, repository identity and branches."""

import asyncio
import hashlib
import os
from pathlib import Path

import pytest

from planloop.workspace.vcs import (
	RepositoryIdentity,
	current_branch,
	find_repo_root,
	get_repository_identity,
	is_jj_repo,
	normalize_remote_url,
	repository_name,
	run_command,
)

from .helpers import git_output, init_git_repo


class TestNormalizeRemoteUrl:
	"""Different spellings of one remote normalize to the same id."""

	@pytest.mark.parametrize("url", [
		"git@github.com:Org/Repo.git",
		"https://github.com/Org/Repo",
		"https://token@GitHub.com/Org/Repo.git",
		"ssh://git@github.com:22/Org/Repo.git",
		"https://github.com/Org/Repo/",
	])
	def test_github_variants(self, url):
		assert normalize_remote_url(url) == "github.com/Org/Repo"

	def test_nested_group_path(self):
		assert normalize_remote_url("git@gitlab.com:group/sub/project.git") == "gitlab.com/group/sub/project"

	def test_local_paths_are_kept(self):
		assert normalize_remote_url("/srv/git/project.git") == "/srv/git/project"
		assert normalize_remote_url("file:///srv/git/project.git") == "/srv/git/project"


class TestRepositoryIdentity:
	"""Origin, then other remotes, then root commit, then path hash."""

	@pytest.mark.asyncio
	async def test_origin_remote(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo, remote="git@github.com:acme/widgets.git")
		identity = await get_repository_identity(repo)
		assert identity.repository_id == "github.com/acme/widgets"
		assert identity.remote_url == "git@github.com:acme/widgets.git"
		assert repository_name(identity) == "widgets"

	@pytest.mark.asyncio
	async def test_first_remote_when_no_origin(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		git_output(repo, "remote", "add", "upstream", "https://example.com/team/tool.git")
		identity = await get_repository_identity(repo)
		assert identity.repository_id == "example.com/team/tool"

	@pytest.mark.asyncio
	async def test_root_commit_without_remote(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		root_sha = git_output(repo, "rev-list", "--max-parents=0", "HEAD")

		identity = await get_repository_identity(repo / ".")
		assert identity.repository_id == f"git:{root_sha}"
		assert identity.remote_url is None
		assert repository_name(identity) == "repo"

	@pytest.mark.asyncio
	async def test_identity_stable_across_clones(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		git_output(tmp_path, "clone", str(repo), str(tmp_path / "copy"))
		git_output(tmp_path / "copy", "remote", "remove", "origin")

		original = await get_repository_identity(repo)
		copy = await get_repository_identity(tmp_path / "copy")
		assert original.repository_id == copy.repository_id

	@pytest.mark.asyncio
	async def test_plain_directory_uses_path_hash(self, tmp_path: Path):
		plain = tmp_path / "plain"
		plain.mkdir()
		identity = await get_repository_identity(plain)
		digest = hashlib.sha1(os.path.realpath(plain).encode()).hexdigest()[:16]
		assert identity.repository_id == f"local:{digest}"

	def test_repository_name_for_local_identity(self):
		identity = RepositoryIdentity(repository_id="local:abc", remote_url=None, repo_root=Path("/src/thing"))
		assert repository_name(identity) == "thing"


class TestRepositoryQueries:
	"""Root discovery and branch lookup."""

	@pytest.mark.asyncio
	async def test_find_repo_root_from_subdirectory(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		(repo / "src" / "pkg").mkdir(parents=True)
		root = await find_repo_root(repo / "src" / "pkg")
		assert root.resolve() == repo.resolve()

	@pytest.mark.asyncio
	async def test_find_repo_root_outside_repo(self, tmp_path: Path):
		assert await find_repo_root(tmp_path) is None

	@pytest.mark.asyncio
	async def test_jj_directory_detected(self, tmp_path: Path):
		(tmp_path / "jjrepo" / ".jj").mkdir(parents=True)
		(tmp_path / "jjrepo" / "sub").mkdir()
		assert is_jj_repo(tmp_path / "jjrepo" / "sub")
		assert await find_repo_root(tmp_path / "jjrepo" / "sub") == (tmp_path / "jjrepo").resolve()

	@pytest.mark.asyncio
	async def test_current_branch(self, tmp_path: Path):
		repo = tmp_path / "repo"
		init_git_repo(repo)
		git_output(repo, "checkout", "-b", "task-7")
		assert await current_branch(repo) == "task-7"

		git_output(repo, "checkout", "--detach")
		assert await current_branch(repo) is None


class TestRunCommand:
	"""Subprocess helper."""

	@pytest.mark.asyncio
	async def test_captures_output_and_exit_code(self, tmp_path: Path):
		stdout, stderr, rc = await run_command(["sh", "-c", "echo out; echo err >&2; exit 3"], tmp_path)
		assert (stdout, stderr, rc) == ("out", "err", 3)

	@pytest.mark.asyncio
	async def test_missing_binary(self, tmp_path: Path):
		_, stderr, rc = await run_command(["planloop-no-such-binary"], tmp_path)
		assert rc == 127
		assert stderr

	@pytest.mark.asyncio
	async def test_timeout(self, tmp_path: Path):
		_, stderr, rc = await run_command(["sleep", "5"], tmp_path, timeout=0.2)
		assert rc == -1
		assert "timed out" in stderr

	@pytest.mark.asyncio
	async def test_non_executable_file(self, tmp_path: Path):
		script = tmp_path / "script.sh"
		script.write_text("#!/bin/sh\necho hi\n")
		script.chmod(0o644)
		_, stderr, rc = await run_command([str(script)], tmp_path)
		assert rc == 126
		assert "ermission denied" in stderr

	@pytest.mark.asyncio
	async def test_cancel_kills_child(self, tmp_path: Path):
		pid_file = tmp_path / "pid"
		task = asyncio.create_task(run_command(["sh", "-c", f"echo $$ > {pid_file}; exec sleep 30"], tmp_path))
		for _ in range(100):
			if pid_file.exists() and pid_file.read_text().strip():
				break
			await asyncio.sleep(0.05)
		pid = int(pid_file.read_text())

		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task
		with pytest.raises(ProcessLookupError):
			os.kill(pid, 0)
