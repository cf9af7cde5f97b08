"""VCS helpers - repository root, branch and identity for git and jj checkouts."""

import asyncio
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


async def _kill(proc: asyncio.subprocess.Process) -> None:
	if proc.returncode is None:
		try:
			proc.kill()
		except ProcessLookupError:
			pass
	await proc.wait()


async def run_command(
	argv: list[str],
	cwd: Path,
	timeout: int = 30,
	env: Optional[dict[str, str]] = None,
) -> tuple[str, str, int]:
	"""Run a command and return (stdout, stderr, returncode)."""
	try:
		proc = await asyncio.create_subprocess_exec(
			*argv,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
			cwd=str(cwd),
			env=env,
		)
	except (FileNotFoundError, NotADirectoryError) as e:
		return ("", str(e), 127)
	except OSError as e:
		# Not executable, or otherwise refused by the OS
		return ("", str(e), 126)
	try:
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		await _kill(proc)
		return ("", f"{argv[0]} {argv[1] if len(argv) > 1 else ''} timed out after {timeout}s".strip(), -1)
	except asyncio.CancelledError:
		logger.info(f"Cancelling {argv[0]} (pid {proc.pid})")
		await _kill(proc)
		raise
	return (
		stdout.decode(errors="replace").strip(),
		stderr.decode(errors="replace").strip(),
		proc.returncode or 0,
	)


async def run_git(args: list[str], cwd: Path, timeout: int = 30) -> tuple[str, str, int]:
	"""Run a git command and return (stdout, stderr, returncode)."""
	return await run_command(["git", *args], cwd, timeout=timeout)


async def run_jj(args: list[str], cwd: Path, timeout: int = 30) -> tuple[str, str, int]:
	"""Run a jj command and return (stdout, stderr, returncode)."""
	return await run_command(["jj", *args], cwd, timeout=timeout)


def _find_jj_root(start: Path) -> Optional[Path]:
	for candidate in [start, *start.parents]:
		if (candidate / ".jj").is_dir():
			return candidate
	return None


async def find_repo_root(cwd: Path) -> Optional[Path]:
	"""The enclosing repository root (git toplevel, else nearest .jj directory)."""
	cwd = Path(cwd)
	stdout, _, rc = await run_git(["rev-parse", "--show-toplevel"], cwd)
	if rc == 0 and stdout:
		return Path(stdout)
	return _find_jj_root(cwd.resolve())


def is_jj_repo(path: Path) -> bool:
	"""True if path sits inside a jj checkout."""
	return _find_jj_root(Path(path).resolve()) is not None


async def current_branch(path: Path) -> Optional[str]:
	"""
	Branch checked out at path, computed live.

	For jj, the nearest bookmark on the working copy's ancestry.

	Returns:
		Branch name, or None when detached or unknown
	"""
	path = Path(path)
	if is_jj_repo(path):
		stdout, _, rc = await run_jj(
			["log", "-r", "latest(heads(::@ & bookmarks()))", "--no-graph", "-T", "bookmarks"],
			path,
		)
		if rc == 0 and stdout:
			return stdout.split()[0].rstrip("*")
		return None

	stdout, _, rc = await run_git(["branch", "--show-current"], path)
	if rc == 0 and stdout:
		return stdout
	return None


_SCP_LIKE = re.compile(r"^(?:(?P<user>[^@/]+)@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")
_URL_LIKE = re.compile(r"^(?P<scheme>[a-z][a-z0-9+.-]*)://(?:[^@/]*@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.*)$", re.I)


def normalize_remote_url(url: str) -> str:
	"""
	Normalize a remote URL to `host/owner/repo`.

	Scheme, credentials, port and a trailing `.git` are dropped and the host is
	lowercased, so `git@github.com:Org/Repo.git` and
	`https://token@GitHub.com/Org/Repo` normalize to the same value.
	"""
	url = url.strip()
	match = _URL_LIKE.match(url)
	if match and match.group("scheme").lower() != "file":
		host, path = match.group("host"), match.group("path")
	else:
		match = _SCP_LIKE.match(url)
		if match and "://" not in url:
			host, path = match.group("host"), match.group("path")
		else:
			# Local path or file:// remote
			return re.sub(r"^file://", "", url).rstrip("/").removesuffix(".git")

	path = path.strip("/").removesuffix(".git")
	return f"{host.lower()}/{path}"


@dataclass
class RepositoryIdentity:
	"""How workspaces are grouped by project."""
	repository_id: str
	remote_url: Optional[str]
	repo_root: Path


async def _remote_url(repo_root: Path) -> Optional[str]:
	stdout, _, rc = await run_git(["remote", "get-url", "origin"], repo_root)
	if rc == 0 and stdout:
		return stdout
	stdout, _, rc = await run_git(["remote"], repo_root)
	if rc == 0 and stdout:
		first = stdout.splitlines()[0].strip()
		stdout, _, rc = await run_git(["remote", "get-url", first], repo_root)
		if rc == 0 and stdout:
			return stdout
	return None


async def _root_commit(repo_root: Path) -> Optional[str]:
	stdout, _, rc = await run_git(["rev-list", "--max-parents=0", "HEAD"], repo_root)
	if rc == 0 and stdout:
		# Repositories with merged histories have several roots
		return sorted(stdout.split())[0]
	return None


async def get_repository_identity(cwd: Path) -> RepositoryIdentity:
	"""
	Resolve the identity used to match workspaces to a repository.

	Order: origin URL, first other remote, `git:<root commit>`, and finally
	`local:<hash of the repository path>` for repositories with no history.
	"""
	cwd = Path(cwd)
	repo_root = await find_repo_root(cwd) or cwd.resolve()

	remote = await _remote_url(repo_root)
	if remote:
		return RepositoryIdentity(
			repository_id=normalize_remote_url(remote),
			remote_url=remote,
			repo_root=repo_root,
		)

	root_commit = await _root_commit(repo_root)
	if root_commit:
		return RepositoryIdentity(repository_id=f"git:{root_commit}", remote_url=None, repo_root=repo_root)

	digest = hashlib.sha1(os.path.realpath(repo_root).encode()).hexdigest()[:16]
	return RepositoryIdentity(repository_id=f"local:{digest}", remote_url=None, repo_root=repo_root)


def repository_name(identity: RepositoryIdentity) -> str:
	"""Short name for directory naming: last path segment of the identity."""
	if identity.remote_url:
		return identity.repository_id.rstrip("/").rsplit("/", 1)[-1]
	return identity.repo_root.name or "repo"
