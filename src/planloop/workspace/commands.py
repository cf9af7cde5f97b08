"""Workspace commands - configured shell commands run inside a workspace."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import CommandConfig

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 1800


@dataclass
class CommandResult:
	"""Outcome of one command. `allowed` means a failure is tolerated."""
	title: str
	success: bool
	exit_code: int
	output: str
	allowed: bool = False

	@property
	def fatal(self) -> bool:
		return not self.success and not self.allowed


def resolve_working_directory(command: CommandConfig, root: Path) -> Path:
	"""Working directory for a command; relative values resolve against root."""
	if not command.working_directory:
		return root
	wd = Path(command.working_directory).expanduser()
	return wd if wd.is_absolute() else root / wd


async def run_workspace_command(
	command: CommandConfig,
	root: Path,
	extra_env: Optional[dict[str, str]] = None,
	timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> CommandResult:
	"""
	Run one configured command through the shell.

	Args:
		command: Command configuration
		root: Workspace root that relative working directories resolve against
		extra_env: Variables layered over the process environment and command.env
		timeout: Seconds before the command is killed

	Returns:
		CommandResult; failures never raise
	"""
	cwd = resolve_working_directory(command, Path(root))
	env = {**os.environ, **(extra_env or {}), **command.env}
	logger.info(f"Running {command.label} in {cwd}")

	try:
		proc = await asyncio.create_subprocess_shell(
			command.command,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
			cwd=str(cwd),
			env=env,
		)
	except OSError as e:
		logger.error(f"{command.label} could not start: {e}")
		return CommandResult(command.label, False, -1, str(e), allowed=command.allow_failure)

	try:
		stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		proc.kill()
		await proc.wait()
		output = f"{command.label} timed out after {timeout}s"
		logger.error(output)
		return CommandResult(command.label, False, -1, output, allowed=command.allow_failure)
	except asyncio.CancelledError:
		logger.info(f"Cancelling {command.label} (pid {proc.pid})")
		if proc.returncode is None:
			proc.kill()
		await proc.wait()
		raise

	output = stdout.decode(errors="replace")
	exit_code = proc.returncode or 0
	success = exit_code == 0

	if success:
		if output.strip() and not command.hide_output_on_success:
			logger.info(output.rstrip())
	elif command.allow_failure:
		logger.warning(f"{command.label} failed with exit code {exit_code} (allowed)\n{output.rstrip()}")
	else:
		logger.error(f"{command.label} failed with exit code {exit_code}\n{output.rstrip()}")

	return CommandResult(command.label, success, exit_code, output, allowed=command.allow_failure)


async def run_command_sequence(
	commands: list[CommandConfig],
	root: Path,
	extra_env: Optional[dict[str, str]] = None,
) -> bool:
	"""
	Run commands in order, stopping at the first failure that is not allowed.

	Returns:
		False if a command failed without allow_failure, else True
	"""
	for command in commands:
		result = await run_workspace_command(command, root, extra_env)
		if result.fatal:
			return False
	return True
