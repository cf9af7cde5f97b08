"""Agent subprocess plumbing - streaming, inactivity timeout and cancellation."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .base import ExecutorError, ExecutorTimeoutError

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


@dataclass
class ProcessOutput:
	"""Captured output of an agent process."""
	exit_code: int
	stdout: str
	stderr: str


async def terminate_process(proc: asyncio.subprocess.Process) -> None:
	"""SIGTERM, then SIGKILL if the process does not exit in time."""
	if proc.returncode is not None:
		return
	try:
		proc.terminate()
	except ProcessLookupError:
		return
	try:
		await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
	except asyncio.TimeoutError:
		try:
			proc.kill()
		except ProcessLookupError:
			return
		await proc.wait()


async def run_agent_process(
	argv: list[str],
	cwd: Optional[Path] = None,
	stdin_text: Optional[str] = None,
	inactivity_timeout: Optional[float] = None,
	on_line: Optional[Callable[[str], None]] = None,
	env: Optional[dict[str, str]] = None,
) -> ProcessOutput:
	"""
	Run an agent process, streaming its output line by line.

	Args:
		argv: Command and arguments
		cwd: Working directory
		stdin_text: Written to stdin, which is then closed
		inactivity_timeout: Kill the process after this many seconds without output
		on_line: Called with every stdout line as it arrives
		env: Full environment for the process

	Returns:
		ProcessOutput

	Raises:
		ExecutorError: The binary could not be started
		ExecutorTimeoutError: No output for longer than inactivity_timeout
		asyncio.CancelledError: After the subprocess has been terminated
	"""
	try:
		proc = await asyncio.create_subprocess_exec(
			*argv,
			stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
			cwd=str(cwd) if cwd else None,
			env=env,
		)
	except FileNotFoundError as e:
		raise ExecutorError(f"Executable not found: {argv[0]}", executor=argv[0]) from e

	loop = asyncio.get_running_loop()
	last_activity = loop.time()
	stdout_lines: list[str] = []
	stderr_lines: list[str] = []

	async def pump(stream: asyncio.StreamReader, sink: list[str], callback: Optional[Callable[[str], None]]) -> None:
		nonlocal last_activity
		async for raw in stream:
			line = raw.decode("utf-8", errors="replace")
			sink.append(line)
			last_activity = loop.time()
			if callback is not None:
				callback(line.rstrip("\n"))

	async def feed_stdin() -> None:
		assert proc.stdin is not None
		try:
			proc.stdin.write(stdin_text.encode())
			await proc.stdin.drain()
		except (BrokenPipeError, ConnectionResetError):
			logger.debug(f"{argv[0]} closed stdin early")
		finally:
			proc.stdin.close()

	async def watchdog() -> None:
		interval = min(1.0, inactivity_timeout)
		while loop.time() - last_activity < inactivity_timeout:
			await asyncio.sleep(interval)

	readers = asyncio.gather(
		pump(proc.stdout, stdout_lines, on_line),
		pump(proc.stderr, stderr_lines, None),
		feed_stdin() if stdin_text is not None else asyncio.sleep(0),
	)

	watch: Optional[asyncio.Future] = None
	try:
		if inactivity_timeout:
			watch = asyncio.ensure_future(watchdog())
			done, _ = await asyncio.wait({readers, watch}, return_when=asyncio.FIRST_COMPLETED)
			if watch in done and readers not in done:
				await terminate_process(proc)
				readers.cancel()
				await asyncio.gather(readers, return_exceptions=True)
				raise ExecutorTimeoutError(
					f"{argv[0]} produced no output for {inactivity_timeout:.0f}s; killed",
					executor=argv[0],
				)
			watch.cancel()
			await readers
		else:
			await readers
		exit_code = await proc.wait()
	except asyncio.CancelledError:
		logger.info(f"Cancelling {argv[0]} (pid {proc.pid})")
		await terminate_process(proc)
		readers.cancel()
		if watch is not None:
			watch.cancel()
		raise

	return ProcessOutput(exit_code=exit_code, stdout="".join(stdout_lines), stderr="".join(stderr_lines))


async def run_interactive_process(argv: list[str], cwd: Optional[Path] = None, env: Optional[dict[str, str]] = None) -> int:
	"""Run a process attached to the terminal and return its exit code."""
	try:
		proc = await asyncio.create_subprocess_exec(*argv, cwd=str(cwd) if cwd else None, env=env)
	except FileNotFoundError as e:
		raise ExecutorError(f"Executable not found: {argv[0]}", executor=argv[0]) from e
	try:
		return await proc.wait()
	except asyncio.CancelledError:
		await terminate_process(proc)
		raise
