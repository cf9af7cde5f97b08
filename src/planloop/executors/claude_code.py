"""Claude Code executor - drives the `claude` CLI."""

import json
import logging
import os
from typing import Any, Optional

from .base import (
	ExecutionContext,
	ExecutionMode,
	ExecutionResult,
	Executor,
	ExecutorCapabilities,
	parse_completed_tasks,
)
from .process import run_agent_process, run_interactive_process

logger = logging.getLogger(__name__)


class ClaudeCodeExecutor(Executor):
	"""
	Runs `claude` in single-shot (`--print`) mode, or as an interactive session
	when keep_open is set or no prompt is given.
	"""

	name = "claude-code"
	capabilities = ExecutorCapabilities(
		supports_terminal_input=True,
		supports_batch=True,
		requires_prompt=False,
		supports_structured_output=True,
	)

	def __init__(self, binary: str = "claude", model: Optional[str] = None, extra_args: Optional[list[str]] = None):
		self.binary = binary
		self.model = model
		self.extra_args = extra_args or []

	def build_command(self, context: ExecutionContext, interactive: bool) -> list[str]:
		argv = [self.binary]
		if not interactive:
			argv.append("--print")
			if context.mode == ExecutionMode.REVIEW:
				argv.extend(["--output-format", "json"])
				if context.output_schema is not None:
					argv.extend(["--json-schema", json.dumps(context.output_schema)])
		if self.model:
			argv.extend(["--model", self.model])
		argv.extend(self.extra_args)
		return argv

	@staticmethod
	def _unwrap_json_envelope(stdout: str) -> tuple[str, Optional[Any]]:
		"""`--output-format json` wraps the reply; return (text, structured_output)."""
		try:
			envelope = json.loads(stdout)
		except json.JSONDecodeError:
			return stdout, None
		if not isinstance(envelope, dict):
			return stdout, None
		text = envelope.get("result")
		return (text if isinstance(text, str) else stdout), envelope.get("structured_output")

	def _env(self, context: ExecutionContext) -> dict[str, str]:
		env = os.environ.copy()
		if context.plan_id is not None:
			env["PLANLOOP_PLAN_ID"] = str(context.plan_id)
		if context.plan_file is not None:
			env["PLANLOOP_PLAN_FILE_PATH"] = str(context.plan_file)
		return env

	async def execute(self, prompt: Optional[str], context: ExecutionContext) -> ExecutionResult:
		self.check_prompt(prompt)
		interactive = context.keep_open or not prompt
		argv = self.build_command(context, interactive)
		cwd = context.workspace_path

		if interactive:
			if prompt:
				argv.append(prompt)
			logger.info(f"Starting interactive claude session in {cwd or os.getcwd()}")
			exit_code = await run_interactive_process(argv, cwd=cwd, env=self._env(context))
			return ExecutionResult(
				success=exit_code == 0,
				exit_code=exit_code,
				error=None if exit_code == 0 else f"claude exited with code {exit_code}",
			)

		logger.info(f"Running claude on plan {context.plan_id} ({context.mode.value})")
		result = await run_agent_process(
			argv,
			cwd=cwd,
			stdin_text=prompt,
			inactivity_timeout=context.inactivity_timeout,
			on_line=lambda line: logger.debug(f"claude: {line}"),
			env=self._env(context),
		)

		output, structured = result.stdout, None
		if context.mode == ExecutionMode.REVIEW:
			output, structured = self._unwrap_json_envelope(result.stdout)

		success = result.exit_code == 0
		return ExecutionResult(
			success=success,
			output=output,
			structured=structured,
			completed_task_indices=parse_completed_tasks(output) if context.batch_mode else [],
			exit_code=result.exit_code,
			error=None if success else (result.stderr.strip() or f"claude exited with code {result.exit_code}"),
		)
