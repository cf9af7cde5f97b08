"""Codex CLI executor - drives `codex exec`."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .base import (
	ExecutionContext,
	ExecutionMode,
	ExecutionResult,
	Executor,
	ExecutorCapabilities,
	parse_completed_tasks,
)
from .process import run_agent_process

logger = logging.getLogger(__name__)


class CodexCliExecutor(Executor):
	"""
	Runs `codex exec` non-interactively.

	Codex cannot start without a prompt and has no terminal-forwarding mode,
	so keep_open is ignored.
	"""

	name = "codex-cli"
	capabilities = ExecutorCapabilities(
		supports_terminal_input=False,
		supports_batch=True,
		requires_prompt=True,
		supports_structured_output=True,
	)

	def __init__(self, binary: str = "codex", model: Optional[str] = None, extra_args: Optional[list[str]] = None):
		self.binary = binary
		self.model = model
		self.extra_args = extra_args or []

	def build_command(self, context: ExecutionContext, last_message_file: Path, schema_file: Optional[Path]) -> list[str]:
		argv = [self.binary, "exec", "--full-auto", "--output-last-message", str(last_message_file)]
		if context.workspace_path is not None:
			argv.extend(["--cd", str(context.workspace_path)])
		if schema_file is not None:
			argv.extend(["--output-schema", str(schema_file)])
		if self.model:
			argv.extend(["--model", self.model])
		argv.extend(self.extra_args)
		# Prompt comes from stdin
		argv.append("-")
		return argv

	async def execute(self, prompt: Optional[str], context: ExecutionContext) -> ExecutionResult:
		self.check_prompt(prompt)
		if context.keep_open:
			logger.warning("codex-cli does not support interactive sessions; running single-shot")

		with tempfile.TemporaryDirectory(prefix="planloop-codex-") as tmp:
			tmp_dir = Path(tmp)
			last_message_file = tmp_dir / "last-message.txt"
			schema_file = None
			if context.mode == ExecutionMode.REVIEW and context.output_schema is not None:
				schema_file = tmp_dir / "schema.json"
				schema_file.write_text(json.dumps(context.output_schema), encoding="utf-8")

			argv = self.build_command(context, last_message_file, schema_file)
			logger.info(f"Running codex on plan {context.plan_id} ({context.mode.value})")
			result = await run_agent_process(
				argv,
				cwd=context.workspace_path,
				stdin_text=prompt,
				inactivity_timeout=context.inactivity_timeout,
				on_line=lambda line: logger.debug(f"codex: {line}"),
				env=os.environ.copy(),
			)

			output = result.stdout
			if last_message_file.exists():
				last_message = last_message_file.read_text(encoding="utf-8")
				if last_message.strip():
					output = last_message

		structured = None
		if context.mode == ExecutionMode.REVIEW:
			try:
				structured = json.loads(output)
			except json.JSONDecodeError:
				structured = None

		success = result.exit_code == 0
		return ExecutionResult(
			success=success,
			output=output,
			structured=structured,
			completed_task_indices=parse_completed_tasks(result.stdout + "\n" + output) if context.batch_mode else [],
			exit_code=result.exit_code,
			error=None if success else (result.stderr.strip() or f"codex exited with code {result.exit_code}"),
		)
