"""Shared test fixtures and helpers for planloop tests."""

import subprocess
from pathlib import Path
from typing import Callable, Optional

from planloop.config import Config
from planloop.executors.base import (
	ExecutionContext,
	ExecutionResult,
	Executor,
	ExecutorCapabilities,
)
from planloop.plans.models import Plan, PlanStatus, Priority, Step, Task
from planloop.plans.store import PlanStore


def init_git_repo(path: Path, remote: Optional[str] = None) -> None:
	"""Create a real git repo with an initial commit."""
	path.mkdir(parents=True, exist_ok=True)
	subprocess.run(["git", "init"], cwd=str(path), capture_output=True, check=True)
	subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=str(path), capture_output=True)
	subprocess.run(["git", "config", "user.name", "Test"], cwd=str(path), capture_output=True)
	(path / "README.md").write_text("# Test\n")
	subprocess.run(["git", "add", "README.md"], cwd=str(path), capture_output=True, check=True)
	subprocess.run(["git", "commit", "-m", "init"], cwd=str(path), capture_output=True, check=True)
	if remote:
		subprocess.run(["git", "remote", "add", "origin", remote], cwd=str(path), capture_output=True, check=True)


def git_output(path: Path, *args: str) -> str:
	result = subprocess.run(["git", *args], cwd=str(path), capture_output=True, text=True, check=True)
	return result.stdout.strip()


def capture_tools(config: Config, register_fn: Callable) -> dict:
	"""Register tools on a mock MCP and return the captured functions.

	Args:
		config: Config passed to the registration function
		register_fn: The registration function (e.g., register_plan_tools)

	Returns:
		Dict mapping tool name to the tool function; resources are keyed by URI
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

		def resource(self, uri: str):
			def decorator(fn):
				captured[uri] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config)
	return captured


def make_config(tmp_path: Path, **overrides) -> Config:
	"""Config with every path inside tmp_path."""
	config = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
		tasks_dir=tmp_path / "tasks",
		workspace_base_dir=tmp_path / "workspaces",
	)
	for key, value in overrides.items():
		setattr(config, key, value)
	return config


def make_plan(
	plan_id: int = 1,
	title: str = "Add user authentication",
	status: PlanStatus = PlanStatus.PENDING,
	priority: Optional[Priority] = Priority.MEDIUM,
	tasks: Optional[list[Task]] = None,
	**fields,
) -> Plan:
	"""Create a Plan with realistic content for testing."""
	if tasks is None:
		tasks = [
			Task(title="Create auth module", description="Session handling", files=["src/auth.py"]),
			Task(
				title="Add JWT utils",
				steps=[Step(prompt="Write encode helper"), Step(prompt="Write decode helper")],
			),
			Task(title="Unit tests for auth", files=["tests/test_auth.py"]),
		]
	return Plan(
		id=plan_id,
		title=title,
		goal=f"Goal of {title}",
		status=status,
		priority=priority,
		tasks=tasks,
		**fields,
	)


def save_plans(tasks_dir: Path, *plans: Plan) -> PlanStore:
	"""Write plans into tasks_dir and return a fresh store over it."""
	store = PlanStore(tasks_dir)
	for plan in plans:
		store.save(plan)
	store.invalidate()
	return store


class FakeExecutor(Executor):
	"""Executor that replays scripted results and records prompts."""

	name = "fake"

	def __init__(
		self,
		results: Optional[list[ExecutionResult]] = None,
		supports_batch: bool = True,
		on_execute: Optional[Callable[[str, ExecutionContext], None]] = None,
	):
		self.results = list(results or [])
		self.prompts: list[str] = []
		self.contexts: list[ExecutionContext] = []
		self.capabilities = ExecutorCapabilities(
			supports_terminal_input=False,
			supports_batch=supports_batch,
			requires_prompt=False,
			supports_structured_output=True,
		)
		self.on_execute = on_execute

	async def execute(self, prompt: str, context: ExecutionContext) -> ExecutionResult:
		self.prompts.append(prompt)
		self.contexts.append(context)
		if self.on_execute:
			self.on_execute(prompt, context)
		if self.results:
			return self.results.pop(0)
		return ExecutionResult(success=True, output="ok")
