"""Tests for the agent loop in serial and batch mode."""

import asyncio
from pathlib import Path

import pytest

from planloop.agent import AgentLoop, BatchNoProgressError
from planloop.config import CommandConfig
from planloop.executors.base import ExecutionContext, ExecutionResult, ExecutorError
from planloop.plans.models import PlanStatus, Task
from planloop.plans.state import TaskIndexError, TaskStateMachine
from planloop.plans.store import PlanStore

from .helpers import FakeExecutor, make_config, make_plan, save_plans


def _batch(*indices: int) -> ExecutionResult:
	return ExecutionResult(success=True, output="", completed_task_indices=list(indices))


class SlowExecutor(FakeExecutor):
	"""Never finishes on its own."""

	async def execute(self, prompt: str, context: ExecutionContext) -> ExecutionResult:
		self.prompts.append(prompt)
		await asyncio.sleep(30)
		return ExecutionResult(success=True)


@pytest.fixture
def store(tmp_path: Path) -> PlanStore:
	return save_plans(tmp_path / "tasks", make_plan(plan_id=1))


def _loop(store: PlanStore, executor, tmp_path: Path, **config_overrides) -> AgentLoop:
	config = make_config(tmp_path, **config_overrides)
	return AgentLoop(store, TaskStateMachine(store), executor, config, workspace_path=tmp_path)


class TestSerialMode:
	"""One step or task per iteration."""

	@pytest.mark.asyncio
	async def test_runs_plan_to_completion(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(supports_batch=False)
		summary = await _loop(store, executor, tmp_path).run(1)

		assert summary.plan_complete
		assert not summary.batch
		assert summary.iterations == 4
		assert summary.items_completed == 4
		assert "Create auth module" in executor.prompts[0]
		assert "Write encode helper" in executor.prompts[1]
		assert "Write decode helper" in executor.prompts[2]
		assert "Unit tests for auth" in executor.prompts[3]
		assert all(not c.batch_mode for c in executor.contexts)
		assert executor.contexts[0].workspace_path == tmp_path

		store.invalidate()
		plan = store.load(1)
		assert plan.status == PlanStatus.DONE
		assert all(task.is_complete for task in plan.tasks)

	@pytest.mark.asyncio
	async def test_explicit_serial_on_batch_executor(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(supports_batch=True)
		summary = await _loop(store, executor, tmp_path).run(1, batch=False)
		assert not summary.batch
		assert summary.iterations == 4

	@pytest.mark.asyncio
	async def test_max_iterations(self, store: PlanStore, tmp_path: Path):
		summary = await _loop(store, FakeExecutor(), tmp_path).run(1, batch=False, max_iterations=2)
		assert not summary.plan_complete
		assert summary.iterations == 2
		assert "max iterations" in summary.stopped_reason

		store.invalidate()
		plan = store.load(1)
		assert plan.status == PlanStatus.IN_PROGRESS
		assert plan.tasks[0].done
		assert plan.tasks[1].steps[0].done
		assert not plan.tasks[1].steps[1].done

	@pytest.mark.asyncio
	async def test_executor_failure_stops_without_marking(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(results=[ExecutionResult(success=False, exit_code=1, error="crashed")])
		with pytest.raises(ExecutorError, match="crashed"):
			await _loop(store, executor, tmp_path).run(1, batch=False)
		store.invalidate()
		assert not store.load(1).tasks[0].done

	@pytest.mark.asyncio
	async def test_post_apply_failure_stops(self, store: PlanStore, tmp_path: Path):
		loop = _loop(store, FakeExecutor(), tmp_path, post_apply_commands=[CommandConfig(command="exit 1")])
		summary = await loop.run(1, batch=False)
		assert summary.iterations == 1
		assert summary.stopped_reason == "post-apply command failed"
		assert not summary.plan_complete

	@pytest.mark.asyncio
	async def test_post_apply_commands_get_plan_id(self, store: PlanStore, tmp_path: Path):
		commands = [CommandConfig(command="echo $PLANLOOP_PLAN_ID >> applied.txt")]
		summary = await _loop(store, FakeExecutor(), tmp_path, post_apply_commands=commands).run(1, batch=False)
		assert summary.plan_complete
		assert (tmp_path / "applied.txt").read_text().split() == ["1", "1", "1", "1"]

	@pytest.mark.asyncio
	async def test_nothing_to_do(self, tmp_path: Path):
		plan = make_plan(plan_id=2, tasks=[Task(title="done already", done=True)])
		store = save_plans(tmp_path / "tasks", plan)
		executor = FakeExecutor()
		summary = await _loop(store, executor, tmp_path).run(2)
		assert summary.plan_complete
		assert summary.iterations == 0
		assert executor.prompts == []

	@pytest.mark.asyncio
	async def test_epic_parent_completes(self, tmp_path: Path):
		store = save_plans(
			tmp_path / "tasks",
			make_plan(plan_id=1, epic=True, tasks=[]),
			make_plan(plan_id=2, parent=1, tasks=[Task(title="only")]),
		)
		summary = await _loop(store, FakeExecutor(), tmp_path).run(2, batch=False)
		assert summary.plan_complete
		store.invalidate()
		assert store.load(1).status == PlanStatus.DONE


class TestBatchMode:
	"""All incomplete tasks per round."""

	@pytest.mark.asyncio
	async def test_completes_over_rounds(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(results=[_batch(0, 2), _batch(1)])
		summary = await _loop(store, executor, tmp_path).run(1)

		assert summary.batch
		assert summary.plan_complete
		assert summary.iterations == 2
		assert summary.items_completed == 3
		assert all(c.batch_mode for c in executor.contexts)
		assert "Add JWT utils" in executor.prompts[1]
		assert "Create auth module" not in executor.prompts[1]

		store.invalidate()
		assert store.load(1).status == PlanStatus.DONE

	@pytest.mark.asyncio
	async def test_two_rounds_without_progress_abort(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(results=[_batch(), _batch()])
		with pytest.raises(BatchNoProgressError) as exc_info:
			await _loop(store, executor, tmp_path).run(1, batch=True)
		assert exc_info.value.rounds == 2
		assert len(executor.prompts) == 2

	@pytest.mark.asyncio
	async def test_progress_resets_no_progress_count(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(results=[_batch(0), _batch(), _batch(1), _batch(), _batch(2)])
		summary = await _loop(store, executor, tmp_path).run(1, batch=True)
		assert summary.plan_complete
		assert summary.iterations == 5

	@pytest.mark.asyncio
	async def test_already_done_indices_are_not_progress(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(results=[_batch(0), _batch(0), _batch(0)])
		with pytest.raises(BatchNoProgressError):
			await _loop(store, executor, tmp_path).run(1, batch=True)
		assert len(executor.prompts) == 3

	@pytest.mark.asyncio
	async def test_invalid_index_from_executor(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(results=[_batch(0, 9)])
		with pytest.raises(TaskIndexError):
			await _loop(store, executor, tmp_path).run(1, batch=True)
		store.invalidate()
		assert not store.load(1).tasks[0].done

	@pytest.mark.asyncio
	async def test_executor_edits_to_plan_file_are_kept(self, store: PlanStore, tmp_path: Path):
		def edit_plan(prompt: str, context: ExecutionContext) -> None:
			other = PlanStore(store.tasks_dir)
			plan = other.load(1)
			plan.tasks[0].done = True
			other.save(plan)

		executor = FakeExecutor(results=[_batch(1, 2)], on_execute=edit_plan)
		summary = await _loop(store, executor, tmp_path).run(1, batch=True)
		assert summary.plan_complete
		assert summary.iterations == 1

	@pytest.mark.asyncio
	async def test_unsupported_batch_falls_back_to_serial(self, store: PlanStore, tmp_path: Path):
		executor = FakeExecutor(supports_batch=False)
		summary = await _loop(store, executor, tmp_path).run(1, batch=True)
		assert not summary.batch
		assert summary.iterations == 4


class TestCancellation:
	"""Cancelling stops the in-flight executor call."""

	@pytest.mark.asyncio
	async def test_cancel_running_executor(self, store: PlanStore, tmp_path: Path):
		executor = SlowExecutor()
		loop = _loop(store, executor, tmp_path)
		task = asyncio.ensure_future(loop.run(1, batch=False))
		for _ in range(50):
			if executor.prompts:
				break
			await asyncio.sleep(0.01)

		loop.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task
		store.invalidate()
		assert not store.load(1).tasks[0].done
