"""Tests for plan models and the file-backed plan store."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from planloop.plans.models import Plan, PlanStatus, Priority, Step, Task
from planloop.plans.store import (
	PlanNotFoundError,
	PlanStore,
	PlanValidationError,
	parse_plan_text,
	render_plan_text,
	slugify,
)

from .helpers import make_plan, save_plans

PLAN_TEXT = """---
id: 7
title: Rate limiting
goal: Protect the public API
status: in_progress
priority: high
dependencies: [3, 4, 3]
parent: 2
discoveredFrom: 5
tags: [API, backend, api ]
createdAt: 2024-05-01T10:00:00Z
tasks:
  - title: Add token bucket
    files: [src/limit.py]
  - title: Wire middleware
    steps:
      - prompt: Register middleware
        done: true
      - prompt: Add config flag
---

Use a sliding window if the bucket proves too coarse.
"""


class TestPlanModel:
	"""Validation and normalization on the Plan model."""

	def test_parse_full_header(self):
		plan = parse_plan_text(PLAN_TEXT, "tasks/7-rate-limiting.plan.md")
		assert plan.id == 7
		assert plan.status == PlanStatus.IN_PROGRESS
		assert plan.priority == Priority.HIGH
		assert plan.dependencies == [3, 4]
		assert plan.parent == 2
		assert plan.discovered_from == 5
		assert plan.tags == ["api", "backend"]
		assert plan.created_at == "2024-05-01T10:00:00Z"
		assert plan.details == "Use a sliding window if the bucket proves too coarse."
		assert plan.filename == "tasks/7-rate-limiting.plan.md"
		assert plan.tasks[1].steps[0].done is True

	def test_id_must_be_positive(self):
		with pytest.raises(ValidationError):
			Plan(id=0)

	def test_task_with_steps_complete_only_when_all_steps_done(self):
		task = Task(title="t", steps=[Step(prompt="a", done=True), Step(prompt="b")])
		assert not task.is_complete
		task.steps[1].done = True
		assert task.is_complete

	def test_task_without_steps_uses_done_flag(self):
		assert not Task(title="t").is_complete
		assert Task(title="t", done=True).is_complete

	def test_progress_counts_complete_tasks(self):
		plan = make_plan()
		plan.tasks[0].done = True
		assert plan.progress() == (1, 3)

	def test_display_title_falls_back_to_goal(self):
		assert Plan(id=3, goal="Only a goal").display_title == "Only a goal"
		assert Plan(id=3).display_title == "Plan 3"

	def test_header_uses_camel_case_and_omits_empty_fields(self):
		plan = make_plan(discovered_from=4, base_branch="main")
		header = plan.to_header()
		assert header["discoveredFrom"] == 4
		assert header["baseBranch"] == "main"
		assert "dependencies" not in header
		assert "epic" not in header
		assert "details" not in header

	def test_unquoted_yaml_timestamp_is_normalized(self):
		plan = Plan(id=1, created_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
		assert plan.created_at == "2024-01-02T03:04:05Z"


class TestPlanFileFormat:
	"""Parsing and rendering plan files."""

	def test_render_then_parse_keeps_content(self):
		plan = make_plan(plan_id=4, dependencies=[1], tags=["ui"], details="Some notes")
		text = render_plan_text(plan)
		assert text.startswith("---\n")
		parsed = parse_plan_text(text, "4-x.plan.md")
		assert parsed.model_dump(exclude={"filename"}) == plan.model_dump(exclude={"filename"})

	def test_missing_header_is_rejected(self):
		with pytest.raises(PlanValidationError) as exc_info:
			parse_plan_text("just text", "bad.plan.md")
		assert "missing YAML header" in str(exc_info.value)

	def test_invalid_field_reports_location(self):
		with pytest.raises(PlanValidationError) as exc_info:
			parse_plan_text("---\nid: 1\nstatus: finished\n---\n", "bad.plan.md")
		assert "status" in str(exc_info.value)

	@pytest.mark.parametrize("header", ["dependencies: 5", "tags: 5", "dependencies: [1, null]"])
	def test_scalar_list_fields_are_rejected(self, header: str):
		with pytest.raises(PlanValidationError):
			parse_plan_text(f"---\nid: 2\n{header}\n---\n", "2-bad.plan.md")

	def test_comma_separated_tags_still_accepted(self):
		plan = parse_plan_text("---\nid: 2\ntags: API, ui\n---\n", "2-ok.plan.md")
		assert plan.tags == ["api", "ui"]

	def test_yaml_only_file_honors_details_key(self):
		plan = parse_plan_text("id: 9\ntitle: Yaml plan\ndetails: body text\n", "9.yml")
		assert plan.details == "body text"

	def test_slugify(self):
		assert slugify("Add OAuth2 login!") == "add-oauth2-login"
		assert slugify("???") == "plan"


class TestPlanStore:
	"""Directory scanning, caching and atomic saves."""

	def test_load_all_scans_subdirectories(self, tmp_path: Path):
		tasks = tmp_path / "tasks"
		(tasks / "nested").mkdir(parents=True)
		(tasks / "7-rate-limiting.plan.md").write_text(PLAN_TEXT)
		(tasks / "nested" / "8.yml").write_text("id: 8\ntitle: Nested\n")
		(tasks / "notes.md").write_text("not a plan")

		result = PlanStore(tasks).load_all()
		assert sorted(result.plans) == [7, 8]
		assert result.skipped == []

	def test_invalid_and_duplicate_files_are_skipped(self, tmp_path: Path):
		tasks = tmp_path / "tasks"
		tasks.mkdir()
		(tasks / "1-a.plan.md").write_text("---\nid: 1\ntitle: First\n---\n")
		(tasks / "2-dup.plan.md").write_text("---\nid: 1\ntitle: Duplicate\n---\n")
		(tasks / "3-broken.plan.md").write_text("---\nid: [\n---\n")

		result = PlanStore(tasks).load_all()
		assert result.plans[1].title == "First"
		reasons = {Path(s.path).name: s.reason for s in result.skipped}
		assert "duplicate id 1" in reasons["2-dup.plan.md"]
		assert "invalid YAML" in reasons["3-broken.plan.md"]

	def test_undecodable_file_is_skipped(self, tmp_path: Path):
		tasks = tmp_path / "tasks"
		tasks.mkdir()
		(tasks / "1-ok.plan.md").write_text("---\nid: 1\ntitle: Fine\n---\n")
		(tasks / "2-bad.plan.md").write_bytes(b"---\nid: 2\ntitle: \xff\xfe\n---\n")

		result = PlanStore(tasks).load_all()
		assert sorted(result.plans) == [1]
		reasons = {Path(s.path).name: s.reason for s in result.skipped}
		assert "UTF-8" in reasons["2-bad.plan.md"]

	def test_malformed_list_field_is_skipped(self, tmp_path: Path):
		tasks = tmp_path / "tasks"
		tasks.mkdir()
		(tasks / "1-ok.plan.md").write_text("---\nid: 1\ntitle: Fine\n---\n")
		(tasks / "2-bad.plan.md").write_text("---\nid: 2\ndependencies: 5\n---\n")
		(tasks / "3-bad.plan.md").write_text("---\nid: 3\ntags: 5\n---\n")

		result = PlanStore(tasks).load_all()
		assert sorted(result.plans) == [1]
		assert sorted(Path(s.path).name for s in result.skipped) == ["2-bad.plan.md", "3-bad.plan.md"]

	def test_unreadable_file_is_skipped(self, tmp_path: Path):
		tasks = tmp_path / "tasks"
		tasks.mkdir()
		(tasks / "1-ok.plan.md").write_text("---\nid: 1\ntitle: Fine\n---\n")
		(tasks / "2-locked.plan.md").write_text("---\nid: 2\n---\n")
		real_read_text = Path.read_text

		def read_text(self, *args, **kwargs):
			if self.name == "2-locked.plan.md":
				raise PermissionError(13, "Permission denied", str(self))
			return real_read_text(self, *args, **kwargs)

		with patch.object(Path, "read_text", read_text):
			result = PlanStore(tasks).load_all()
		assert sorted(result.plans) == [1]
		assert "unreadable" in result.skipped[0].reason

	def test_missing_directory_is_empty(self, tmp_path: Path):
		assert PlanStore(tmp_path / "nope").all_plans() == {}

	def test_load_by_id_string_and_path(self, tmp_path: Path):
		store = save_plans(tmp_path / "tasks", make_plan(plan_id=5, title="Five"))
		assert store.load(5).title == "Five"
		assert store.load("5").title == "Five"
		path = Path(store.load(5).filename)
		assert store.load(path).id == 5
		assert store.load(path.name).id == 5

	def test_load_unknown_raises(self, tmp_path: Path):
		store = PlanStore(tmp_path)
		with pytest.raises(PlanNotFoundError):
			store.load(42)
		with pytest.raises(PlanNotFoundError):
			store.load("missing.plan.md")

	def test_save_names_file_and_stamps_timestamps(self, tmp_path: Path):
		store = PlanStore(tmp_path / "tasks")
		plan = make_plan(plan_id=12, title="Add OAuth login")
		path = store.save(plan)

		assert path.name == "12-add-oauth-login.plan.md"
		assert plan.created_at is not None
		assert plan.updated_at is not None
		assert [p.name for p in path.parent.iterdir()] == [path.name]

	def test_save_keeps_existing_filename(self, tmp_path: Path):
		tasks = tmp_path / "tasks"
		tasks.mkdir()
		(tasks / "custom-name.plan.md").write_text("---\nid: 3\ntitle: Custom\n---\n")
		store = PlanStore(tasks)
		plan = store.load(3)
		plan.title = "Renamed"
		store.save(plan)
		assert store.load(3).filename.endswith("custom-name.plan.md")
		assert sorted(p.name for p in tasks.iterdir()) == ["custom-name.plan.md"]

	def test_save_updates_cache_and_invalidate_rescans(self, tmp_path: Path):
		store = save_plans(tmp_path / "tasks", make_plan(plan_id=1))
		plan = store.load(1)
		plan.status = PlanStatus.DONE
		store.save(plan)
		assert store.all_plans()[1].status == PlanStatus.DONE

		Path(plan.filename).write_text("---\nid: 1\ntitle: Edited elsewhere\n---\n")
		assert store.load(1).status == PlanStatus.DONE
		store.invalidate()
		assert store.load(1).title == "Edited elsewhere"

	def test_create_plan_allocates_next_id(self, tmp_path: Path):
		store = save_plans(tmp_path / "tasks", make_plan(plan_id=3), make_plan(plan_id=9))
		plan = store.create_plan("New work", goal="Do it", priority=Priority.LOW, tags=["Infra"])
		assert plan.id == 10
		assert plan.uuid
		assert plan.status == PlanStatus.PENDING
		assert plan.tags == ["infra"]
		store.invalidate()
		assert store.load(10).goal == "Do it"

	def test_children_of(self, tmp_path: Path):
		store = save_plans(
			tmp_path / "tasks",
			make_plan(plan_id=1, epic=True, tasks=[]),
			make_plan(plan_id=2, parent=1),
			make_plan(plan_id=3, parent=1),
			make_plan(plan_id=4),
		)
		assert sorted(p.id for p in store.children_of(1)) == [2, 3]
