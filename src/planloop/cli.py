"""CLI for planloop: agent, ready, list, show, done, workspace, review and serve commands."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console

from . import __version__
from .agent import AgentLoop
from .config import Config, load_config
from .errors import PlanloopError
from .executors import build_executor, resolve_review_executors
from .logging_config import setup_logging
from .plans.models import Plan, PlanStatus, Priority
from .plans.readiness import SORT_FIELDS, ReadyFilter, filter_and_sort, find_next_ready_plan
from .plans.state import ActionableStep, TaskStateMachine, find_next_actionable_item
from .plans.store import PlanNotFoundError, PlanStore
from .render import render_plan, render_plan_table, render_review, render_workspaces
from .review import ReviewMerger, TaskFilter, format_review_json
from .workspace.lock import LockType, WorkspaceLock
from .workspace.manager import WorkspaceManager
from .workspace.registry import FieldPatch, WorkspacePatch, WorkspaceRegistry
from .workspace.selector import WorkspaceAutoSelector
from .workspace.vcs import find_repo_root, get_repository_identity, run_git

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def _load_config() -> Config:
	repo_root = asyncio.run(find_repo_root(Path.cwd()))
	return load_config(repo_root)


def _store(config: Config, root: Optional[Path] = None) -> PlanStore:
	return PlanStore(config.resolve_tasks_dir(root))


def _resolve_plan(store: PlanStore, identifier: str) -> Plan:
	"""Load a plan by id or path; 'next' picks the next ready plan."""
	if identifier == "next":
		plan = find_next_ready_plan(store.all_plans())
		if plan is None:
			raise PlanNotFoundError("next ready plan")
		return plan
	return store.load(identifier)


def _workspace_parts(config: Config) -> tuple[WorkspaceRegistry, WorkspaceLock, WorkspaceManager]:
	registry = WorkspaceRegistry(config.tracking_file_path)
	locks = WorkspaceLock(config.lock_dir_path)
	return registry, locks, WorkspaceManager(config, registry, locks)


def _report_skipped(store: PlanStore) -> None:
	for skipped in store.load_all().skipped:
		err_console.print(f"[yellow]Skipped {skipped.path}: {skipped.reason}[/yellow]")


# -- agent --

def cmd_agent(args: argparse.Namespace, config: Config) -> None:
	"""Drive one plan to completion through an executor."""
	store = _store(config)
	plan = _resolve_plan(store, args.plan)
	executor = build_executor(args.executor, config)
	asyncio.run(_run_agent(args, config, store, plan, executor))


async def _run_agent(args: argparse.Namespace, config: Config, store: PlanStore, plan: Plan, executor) -> None:
	workspace = None
	locks = None
	if args.workspace_task:
		_, locks, manager = _workspace_parts(config)
		selector = WorkspaceAutoSelector(manager)
		workspace = await selector.select(
			args.workspace_task,
			plan_file=plan.filename,
			repo_root=config.repo_root,
			prefer_new=args.new_workspace,
			plan=plan,
		)
		if workspace is None:
			raise PlanloopError(f"Could not prepare a workspace for {args.workspace_task}")
		console.print(f"Using workspace [cyan]{workspace.path}[/cyan]")
		store = _store(config, workspace.path)

	loop = AgentLoop(
		store,
		TaskStateMachine(store),
		executor,
		config,
		workspace_path=workspace.path if workspace else None,
	)
	try:
		summary = await loop.run(plan.id, batch=args.batch, max_iterations=args.max_iterations)
	finally:
		if workspace is not None and locks is not None:
			locks.release(workspace.path)

	mode = "batch" if summary.batch else "serial"
	if summary.plan_complete:
		console.print(f"[green]Plan {plan.id} complete[/green] ({summary.items_completed} item(s), {mode} mode)")
	else:
		reason = summary.stopped_reason or "stopped"
		console.print(f"[yellow]Plan {plan.id} not complete: {reason}[/yellow]")


# -- plan queries --

def cmd_ready(args: argparse.Namespace, config: Config) -> None:
	"""List plans that are ready to be worked on."""
	store = _store(config)
	all_plans = store.all_plans()
	options = ReadyFilter(
		priorities=[Priority(p) for p in args.priority or []],
		tags=args.tag or [],
		epic_id=args.epic,
		pending_only=args.pending_only,
		limit=args.limit,
		sort_by=args.sort,
		reverse=args.reverse,
	)
	ready = filter_and_sort(all_plans, options)
	if args.json:
		print(json.dumps([p.to_header() for p in ready], indent=2))
		return
	_report_skipped(store)
	render_plan_table(ready, all_plans, title="Ready plans", verbose=args.verbose, console=console)


def cmd_list(args: argparse.Namespace, config: Config) -> None:
	"""List plans, hiding finished ones unless --all."""
	store = _store(config)
	all_plans = store.all_plans()
	statuses = {PlanStatus(s) for s in args.status or []}
	tags = {t.lower() for t in args.tag or []}

	plans = []
	for _, plan in sorted(all_plans.items()):
		if statuses and plan.status not in statuses:
			continue
		if not statuses and not args.all and plan.status in (PlanStatus.DONE, PlanStatus.CANCELLED):
			continue
		if tags and not tags.intersection(plan.tags):
			continue
		plans.append(plan)

	if args.json:
		print(json.dumps([p.to_header() for p in plans], indent=2))
		return
	_report_skipped(store)
	render_plan_table(plans, all_plans, title="Plans", verbose=args.verbose, console=console)


def cmd_show(args: argparse.Namespace, config: Config) -> None:
	"""Show one plan with its tasks."""
	store = _store(config)
	plan = _resolve_plan(store, args.plan)
	if args.json:
		print(json.dumps({**plan.to_header(), "details": plan.details}, indent=2))
		return
	render_plan(plan, console=console)
	if plan.details:
		console.print()
		console.print(plan.details)


def cmd_done(args: argparse.Namespace, config: Config) -> None:
	"""Mark a task done, or the next actionable item when no task is given."""
	store = _store(config)
	machine = TaskStateMachine(store)
	plan = _resolve_plan(store, args.plan)

	if args.task is not None:
		target = int(args.task) if args.task.isdigit() else args.task
		result = machine.set_task_done(plan.id, target)
	else:
		item = find_next_actionable_item(plan)
		if item is None:
			console.print(f"Plan {plan.id} has nothing left to do")
			return
		if isinstance(item, ActionableStep):
			result = machine.mark_step_done(plan.id, item.task_index, item.step_index)
		else:
			result = machine.mark_task_done(plan.id, item.task_index)

	console.print(result.message)
	for parent_id in result.parents_completed:
		console.print(f"[green]Epic {parent_id} complete[/green]")


# -- workspace --

def cmd_workspace_list(args: argparse.Namespace, config: Config) -> None:
	"""List tracked workspaces for this repository, or all with --all."""
	registry, locks, _ = _workspace_parts(config)
	if args.prune:
		for path in registry.remove_missing():
			console.print(f"Removed missing workspace {path}")

	repository_id = None
	if not args.all:
		identity = asyncio.run(get_repository_identity(config.repo_root or Path.cwd()))
		repository_id = identity.repository_id

	entries = asyncio.run(registry.list_entries(repository_id=repository_id, lock=locks, task_id=args.task))
	if args.json:
		print(json.dumps([
			{
				**item.entry.model_dump(exclude_none=True),
				"status": item.status,
				"branch": item.branch,
				"lock": item.lock.model_dump(mode="json") if item.lock else None,
			}
			for item in entries
		], indent=2))
		return
	render_workspaces(entries, console=console)


def cmd_workspace_update(args: argparse.Namespace, config: Config) -> None:
	"""Update registry metadata; an empty value clears a field."""
	registry, _, _ = _workspace_parts(config)
	path = Path(args.path or Path.cwd())

	plan_id = args.plan_id
	if plan_id not in (None, ""):
		try:
			plan_id = int(plan_id)
		except ValueError:
			raise PlanloopError(f"--plan-id must be a number, got {plan_id!r}") from None

	patch = WorkspacePatch.from_values(
		name=args.name,
		description=args.description,
		plan_id=plan_id,
		plan_title=args.plan_title,
		issue_urls=[i for i in args.issue if i] if args.issue is not None else None,
	)
	if args.from_plan:
		plan = _store(config).load(args.from_plan)
		patch.plan_id = FieldPatch.set_to(plan.id)
		patch.plan_title = FieldPatch.set_to(plan.display_title)
		if plan.issue:
			patch.issue_urls = FieldPatch.set_to(list(plan.issue))

	entry = registry.patch_metadata(path, patch)
	console.print(f"Updated workspace [cyan]{entry.workspace_path}[/cyan]")


def cmd_workspace_lock(args: argparse.Namespace, config: Config) -> None:
	"""Lock a workspace until it is explicitly unlocked."""
	_, locks, _ = _workspace_parts(config)
	path = Path(args.path or Path.cwd())
	info = locks.acquire(path, command="planloop workspace lock", lock_type=LockType.PERSISTENT, owner=args.owner)
	if info.reclaimed_stale:
		console.print("[yellow]Reclaimed a stale lock[/yellow]")
	console.print(f"Locked [cyan]{info.workspace_path}[/cyan]")


def cmd_workspace_unlock(args: argparse.Namespace, config: Config) -> None:
	"""Release a workspace lock."""
	_, locks, _ = _workspace_parts(config)
	path = Path(args.path or Path.cwd())
	if locks.release(path, force=args.force):
		console.print(f"Unlocked [cyan]{path}[/cyan]")
	else:
		console.print(f"[dim]{path} was not locked[/dim]")


def cmd_workspace_create(args: argparse.Namespace, config: Config) -> None:
	"""Create a workspace for a task."""
	_, _, manager = _workspace_parts(config)
	plan = None
	plan_file = None
	if args.plan:
		plan = _store(config).load(args.plan)
		plan_file = plan.filename

	workspace = asyncio.run(manager.create(args.task_id, plan_file=plan_file, plan=plan, lock=False))
	if workspace is None:
		raise PlanloopError(f"Workspace creation for {args.task_id} failed; see log for details")
	console.print(f"Created workspace [cyan]{workspace.path}[/cyan]")
	if workspace.branch:
		console.print(f"Branch: {workspace.branch}")


# -- review --

def cmd_review(args: argparse.Namespace, config: Config) -> None:
	"""Review a plan's implementation with one or more executors."""
	store = _store(config)
	plan = _resolve_plan(store, args.plan)
	executors = resolve_review_executors(args.executor, config)
	task_filter = TaskFilter(indexes=args.task_index or [], titles=args.task_title or [])
	workspace_path = Path(args.workspace) if args.workspace else config.repo_root

	diff_summary = None
	if args.diff_base:
		stdout, stderr, rc = asyncio.run(run_git(["diff", "--stat", args.diff_base], workspace_path or Path.cwd()))
		if rc != 0:
			raise PlanloopError(f"git diff against {args.diff_base} failed: {stderr}")
		diff_summary = stdout

	merger = ReviewMerger(inactivity_timeout=config.inactivity_timeout)
	result = asyncio.run(merger.run_review(
		plan,
		executors,
		task_filter=task_filter,
		workspace_path=workspace_path,
		diff_summary=diff_summary,
	))

	if args.print:
		for warning in result.warnings:
			print(f"Warning: {warning}", file=sys.stderr)
		print(format_review_json(result))
	else:
		render_review(result, console=console)


def cmd_serve(args: argparse.Namespace, config: Config) -> None:
	"""Run the MCP server (stdio transport)."""
	from .server import create_server
	create_server(config).run()


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="planloop",
		description="Plan files, ready queues and agent loops for coding assistants",
	)
	parser.add_argument("--version", action="version", version=f"planloop {__version__}")
	parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	# agent
	agent_parser = subparsers.add_parser("agent", help="Drive a plan to completion")
	agent_parser.add_argument("plan", help="Plan id, plan file, or 'next'")
	mode = agent_parser.add_mutually_exclusive_group()
	mode.add_argument("--batch", dest="batch", action="store_true", default=None, help="Offer all tasks each round")
	mode.add_argument("--serial", dest="batch", action="store_false", help="One step or task per iteration")
	agent_parser.add_argument("--executor", default=None, help="claude-code or codex-cli")
	agent_parser.add_argument("--workspace-task", default=None, help="Run in a workspace for this task id")
	agent_parser.add_argument("--new-workspace", action="store_true", help="Always create a new workspace")
	agent_parser.add_argument("--max-iterations", type=int, default=None, help="Stop after N executor calls")
	agent_parser.set_defaults(func=cmd_agent)

	# ready
	ready_parser = subparsers.add_parser("ready", help="List plans ready to work on")
	ready_parser.add_argument("--priority", action="append", choices=[p.value for p in Priority])
	ready_parser.add_argument("--tag", action="append", help="Match plans with any of these tags")
	ready_parser.add_argument("--epic", type=int, default=None, help="Only plans under this epic")
	ready_parser.add_argument("--pending-only", action="store_true", help="Exclude in-progress plans")
	ready_parser.add_argument("--limit", type=int, default=None)
	ready_parser.add_argument("--sort", default="priority", choices=SORT_FIELDS)
	ready_parser.add_argument("--reverse", action="store_true")
	ready_parser.add_argument("--verbose", "-v", action="store_true", help="Show parents and dependencies")
	ready_parser.add_argument("--json", action="store_true")
	ready_parser.set_defaults(func=cmd_ready)

	# list
	list_parser = subparsers.add_parser("list", help="List plans")
	list_parser.add_argument("--status", action="append", choices=[s.value for s in PlanStatus])
	list_parser.add_argument("--tag", action="append")
	list_parser.add_argument("--all", action="store_true", help="Include done and cancelled plans")
	list_parser.add_argument("--verbose", "-v", action="store_true")
	list_parser.add_argument("--json", action="store_true")
	list_parser.set_defaults(func=cmd_list)

	# show
	show_parser = subparsers.add_parser("show", help="Show a plan")
	show_parser.add_argument("plan", help="Plan id, plan file, or 'next'")
	show_parser.add_argument("--json", action="store_true")
	show_parser.set_defaults(func=cmd_show)

	# done
	done_parser = subparsers.add_parser("done", help="Mark a task done")
	done_parser.add_argument("plan", help="Plan id or plan file")
	done_parser.add_argument("--task", default=None, help="Task index (from 0) or title")
	done_parser.set_defaults(func=cmd_done)

	# workspace
	ws_parser = subparsers.add_parser("workspace", help="Manage workspaces")
	ws_sub = ws_parser.add_subparsers(dest="workspace_command")

	ws_list = ws_sub.add_parser("list", help="List tracked workspaces")
	ws_list.add_argument("--all", action="store_true", help="Workspaces of every repository")
	ws_list.add_argument("--prune", action="store_true", help="Forget workspaces whose directory is gone")
	ws_list.add_argument("--task", help="Only workspaces created for this task id")
	ws_list.add_argument("--json", action="store_true")
	ws_list.set_defaults(func=cmd_workspace_list)

	ws_update = ws_sub.add_parser("update", help="Update workspace metadata (empty value clears)")
	ws_update.add_argument("path", nargs="?", default=None)
	ws_update.add_argument("--name", default=None)
	ws_update.add_argument("--description", default=None)
	ws_update.add_argument("--plan-id", default=None)
	ws_update.add_argument("--plan-title", default=None)
	ws_update.add_argument("--issue", action="append", default=None, help="Issue URL (repeatable)")
	ws_update.add_argument("--from-plan", default=None, help="Copy plan id, title and issues from a plan")
	ws_update.set_defaults(func=cmd_workspace_update)

	ws_lock = ws_sub.add_parser("lock", help="Lock a workspace until unlocked")
	ws_lock.add_argument("path", nargs="?", default=None)
	ws_lock.add_argument("--owner", default=None)
	ws_lock.set_defaults(func=cmd_workspace_lock)

	ws_unlock = ws_sub.add_parser("unlock", help="Release a workspace lock")
	ws_unlock.add_argument("path", nargs="?", default=None)
	ws_unlock.add_argument("--force", action="store_true", help="Release even if another process holds it")
	ws_unlock.set_defaults(func=cmd_workspace_unlock)

	ws_create = ws_sub.add_parser("create", help="Create a workspace for a task")
	ws_create.add_argument("task_id")
	ws_create.add_argument("--plan", default=None, help="Plan id or file to copy into the workspace")
	ws_create.set_defaults(func=cmd_workspace_create)

	# review
	review_parser = subparsers.add_parser("review", help="Review a plan's implementation")
	review_parser.add_argument("plan", help="Plan id or plan file")
	review_parser.add_argument("--executor", default=None, help="claude-code, codex-cli or both")
	review_parser.add_argument("--task-index", type=int, action="append", help="Task index from 0 (repeatable)")
	review_parser.add_argument("--task-title", action="append", help="Task title (repeatable)")
	review_parser.add_argument("--workspace", default=None, help="Directory to review in")
	review_parser.add_argument("--diff-base", default=None, help="Include a diff summary against this ref")
	review_parser.add_argument("--print", action="store_true", help="Print JSON only, no interaction")
	review_parser.set_defaults(func=cmd_review)

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	return parser


def main(argv: Optional[list[str]] = None) -> None:
	"""CLI entry point."""
	load_dotenv()
	parser = build_parser()
	args = parser.parse_args(argv)

	if not getattr(args, "func", None):
		parser.print_help()
		sys.exit(1)

	try:
		config = _load_config()
		setup_logging(level=args.log_level, log_dir=config.log_dir)
		args.func(args, config)
	except PlanloopError as e:
		err_console.print(f"[red]Error:[/red] {e}")
		sys.exit(1)
	except KeyboardInterrupt:
		err_console.print("[yellow]Interrupted[/yellow]")
		sys.exit(130)


if __name__ == "__main__":
	main()
