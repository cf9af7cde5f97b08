"""Rich terminal views for plans, ready lists, workspaces and reviews."""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from .plans.models import Plan, PlanStatus, Priority
from .plans.readiness import blocking_dependencies
from .review.models import ReviewResult, Severity, Verdict
from .workspace.registry import ListEntry

STATUS_STYLES = {
	PlanStatus.PENDING: "white",
	PlanStatus.IN_PROGRESS: "yellow",
	PlanStatus.DONE: "green",
	PlanStatus.CANCELLED: "dim",
	PlanStatus.DEFERRED: "dim",
}

PRIORITY_STYLES = {
	Priority.URGENT: "bold red",
	Priority.HIGH: "red",
	Priority.MEDIUM: "yellow",
	Priority.LOW: "blue",
	Priority.MAYBE: "dim",
}

SEVERITY_STYLES = {
	Severity.CRITICAL: "bold red",
	Severity.MAJOR: "red",
	Severity.MINOR: "yellow",
	Severity.INFO: "dim",
}


def _check(done: bool) -> str:
	return "[green]\\[x][/green]" if done else "[dim]\\[ ][/dim]"


def _priority_text(priority: Optional[Priority]) -> str:
	if priority is None:
		return "[dim]-[/dim]"
	style = PRIORITY_STYLES[priority]
	return f"[{style}]{priority.value}[/{style}]"


def _status_text(status: PlanStatus) -> str:
	style = STATUS_STYLES[status]
	return f"[{style}]{status.value}[/{style}]"


def render_plan(plan: Plan, console: Optional[Console] = None) -> None:
	"""Render a plan as a tree of tasks and steps."""
	console = console or Console()
	done, total = plan.progress()

	tree = Tree(
		f"[bold]{plan.id}: {plan.display_title}[/bold]  {_status_text(plan.status)}  "
		f"[dim]({done}/{total} tasks)[/dim]"
	)
	if plan.goal and plan.goal != plan.display_title:
		tree.add(f"[dim]Goal:[/dim] {plan.goal}")
	for index, task in enumerate(plan.tasks):
		branch = tree.add(f"{_check(task.is_complete)} {index}. {task.title}")
		for step in task.steps:
			branch.add(f"{_check(step.done)} {step.prompt.splitlines()[0] if step.prompt else ''}")

	console.print(tree)


def render_plan_table(
	plans: list[Plan],
	all_plans: dict[int, Plan],
	title: str = "Plans",
	verbose: bool = False,
	console: Optional[Console] = None,
) -> None:
	"""Render plans as a table; verbose adds dependency and parent columns."""
	console = console or Console()
	if not plans:
		console.print(f"[dim]No {title.lower()} found.[/dim]")
		return

	table = Table(title=title)
	table.add_column("ID", justify="right", style="cyan")
	table.add_column("Title")
	table.add_column("Status")
	table.add_column("Priority")
	table.add_column("Tasks", justify="right")
	table.add_column("Tags")
	if verbose:
		table.add_column("Parent", justify="right")
		table.add_column("Dependencies")

	for plan in plans:
		done, total = plan.progress()
		row = [
			str(plan.id),
			plan.display_title + (" [dim](epic)[/dim]" if plan.epic else ""),
			_status_text(plan.status),
			_priority_text(plan.priority),
			f"{done}/{total}",
			", ".join(plan.tags),
		]
		if verbose:
			blocking = set(blocking_dependencies(plan, all_plans))
			deps = [
				f"[red]{dep}[/red]" if dep in blocking else f"[green]{dep}[/green]"
				for dep in plan.dependencies
			]
			row.extend([str(plan.parent) if plan.parent else "", " ".join(deps)])
		table.add_row(*row)

	console.print(table)


def render_workspaces(entries: list[ListEntry], console: Optional[Console] = None) -> None:
	"""Render tracked workspaces with live branch and lock state."""
	console = console or Console()
	if not entries:
		console.print("[dim]No workspaces tracked.[/dim]")
		return

	table = Table(title="Workspaces")
	table.add_column("Path", style="cyan")
	table.add_column("Name")
	table.add_column("Task")
	table.add_column("Plan")
	table.add_column("Branch")
	table.add_column("Lock")
	table.add_column("Status")

	for item in entries:
		entry = item.entry
		plan = ""
		if entry.plan_id is not None:
			plan = f"{entry.plan_id}" + (f" {entry.plan_title}" if entry.plan_title else "")
		lock = "[dim]-[/dim]"
		if item.lock is not None:
			lock = f"[yellow]{item.lock.type.value}[/yellow] {item.lock.describe()}"
		status = "[green]ok[/green]" if item.status == "ok" else f"[red]{item.status}[/red]"
		if item.error:
			status += f" [dim]{item.error}[/dim]"
		table.add_row(
			entry.workspace_path,
			entry.name or "",
			entry.task_id or "",
			plan,
			item.branch or "",
			lock,
			status,
		)

	console.print(table)


def render_review(result: ReviewResult, console: Optional[Console] = None) -> None:
	"""Render a merged review: summary panel, issues table, follow-ups."""
	console = console or Console()
	summary = result.summary

	verdict_style = "green" if result.verdict == Verdict.ACCEPTABLE else "red"
	lines = [
		f"[bold]Verdict:[/bold] [{verdict_style}]{result.verdict.value}[/{verdict_style}]",
		f"[bold]Reviewed by:[/bold] {', '.join(result.executors)}",
		f"[bold]Issues:[/bold] {summary.total_issues} "
		f"(critical {summary.critical_count}, major {summary.major_count}, "
		f"minor {summary.minor_count}, info {summary.info_count})",
		f"[bold]Files:[/bold] {summary.files_reviewed}",
	]
	for warning in result.warnings:
		lines.append(f"[yellow]Warning:[/yellow] {warning}")
	console.print(Panel(
		"\n".join(lines),
		title=f"Review: plan {result.plan_id} {result.plan_title}",
		border_style=verdict_style,
	))

	if result.issues:
		table = Table(title="Issues")
		table.add_column("ID", style="cyan")
		table.add_column("Severity")
		table.add_column("Category")
		table.add_column("Location")
		table.add_column("Issue")
		table.add_column("Source", style="dim")
		for issue in result.issues:
			style = SEVERITY_STYLES[issue.severity]
			location = issue.file or ""
			if issue.file and issue.line is not None:
				location += f":{issue.line}"
			text = issue.content
			if issue.suggestion:
				text += f"\n[dim]Suggestion: {issue.suggestion}[/dim]"
			table.add_row(
				issue.id,
				f"[{style}]{issue.severity.value}[/{style}]",
				issue.category.value,
				location,
				text,
				issue.source or "",
			)
		console.print(table)

	for heading, items in (("Recommendations", result.recommendations), ("Action items", result.action_items)):
		if items:
			console.print(f"\n[bold]{heading}:[/bold]")
			for item in items:
				console.print(f"  - {item}")
