"""Command-line interface for the fleet coordinator."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from ..core.config import load_config
from ..core.engine import CoordinationEngine
from ..core.lifecycle import WorkspaceState, workspace_state
from ..core.plan import get_claimable_tasks, parse_plan
from ..core.workspace import WorkspaceRegistry
from ..queue.action_queue import ActionQueue
from ..queue.commitment_queue import CommitmentQueue
from ..utils.error_handling import safe_call
from ..utils.rich_logging import setup_rich_logging


console = Console()


@click.group()
@click.option("--config", "-c", "config_path", default="fleet-coordinator.yaml", help="Config file")
@click.pass_context
def cli(ctx, config_path):
    """Fleet coordinator - multi-agent task coordination on GitHub issues."""
    load_dotenv()
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(Path(config_path))


def _registry(ctx) -> WorkspaceRegistry:
    return WorkspaceRegistry(ctx.obj["config"].state_dir)


def _engine(ctx) -> CoordinationEngine:
    config = ctx.obj["config"]
    log = setup_rich_logging(
        agent_id=config.github.username or "fleet",
        state_dir=config.state_dir,
        log_level=config.log_level,
    )
    return CoordinationEngine.from_config(config, logger_instance=log)


@cli.command()
@click.argument("url")
@click.option("--thread", help="Conversation the workspace was discovered in")
@click.pass_context
def watch(ctx, url, thread):
    """Start coordinating work in a repository."""
    try:
        record = _registry(ctx).add(url, thread=thread)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        sys.exit(1)
    console.print(f"[green]✓ Watching {record.key}[/]")


@cli.command()
@click.argument("owner_repo")
@click.pass_context
def unwatch(ctx, owner_repo):
    """Stop coordinating work in OWNER/REPO."""
    owner, _, repo = owner_repo.partition("/")
    if _registry(ctx).remove(owner, repo):
        console.print(f"[green]✓ Stopped watching {owner_repo}[/]")
    else:
        console.print(f"[yellow]{owner_repo} is not being watched[/]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show watched workspaces and their lifecycle state."""
    records = _registry(ctx).list()
    if not records:
        console.print("[yellow]No workspaces watched. Use 'fleet watch <url>' to add one.[/]")
        return

    table = Table(title="Watched Workspaces")
    table.add_column("Workspace")
    table.add_column("State")
    table.add_column("Active Plans")
    table.add_column("Last Polled")
    table.add_column("Stuck Tasks")
    cooldown = ctx.obj["config"].coordination.plan_synthesis_cooldown
    now = datetime.now(timezone.utc)
    for record in records:
        current = workspace_state(record, cooldown, now)
        if current == WorkspaceState.FINISHED:
            state = f"[magenta]finished (#{record.finished_issue_number})[/]"
        elif current == WorkspaceState.NEEDS_SYNTHESIS:
            state = "[yellow]needs-synthesis[/]"
        else:
            state = "[green]active[/]"
        plans = ", ".join(f"#{n}" for n in record.active_plan_issues) or "-"
        polled = record.last_polled.strftime("%Y-%m-%d %H:%M") if record.last_polled else "never"
        table.add_row(record.key, state, plans, polled, str(len(record.stuck_tasks)))
    console.print(table)


@cli.command()
@click.pass_context
def cycle(ctx):
    """Run a single coordination cycle."""
    report = _engine(ctx).run_cycle()
    for ws in report.workspaces:
        line = f"[bold]{ws.key}[/] {ws.state.value}"
        if ws.plans is not None:
            line += f", {ws.plans.plans} plans, {ws.plans.claimable} claimable"
        if ws.synthesized_plan:
            line += f", new plan #{ws.synthesized_plan}"
        if ws.task is not None:
            line += f", task {ws.task.task_number} {ws.task.status}"
        console.print(line)
    for key, error in report.errors.items():
        console.print(f"[red]✗ {key}: {error}[/]")
    if report.errors:
        sys.exit(1)


@cli.command()
@click.option("--interval", "-i", type=int, help="Seconds between cycles (default from config)")
@click.option("--max-cycles", "-n", type=int, help="Stop after this many cycles")
@click.pass_context
def run(ctx, interval, max_cycles):
    """Run coordination cycles continuously."""
    config = ctx.obj["config"]
    engine = _engine(ctx)
    interval = interval or config.poll_interval
    console.print(f"[bold green]Coordinating as {engine.client.username}, every {interval}s[/]")
    try:
        cycles = engine.run_forever(interval, max_cycles=max_cycles)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/]")
        return
    console.print(f"[green]✓ Completed {cycles} cycles[/]")


@cli.command("parse-plan")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", default="", help="Issue title (needed if the body lacks '# [PLAN]')")
def parse_plan_cmd(file, title):
    """Parse a plan markdown file and show its tasks."""
    plan = parse_plan(file.read_text(), title)
    if plan is None:
        console.print("[red]Not a plan[/]")
        sys.exit(1)

    console.print(f"[bold]{plan.title}[/] ({plan.status.value})")
    if plan.goal:
        console.print(f"[dim]{plan.goal}[/]")
    claimable = {t.number for t in get_claimable_tasks(plan)}
    table = Table()
    table.add_column("#")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Assignee")
    table.add_column("Depends On")
    table.add_column("Claimable")
    for task in plan.tasks:
        table.add_row(
            str(task.number),
            task.title,
            task.status,
            task.assignee or "-",
            ", ".join(task.dependencies) or "-",
            "✓" if task.number in claimable else "",
        )
    console.print(table)


@cli.command()
@click.option("--failed", is_flag=True, help="Only show actions that exhausted their retries")
@click.pass_context
def actions(ctx, failed):
    """Show the outbound action queue."""
    queue = ActionQueue(ctx.obj["config"].state_dir)
    stats = queue.stats()
    console.print(
        f"[bold]Actions:[/] {stats['pending']} pending ({stats['deferred']} deferred), "
        f"{stats['failed']} failed, {stats['total']} total"
    )
    entries = queue.get_failed() if failed else queue.get_retryable()
    if not entries:
        return
    table = Table()
    table.add_column("ID")
    table.add_column("Target")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Error")
    for action in entries:
        table.add_row(
            action.id, action.target.uri, action.priority, action.status,
            str(action.attempt_count), action.error or "",
        )
    console.print(table)


@cli.command()
@click.pass_context
def commitments(ctx):
    """Show the commitment queue."""
    queue = CommitmentQueue(ctx.obj["config"].state_dir)
    stats = safe_call(queue.stats, default={}, error_message="Could not read commitment queue")
    if not stats:
        console.print("[red]Commitment queue unavailable[/]")
        sys.exit(1)
    console.print("[bold]Commitments:[/] " + ", ".join(f"{k}={v}" for k, v in stats.items()))
    blocking = "[yellow]yes[/]" if queue.has_pending() else "[green]no[/]"
    console.print(f"Blocking new promises: {blocking}")
    for c in queue.get_pending():
        console.print(f"  {c.id} ({c.status}) {c.type}: {c.description}")


if __name__ == "__main__":
    cli()
