"""Taskpool CLI - inspect and resume background tasks through the API."""

from datetime import datetime
from pathlib import Path
from typing import NoReturn

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from taskpool.services.api_client import ApiClientService

# Load .env file from project root (parent of taskpool/ directory)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

app = typer.Typer(help="Taskpool CLI")
task_app = typer.Typer(help="Background task commands")
app.add_typer(task_app, name="task")

console = Console()

STATUS_STYLES = {"running": "yellow", "completed": "green", "cancelled": "red"}


def _status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _fail(error: httpx.HTTPError) -> NoReturn:
    if isinstance(error, httpx.HTTPStatusError):
        try:
            detail = error.response.json().get("detail", error.response.text)
        except (ValueError, AttributeError):
            # Non-JSON body, e.g. an HTML error page from a proxy
            detail = error.response.text
        console.print(f"[red]✗[/red] {error.response.status_code}: {detail}")
    else:
        console.print(f"[red]✗[/red] Could not reach the API: {error}")
    raise typer.Exit(1)


@task_app.command("list")
def list_tasks(
    parent: str = typer.Option(
        None, "--parent", "-p", help="Only direct children of this session"
    ),
):
    """List background tasks."""
    try:
        tasks = ApiClientService.list_tasks(parent_session_id=parent)
    except httpx.HTTPError as e:
        _fail(e)

    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title=f"Background Tasks ({len(tasks)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Agent", style="magenta")
    table.add_column("Description", style="white")
    table.add_column("Tools", justify="right")
    table.add_column("Started", style="dim")

    for task in tasks:
        description = task["description"]
        if len(description) > 50:
            description = description[:50] + "..."
        progress = task.get("progress") or {}
        table.add_row(
            task["id"],
            _status(task["status"]),
            task["agent"],
            description,
            str(progress.get("tool_calls", 0)),
            task["started_at"][11:19],  # Just the time
        )

    console.print(table)


@task_app.command("get")
def get_task(task_id: str = typer.Argument(..., help="Task ID")):
    """Get task details."""
    try:
        task = ApiClientService.get_task(task_id)
    except httpx.HTTPError as e:
        _fail(e)

    started = datetime.fromisoformat(task["started_at"].replace("Z", "+00:00"))
    if task.get("completed_at"):
        ended = datetime.fromisoformat(task["completed_at"].replace("Z", "+00:00"))
        duration_str = f"{(ended - started).total_seconds():.1f}s"
    else:
        duration_str = "still running"

    console.print(f"[bold]Task {task['id']}[/bold]")
    console.print(f"  Status: {_status(task['status'])}")
    console.print(f"  Description: {task['description']}")
    console.print(f"  Agent: {task['agent']}")
    if task.get("model"):
        model = task["model"]
        console.print(f"  Model: {model['provider_id']}/{model['model_id']}")
    console.print(f"  Session: {task['session_id']}")
    console.print(f"  Parent: [dim]{task['parent_session_id']}[/dim]")
    console.print(f"  Started: {task['started_at']}")
    console.print(f"  Duration: {duration_str}")

    progress = task.get("progress")
    if progress:
        console.print(
            f"  Tool calls: {progress['tool_calls']}"
            + (f" (last: {progress['last_tool']})" if progress.get("last_tool") else "")
        )

    if task.get("concurrency_key"):
        console.print(f"  Holding slot: [cyan]{task['concurrency_key']}[/cyan]")

    if task.get("error"):
        console.print(f"\n[bold red]Error:[/bold red]\n{task['error']}")


@task_app.command("resume")
def resume_task(
    session_id: str = typer.Argument(..., help="Execution session of the task"),
    prompt: str = typer.Argument(..., help="Follow-up instructions"),
    parent: str = typer.Option(..., "--parent", "-p", help="Session to notify"),
    message: str = typer.Option("cli", "--message", "-m", help="Parent message ID"),
):
    """Resume a finished task in its original session."""
    try:
        task = ApiClientService.resume_task(
            session_id=session_id,
            prompt=prompt,
            parent_session_id=parent,
            parent_message_id=message,
        )
    except httpx.HTTPError as e:
        _fail(e)

    console.print(f"[green]✓[/green] Task resumed: [bold]{task['id']}[/bold]")
    console.print(f"  Status: {_status(task['status'])}")
    console.print(f"  Parent: [dim]{task['parent_session_id']}[/dim]")


@task_app.command("tree")
def task_tree(session_id: str = typer.Argument(..., help="Root session ID")):
    """Show every task spawned from a session."""
    try:
        tasks = ApiClientService.get_descendants(session_id)
    except httpx.HTTPError as e:
        _fail(e)

    root = Tree(f"[bold]{session_id}[/bold]")
    nodes = {session_id: root}
    # Descendants arrive parent-first, so every parent node exists already
    for task in tasks:
        parent_node = nodes.get(task["parent_session_id"], root)
        nodes[task["session_id"]] = parent_node.add(
            f"[cyan]{task['id']}[/cyan] {_status(task['status'])} {task['description']}"
        )
    console.print(root)


@task_app.command("prune")
def prune_tasks():
    """Drop tasks older than the retention window."""
    try:
        result = ApiClientService.prune()
    except httpx.HTTPError as e:
        _fail(e)

    console.print(
        f"[green]✓[/green] Pruned {len(result['pruned_tasks'])} tasks, "
        f"{result['pruned_notifications']} notifications"
    )


if __name__ == "__main__":
    app()
