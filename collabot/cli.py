import asyncio
from typing import Annotated, Optional
from uuid import uuid4

import cyclopts
from cyclopts import App
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from collabot.serve.cli import serve_app

console = Console()

app = App(name="collabot", help="Orchestrate autonomous coding agents")
app.command(serve_app, name="serve")

tasks_app = App(name="tasks", help="Inspect and manage project tasks")
app.command(tasks_app, name="tasks")

load_dotenv()

HomeOption = Annotated[
    Optional[str], cyclopts.Parameter(help="Harness home (config.yaml, roles/, projects/)")
]


def _task_store(home: Optional[str]):
    from collabot.harness import HarnessPaths
    from collabot.tasks import TaskStore

    return TaskStore(HarnessPaths.resolve(home).projects_dir)


@app.command
def submit(
    prompt: Annotated[str, cyclopts.Parameter(help="What the agent should do")],
    project: Annotated[str, cyclopts.Parameter(help="Project to dispatch against")],
    role: Annotated[Optional[str], cyclopts.Parameter(help="Role to dispatch as")] = None,
    task: Annotated[Optional[str], cyclopts.Parameter(help="Existing task slug to continue")] = None,
    home: HomeOption = None,
    engine: Annotated[str, cyclopts.Parameter(help="Agent engine (echo, subprocess)")] = "echo",
    agent_command: Annotated[
        Optional[str], cyclopts.Parameter(help="Command line for the subprocess engine")
    ] = None,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Dispatch one agent and print its result."""
    from collabot.adapters.cli import CliAdapter
    from collabot.comms import InboundMessage
    from collabot.config import configure_logging
    from collabot.errors import HarnessError
    from collabot.harness import HarnessPaths, create_runner, load_orchestrator

    configure_logging(verbose)
    paths = HarnessPaths.resolve(home)
    thread_id = f"cli-{uuid4().hex[:12]}"

    try:
        orchestrator = load_orchestrator(paths, create_runner(engine, agent_command))
        message = InboundMessage(
            id=thread_id,
            content=prompt,
            thread_id=thread_id,
            source="cli",
            project=project,
            role=role,
            metadata={"taskSlug": task} if task else {},
        )
        result = asyncio.run(orchestrator.handle_task(message, CliAdapter(console)))
    except HarnessError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    return 0 if result.status == "completed" else 1


@tasks_app.command(name="list")
def list_tasks(
    project: Annotated[str, cyclopts.Parameter(help="Project name")],
    include_closed: Annotated[
        bool, cyclopts.Parameter(name="--all", help="Include closed tasks")
    ] = False,
    home: HomeOption = None,
):
    """List a project's tasks."""
    tasks = _task_store(home).list_tasks(project, status=None if include_closed else "open")
    if not tasks:
        console.print("[dim]No tasks[/dim]")
        return

    table = Table(title=f"Tasks for {project}")
    table.add_column("Slug", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Dispatches", justify="right")
    table.add_column("Created", style="dim")
    for task in tasks:
        table.add_row(
            task["slug"], task["name"], task["status"], str(task["dispatchCount"]), task["created"]
        )
    console.print(table)


@tasks_app.command(name="create")
def create_task(
    project: Annotated[str, cyclopts.Parameter(help="Project name")],
    name: Annotated[str, cyclopts.Parameter(help="Task name")],
    description: Annotated[Optional[str], cyclopts.Parameter(help="Task description")] = None,
    home: HomeOption = None,
):
    """Create a task."""
    handle = _task_store(home).create_task(project, name, description=description)
    console.print(f"[green]Created task {handle.slug}[/green]")
    if handle.slug_modified:
        console.print(f"[dim]Slug normalised from {name!r}[/dim]")


@tasks_app.command(name="close")
def close_task(
    project: Annotated[str, cyclopts.Parameter(help="Project name")],
    slug: Annotated[str, cyclopts.Parameter(help="Task slug")],
    home: HomeOption = None,
):
    """Close a task."""
    from collabot.errors import TaskNotFoundError

    try:
        _task_store(home).close_task(project, slug)
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    console.print(f"[green]Closed task {slug}[/green]")


@tasks_app.command(name="context")
def task_context(
    project: Annotated[str, cyclopts.Parameter(help="Project name")],
    slug: Annotated[str, cyclopts.Parameter(help="Task slug")],
    home: HomeOption = None,
):
    """Print the reconstructed history of a task."""
    from collabot.context import load_task_context
    from collabot.errors import TaskNotFoundError

    store = _task_store(home)
    try:
        store.get_task(project, slug)
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    console.print(load_task_context(store.task_dir(project, slug)), markup=False)


@tasks_app.command(name="session")
def task_session(
    project: Annotated[str, cyclopts.Parameter(help="Project name")],
    slug: Annotated[str, cyclopts.Parameter(help="Task slug")],
    dispatch: Annotated[
        Optional[str],
        cyclopts.Parameter(help="Dispatch id, e.g. coder-2. Lists dispatches when omitted"),
    ] = None,
    home: HomeOption = None,
):
    """Show the captured event stream of a dispatch."""
    from collabot.errors import TaskNotFoundError
    from collabot.events import list_dispatch_logs, render_session_view

    store = _task_store(home)
    try:
        task_dir = store.get_task(project, slug).task_dir
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    if dispatch is None:
        dispatch_ids = list_dispatch_logs(task_dir)
        if not dispatch_ids:
            console.print("[dim]No captured dispatches[/dim]")
        for dispatch_id in dispatch_ids:
            console.print(dispatch_id, markup=False)
        return None

    view = render_session_view(task_dir, dispatch)
    if view is None:
        console.print(f"No event log for dispatch {dispatch}", style="red", markup=False)
        return 1
    console.print(view, markup=False)


def main():
    app()
