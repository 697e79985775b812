"""CLI commands for adpipe using Typer and Rich.

Every command except ``serve`` talks to a running API through
PipelineClient, so the CLI observes the same transitions, locks and
conflicts as any other client.
"""

import asyncio
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adpipe.client import BackoffPolicy, PipelineClient, ProjectWatcher
from adpipe.config import settings
from adpipe.orchestrator.errors import (
    ConcurrentModification,
    ConfirmationRequired,
    NotFound,
    PipelineError,
    StageLocked,
)
from adpipe.orchestrator.stages import Stage, StageKind, classify
from adpipe.schemas.project import ProjectSnapshot, TransitionResponse

app = typer.Typer(name="adpipe", help="Short-video ad pipeline orchestration")
console = Console()

api_url_option = typer.Option(None, "--api-url", help="API base URL (defaults to config)")


def _parse_uuid(project_id_str: str) -> uuid.UUID:
    try:
        return uuid.UUID(project_id_str)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid project UUID: {project_id_str}")
        raise typer.Exit(code=1)


def _parse_stage(stage_str: Optional[str]) -> Optional[Stage]:
    if stage_str is None:
        return None
    try:
        return Stage(stage_str)
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown stage: {stage_str}")
        console.print(f"Allowed: {', '.join(s.value for s in Stage)}")
        raise typer.Exit(code=1)


def _run(coro):
    """Run a client coroutine, turning API errors into exit codes."""
    try:
        return asyncio.run(coro)
    except NotFound as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except ConfirmationRequired as e:
        console.print(f"[yellow]{e}[/yellow]")
        _print_impact(e.report)
        raise typer.Exit(code=2)
    except ConcurrentModification as e:
        console.print(f"[yellow]Project changed concurrently:[/yellow] {e}. Refresh and try again.")
        raise typer.Exit(code=3)
    except StageLocked as e:
        console.print(f"[red]Locked:[/red] {e}")
        raise typer.Exit(code=1)
    except PipelineError as e:
        console.print(f"[red]Rejected:[/red] {e}")
        raise typer.Exit(code=1)


def _stage_color(stage: Stage) -> str:
    """Get Rich color for a stage.

    Color coding:
    - completed: green
    - failed: red
    - processing: yellow
    - review gates: cyan
    """
    if stage == Stage.COMPLETED:
        return "green"
    elif stage == Stage.FAILED:
        return "red"
    elif classify(stage) == StageKind.PROCESSING:
        return "yellow"
    return "cyan"


def _stage_display(stage: Stage) -> str:
    color = _stage_color(stage)
    return f"[{color}]{stage.value}[/{color}]"


def _print_transition(result: TransitionResponse) -> None:
    if result.noop:
        console.print(f"[dim]No change; project is at {result.stage.value}[/dim]")
        return
    path = " -> ".join(s.value for s in [result.previous_stage, *result.path])
    console.print(f"[green]✓[/green] {path}")
    console.print(f"Stage: {_stage_display(result.stage)}  epoch {result.generation_epoch}")


def _print_impact(report) -> None:
    color = "red" if report.destructive else "green"
    lines = [
        f"[bold]Target:[/bold] {report.target_stage.value}",
        f"[bold]Destructive:[/bold] [{color}]{'yes' if report.destructive else 'no'}[/{color}]",
        f"[bold]Affected:[/bold] {', '.join(s.value for s in report.affected_stages) or '-'}",
        f"[bold]Estimated cost:[/bold] ${report.estimated_cost_usd:.2f}",
    ]
    if report.restart_from:
        lines.append(f"[bold]Restart from:[/bold] {report.restart_from.value}")
    if report.warning:
        lines.append(f"[yellow]{report.warning}[/yellow]")
    console.print(Panel("\n".join(lines), title="[bold]Edit Impact[/bold]", border_style=color))


def _print_snapshot(project: ProjectSnapshot) -> None:
    info_lines = [
        f"[bold]ID:[/bold] {project.project_id}",
        f"[bold]Name:[/bold] {project.name or '-'}",
        f"[bold]Stage:[/bold] {_stage_display(project.stage)} ({project.stage_label})",
        f"[bold]Epoch:[/bold] {project.generation_epoch}",
        f"[bold]Fast mode:[/bold] {project.fast_mode}",
        f"[bold]Retry budget:[/bold] {project.retry_budget}",
        f"[bold]Cost:[/bold] ${project.cost_usd:.2f}",
    ]
    if project.stage == Stage.FAILED:
        info_lines.append(f"[bold]Failed at:[/bold] {project.failed_at_stage.value if project.failed_at_stage else '-'}")
        if project.error_message:
            info_lines.append(f"[bold]Error:[/bold] [red]{project.error_message}[/red]")
    if project.restart_from:
        info_lines.append(f"[bold]Restart from:[/bold] {project.restart_from.value}")
    if project.updated_at:
        info_lines.append(f"[bold]Updated:[/bold] {project.updated_at}")
    console.print(Panel("\n".join(info_lines), title="[bold]Project Status[/bold]", border_style="blue"))


@app.command()
def create(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Project name"),
    product_url: Optional[str] = typer.Option(None, "--product-url", "-u", help="Product page to analyze"),
    fast_mode: bool = typer.Option(False, "--fast/--no-fast", help="Auto-approve review gates"),
    retry_budget: Optional[int] = typer.Option(None, "--retry-budget", help="Automatic retries allowed"),
    start: bool = typer.Option(False, "--start", help="Start the pipeline right away"),
    api_url: Optional[str] = api_url_option,
):
    """Create a new project."""

    async def _create():
        async with PipelineClient(api_url) as client:
            project = await client.create_project(
                name=name, product_url=product_url, fast_mode=fast_mode, retry_budget=retry_budget,
            )
            console.print(f"[green]Created project:[/green] {project.project_id}")
            if start:
                _print_transition(await client.start(project.project_id))

    _run(_create())


@app.command(name="list")
def list_projects(api_url: Optional[str] = api_url_option):
    """List all projects."""

    async def _list():
        async with PipelineClient(api_url) as client:
            projects = await client.list_projects()
        if not projects:
            console.print("[yellow]No projects found[/yellow]")
            return

        table = Table(show_header=True, header_style="bold blue")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Stage")
        table.add_column("Cost", justify="right")
        table.add_column("Created")
        for project in projects:
            name = project.name or ""
            table.add_row(
                project.project_id[:8] + "...",
                name if len(name) <= 40 else name[:37] + "...",
                _stage_display(project.stage),
                f"${project.cost_usd:.2f}",
                (project.created_at or "")[:16].replace("T", " "),
            )
        console.print(table)

    _run(_list())


@app.command()
def status(
    project_id: str = typer.Argument(..., help="Project UUID"),
    api_url: Optional[str] = api_url_option,
):
    """Show detailed project status."""
    project_uuid = _parse_uuid(project_id)

    async def _status():
        async with PipelineClient(api_url) as client:
            _print_snapshot(await client.get_project(project_uuid))

    _run(_status())


@app.command()
def start(
    project_id: str = typer.Argument(..., help="Project UUID"),
    api_url: Optional[str] = api_url_option,
):
    """Start a newly created project."""
    project_uuid = _parse_uuid(project_id)

    async def _start():
        async with PipelineClient(api_url) as client:
            _print_transition(await client.start(project_uuid))

    _run(_start())


@app.command()
def approve(
    project_id: str = typer.Argument(..., help="Project UUID"),
    stage: Optional[str] = typer.Option(None, "--stage", "-s", help="Review gate being approved"),
    api_url: Optional[str] = api_url_option,
):
    """Approve the review gate the project is halted at."""
    project_uuid = _parse_uuid(project_id)
    gate = _parse_stage(stage)

    async def _approve():
        async with PipelineClient(api_url) as client:
            _print_transition(await client.approve(project_uuid, gate))

    _run(_approve())


@app.command()
def retry(
    project_id: str = typer.Argument(..., help="Project UUID"),
    api_url: Optional[str] = api_url_option,
):
    """Retry the stage a failed project failed at."""
    project_uuid = _parse_uuid(project_id)

    async def _retry():
        async with PipelineClient(api_url) as client:
            _print_transition(await client.retry(project_uuid))

    _run(_retry())


@app.command()
def cancel(
    project_id: str = typer.Argument(..., help="Project UUID"),
    api_url: Optional[str] = api_url_option,
):
    """Cancel a running stage and roll back to its checkpoint."""
    project_uuid = _parse_uuid(project_id)

    async def _cancel():
        async with PipelineClient(api_url) as client:
            _print_transition(await client.rollback(project_uuid))

    _run(_cancel())


@app.command()
def impact(
    project_id: str = typer.Argument(..., help="Project UUID"),
    stage: str = typer.Argument(..., help="Stage whose output would be edited"),
    fields: list[str] = typer.Argument(..., help="Fields that would change"),
    api_url: Optional[str] = api_url_option,
):
    """Preview the downstream impact of editing a past stage."""
    project_uuid = _parse_uuid(project_id)
    target = _parse_stage(stage)

    async def _impact():
        async with PipelineClient(api_url) as client:
            _print_impact(await client.analyze_impact(project_uuid, target, fields))

    _run(_impact())


@app.command()
def progress(
    project_id: str = typer.Argument(..., help="Project UUID"),
    api_url: Optional[str] = api_url_option,
):
    """Show unit progress for the current stage."""
    project_uuid = _parse_uuid(project_id)

    async def _progress():
        async with PipelineClient(api_url) as client:
            snap = await client.get_progress(project_uuid)
        if not snap.active:
            console.print(f"Project is at {_stage_display(snap.stage)}; nothing generating")
            return
        console.print(f"[bold]{snap.label}[/bold] {snap.percent}%")
        console.print(
            f"completed {snap.completed}  generating {snap.generating}  "
            f"failed {snap.failed}  total {snap.total}"
        )
        if snap.current_step:
            console.print(f"[dim]{snap.current_step}[/dim]")

    _run(_progress())


@app.command()
def watch(
    project_id: str = typer.Argument(..., help="Project UUID"),
    api_url: Optional[str] = api_url_option,
):
    """Follow a processing project until it reaches a review gate or finishes."""
    project_uuid = _parse_uuid(project_id)

    async def _watch():
        async with PipelineClient(api_url) as client:
            with console.status("[bold green]Waiting for pipeline...") as spinner:

                def on_update(snapshot: ProjectSnapshot):
                    spinner.update(f"[bold green]{snapshot.stage_label}...")

                def on_progress(snap):
                    if snap.current_step:
                        spinner.update(f"[bold green]{snap.label}: {snap.current_step} ({snap.percent}%)")

                def on_degraded(failures: int):
                    console.print(f"[yellow]Connection degraded after {failures} failed polls; still retrying[/yellow]")

                def on_recovered():
                    console.print("[green]Connection restored[/green]")

                watcher = ProjectWatcher(
                    client,
                    project_uuid,
                    policy=BackoffPolicy.from_settings(settings.polling),
                    on_update=on_update,
                    on_progress=on_progress,
                    on_degraded=on_degraded,
                    on_recovered=on_recovered,
                    with_progress=True,
                )
                async with watcher:
                    final = await watcher.wait()
        if final is not None:
            _print_snapshot(final)

    try:
        _run(_watch())
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Stopped watching; the pipeline keeps running on the server.[/yellow]")
        raise typer.Exit(code=130)


@app.command()
def stages(api_url: Optional[str] = api_url_option):
    """Show the stage registry."""

    async def _stages():
        async with PipelineClient(api_url) as client:
            rows = await client.list_stages()
        table = Table(show_header=True, header_style="bold blue")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Stage")
        table.add_column("Kind")
        table.add_column("Rollback to")
        table.add_column("Units", justify="right")
        table.add_column("Est. cost", justify="right")
        for row in rows:
            cost = row.units * row.unit_cost_cents
            table.add_row(
                str(row.order),
                _stage_display(row.stage),
                row.kind.value,
                row.rollback_target.value if row.rollback_target else "",
                str(row.units or ""),
                f"${cost / 100:.2f}" if cost else "",
            )
        console.print(table)

    _run(_stages())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "adpipe.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
    )
