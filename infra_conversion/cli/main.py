"""Infra Conversion CLI - Main entry point."""

import logging

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from infra_conversion.config import get_settings
from infra_conversion.engine.clock import ManualClock
from infra_conversion.engine.worker import WorkerTickReport
from infra_conversion.migration.factory import build_in_memory_runtime

app = typer.Typer(
    name="conversion",
    help="Infra Conversion - durable VM conversion jobs",
    no_args_is_help=True,
)

console = Console()


@app.command()
def status() -> None:
    """Show engine configuration."""
    settings = get_settings()

    console.print(
        Panel(
            "[bold cyan]Infra Conversion[/bold cyan] - signal-driven VM conversion engine",
            title="System Status",
            border_style="cyan",
        )
    )

    table = Table(border_style="cyan")
    table.add_column("Setting", style="bold white")
    table.add_column("Value", justify="right")
    table.add_column("Details", style="dim")

    table.add_row("Retry interval", f"{settings.state_retry_interval_seconds}s", "Delay between polling signals")
    table.add_row("Job deadline", f"{settings.job_timeout_hours}h", "Overall limit before a forced abort")
    table.add_row("Queue routing", settings.queue_role, f"zone={settings.queue_zone}")
    table.add_row("Worker batch", str(settings.worker_batch_size), "Signals drained per tick")
    table.add_row(
        "API Server",
        "[green]Ready[/green]" if not settings.debug else "[yellow]Debug Mode[/yellow]",
        f"{settings.host}:{settings.port}",
    )

    console.print(table)


@app.command()
def server() -> None:
    """Start the FastAPI server."""
    import uvicorn

    settings = get_settings()
    console.print(
        Panel(
            f"[bold cyan]Starting Infra Conversion API Server[/bold cyan]\n\n"
            f"[cyan]Host:[/cyan]  {settings.host}\n"
            f"[cyan]Port:[/cyan]  {settings.port}\n"
            f"[cyan]Debug:[/cyan] {settings.debug}",
            title="Server",
            border_style="cyan",
        )
    )
    uvicorn.run(
        "infra_conversion.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


@app.command()
def simulate(
    vm_name: str = typer.Option("vm-demo", "--vm-name", help="Name of the simulated source VM"),
    cancel_at: str | None = typer.Option(None, "--cancel-at", help="Request cancelation on entering this state"),
    fail_conversion: str | None = typer.Option(None, "--fail-conversion", help="Make disk conversion fail"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine logs"),
) -> None:
    """Run one in-memory migration end to end on a simulated clock."""
    settings = get_settings()
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)

    clock = ManualClock()
    runtime = build_in_memory_runtime(settings, clock=clock)
    task = runtime.environment.sample_task(vm_name=vm_name, conversion_failure=fail_conversion)
    job = runtime.engine.create_job(task_id=task.id)
    canceled = False

    def _cancel_on_state(report: WorkerTickReport) -> None:
        nonlocal canceled
        current = runtime.engine.get_job(job.id)
        if cancel_at and not canceled and current.state == cancel_at and not current.finished:
            runtime.engine.request_cancel(job.id)
            canceled = True
            console.print(f"[yellow]Cancelation requested in state {cancel_at}[/yellow]")

    started_at = clock()
    total = runtime.worker.run_until_idle(clock=clock, on_tick=_cancel_on_state)
    final = runtime.engine.get_job(job.id)

    status_style = "green" if final.status == "Ok" else "red"
    console.print(
        Panel(
            f"[cyan]Job:[/cyan]       {final.id}\n"
            f"[cyan]State:[/cyan]     {final.state}\n"
            f"[cyan]Status:[/cyan]    [{status_style}]{final.status}[/{status_style}]\n"
            f"[cyan]Message:[/cyan]   {final.message}\n"
            f"[cyan]Signals:[/cyan]   {total.delivered} delivered, {total.duplicates} duplicates\n"
            f"[cyan]Elapsed:[/cyan]   {clock() - started_at} (simulated)",
            title="Conversion Job",
            border_style="cyan",
        )
    )

    progress = task.transformation_progress()
    if progress is None:
        return
    table = Table(title=f"Progress {progress.percent:.1f}%", border_style="cyan")
    table.add_column("State", style="cyan")
    table.add_column("Description")
    table.add_column("Status", justify="center")
    table.add_column("Percent", justify="right")
    for state, record in progress.states.items():
        record_style = "green" if record.status == "Ok" else "red"
        table.add_row(
            state,
            record.description or "",
            f"[{record_style}]{record.status}[/{record_style}] ({record.state})",
            f"{record.percent:.1f}%",
        )
    console.print(table)


if __name__ == "__main__":
    app()
