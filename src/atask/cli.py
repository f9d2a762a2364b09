from __future__ import annotations

import asyncio
import os
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _settings():
    from atask.core.config import Settings

    return Settings.from_env()


def _setup_logging(settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from atask.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


def _store(settings):
    from atask.core.tasks import TaskStore

    return TaskStore(os.path.join(settings.data_dir, "tasks.json"))


@app.command()
def add(
    content: str = typer.Argument(..., help="Task content; separate steps with a line of eight dashes"),
    surface: Optional[str] = typer.Option(None, help="Surface kind (chatgpt, gemini, oiioii)"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Whole-task retries on failure"),
) -> None:
    """Queue a new task."""
    _load_env()
    from atask.integrations.agents import supported_surfaces

    settings = _settings()
    kind = (surface or settings.default_surface).lower()
    if kind not in supported_surfaces():
        typer.secho(f"Unsupported surface: {kind}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    retries = settings.default_max_retries if max_retries is None else max_retries
    task = _store(settings).create_task(content, surface=kind, max_retries=retries)
    steps = len(task.steps) if task.steps else 1
    typer.echo(f"{task.task_id} queued on {task.surface} ({steps} step{'s' if steps != 1 else ''})")


@app.command("list")
def list_tasks(
    status: Optional[str] = typer.Option(None, help="Only show tasks with this status"),
) -> None:
    """Show queued and finished tasks."""
    _load_env()
    tasks = _store(_settings()).list_tasks(status)
    if not tasks:
        typer.echo("No tasks.")
        return
    for task in tasks:
        progress = ""
        if task.steps:
            done = sum(1 for s in task.steps if s.status == "completed")
            progress = f" steps {done}/{len(task.steps)}"
        retries = f" retries {task.retry_count}/{task.max_retries}" if task.max_retries else ""
        line = f"{task.task_id}  {task.status:<9} {task.surface:<8}{progress}{retries}"
        if task.error:
            line += f"  error: {task.error[:80]}"
        typer.echo(line)


@app.command()
def run(
    timeout: Optional[float] = typer.Option(None, help="Give up after this many seconds"),
    task_id: Optional[str] = typer.Option(None, "--task", help="Start this task first, even if it already finished"),
) -> None:
    """Drain the queue, running one task at a time, and exit when idle."""
    _load_env()
    settings = _settings()
    _setup_logging(settings)

    from atask.core.coordinator import Coordinator

    async def _main() -> None:
        coordinator = Coordinator.from_settings(settings)
        recovered = coordinator.recover_interrupted()
        if recovered:
            typer.echo(f"Recovered {recovered} interrupted task(s)")
        try:
            if task_id:
                if not await coordinator.start_task(task_id):
                    typer.secho(f"Could not start {task_id}", fg=typer.colors.RED)
                    return
            else:
                await coordinator.schedule_next()
            await coordinator.wait_idle(timeout)
        finally:
            await coordinator.shutdown()

    try:
        asyncio.run(_main())
    except asyncio.TimeoutError:
        typer.secho("Timed out before the queue drained.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("Interrupted.")
        raise typer.Exit(code=130)


@app.command()
def stop(task_id: str = typer.Argument(..., help="Task to return to Pending")) -> None:
    """Force a task back to Pending.

    A task being run by another ``atask run`` process is aborted there
    once that process sees the new status.
    """
    _load_env()
    settings = _settings()
    store = _store(settings)
    if store.get(task_id) is None:
        typer.secho(f"Unknown task: {task_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    from atask.core.coordinator import Coordinator

    coordinator = Coordinator.from_settings(settings, store=store)
    asyncio.run(coordinator.stop(task_id))
    typer.echo(f"{task_id} is pending")


@app.command()
def reset(task_id: str = typer.Argument(..., help="Task to reset")) -> None:
    """Clear a task's error, retries and step progress."""
    _load_env()
    if _store(_settings()).reset_task(task_id) is None:
        typer.secho(f"Unknown task: {task_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{task_id} reset")


@app.command()
def version() -> None:
    from atask import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
