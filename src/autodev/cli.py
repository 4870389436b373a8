from __future__ import annotations

import json
import signal
from typing import Optional

import httpx
import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)

def _load_env() -> None:
    load_dotenv()

def _settings():
    from autodev.core.config import Settings

    return Settings.from_env()

def _setup_logging(settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from autodev.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default AUTODEV_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default AUTODEV_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the HTTP control API.

    Logging is configured by the app factory inside the server process.
    """
    _load_env()
    settings = _settings()
    uvicorn.run(
        "autodev.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )

@app.command()
def run(
    task_file: str = typer.Argument(..., help="Path to the JSON task file"),
    parallel: Optional[int] = typer.Option(None, "--parallel", "-p", help="Maximum concurrent workers"),
    report: bool = typer.Option(True, "--report/--no-report", help="Write ISSUES.md next to the task file when done"),
    resume: bool = typer.Option(False, "--resume", help="Resume a saved session that was left paused"),
    poll: float = typer.Option(1.0, "--poll", hidden=True, help="Seconds between pause checks"),
) -> None:
    """Load a task file and run it to completion in the foreground.

    There is no control API in this mode, so a pause that only an operator
    can clear (blocker issue, rate-limit ceiling) stops the run with exit
    code 3.  Progress and issues are kept in the saved session.
    """
    _load_env()
    settings = _settings()
    _setup_logging(settings)

    from autodev.core.errors import TaskFileError
    from autodev.core.gateway import build_scheduler

    scheduler = build_scheduler(settings)

    def _on_event(event_type: str, payload: dict) -> None:
        if event_type == "task_update":
            typer.echo(f"[{payload['status']:>8}] {payload['task_id']} {payload['title']}")
        elif event_type == "api_error_pause":
            typer.secho(
                f"⏸ API error ({payload['retry_count']}/{payload['max_retries']}), next retry in {payload['next_retry_in'] or '-'}s",
                fg=typer.colors.YELLOW,
            )
        elif event_type == "scheduler_state" and payload.get("pause_reason") == "blocker":
            typer.secho("⛔ Blocker issue reported, scheduler paused", fg=typer.colors.RED, bold=True)

    scheduler.subscribe(_on_event)
    try:
        scheduler.load_file(task_file)
    except TaskFileError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    def _interrupt(signum, frame) -> None:
        typer.echo("\nStopping workers...")
        scheduler.stop()

    signal.signal(signal.SIGINT, _interrupt)

    if not scheduler.start(parallel or settings.max_parallel):
        typer.echo("Nothing to run.")
        raise typer.Exit()
    if scheduler.ctx.paused:
        if not resume:
            # Leave the saved session paused for the next attempt.
            typer.secho(
                f"Saved session is paused ({scheduler.ctx.pause_reason}); rerun with --resume.",
                fg=typer.colors.YELLOW,
                err=True,
            )
            raise typer.Exit(code=3)
        typer.echo(f"Resuming saved session paused for {scheduler.ctx.pause_reason}")
        scheduler.resume()

    halted_for: Optional[str] = None
    while not scheduler.wait_until_idle(timeout=poll):
        if scheduler.needs_operator():
            halted_for = scheduler.ctx.pause_reason
            scheduler.stop()
            break

    progress = scheduler.get_progress()
    typer.echo(
        f"\nDone: {progress['completed']}/{progress['total']} succeeded, {progress['failed']} failed"
    )
    if report and scheduler.get_issues():
        path = scheduler.write_issues_report()
        typer.echo(f"Issues report: {path}")
    if halted_for is not None:
        typer.secho(f"Run halted while paused ({halted_for}); fix the cause and rerun.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=3)
    if progress["completed"] != progress["total"]:
        raise typer.Exit(code=1)

@app.command()
def issues(
    task_file: str = typer.Argument(..., help="Path to the JSON task file"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write the report here instead of stdout"),
) -> None:
    """Print the issues recorded in the saved session of a task file."""
    _load_env()
    settings = _settings()

    from autodev.core.gateway import build_scheduler

    scheduler = build_scheduler(settings)
    scheduler.load_file(task_file)
    if output:
        typer.echo(scheduler.write_issues_report(output))
        return
    typer.echo(scheduler.issues.format_full_report(scheduler.issues.get_all()))

@app.command()
def status(
    url: Optional[str] = typer.Option(None, help="Base URL of a running server"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw state as JSON"),
) -> None:
    """Show the state of a running server."""
    _load_env()
    settings = _settings()
    base = url or f"http://{settings.host}:{settings.port}"
    headers = {"x-autodev-token": settings.api_token} if settings.api_token else {}
    try:
        resp = httpx.get(f"{base}/state", headers=headers, timeout=10)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        typer.secho(f"Cannot reach {base}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    state = resp.json()
    if as_json:
        typer.echo(json.dumps(state, indent=2))
        return
    progress = state["progress"]
    mode = "paused" if state["paused"] else ("running" if state["running"] else "idle")
    if state["paused"] and state.get("pause_reason"):
        mode += f" ({state['pause_reason']})"
    typer.echo(f"File:     {state.get('file_path') or '-'}")
    typer.echo(f"State:    {mode}")
    typer.echo(f"Progress: {progress['completed']}/{progress['total']} done, {progress['running']} running, {progress['failed']} failed")
    for worker in state.get("workers", []):
        typer.echo(f"  worker {worker['worker_id']}: {worker['task_id']} {worker.get('current_tool') or ''}")

@app.command()
def version() -> None:
    from autodev import __version__

    typer.echo(__version__)

if __name__ == "__main__":
    app()
