"""CLI interface for the task session ledger."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import LedgerConfig, load_config
from .errors import ConfigurationError, NotFoundError, PersistenceError
from .log_sink import MemorySink, create_sink
from .mode_selector import ModeSelector
from .models import (
    ExecutionMode, ExecutionOptions, Session, SessionStatus, TaskDescriptor, TaskType,
)
from .protocols import LogSink
from .recommender import ComplexityRecommender
from .session_store import SessionStore

console = Console()

STATUS_STYLES = {
    SessionStatus.ACTIVE: "cyan",
    SessionStatus.COMPLETED: "green",
    SessionStatus.FAILED: "red",
    SessionStatus.TIMEOUT: "yellow",
    SessionStatus.CANCELLED: "dim",
}


def _config_or_exit(storage_root: str) -> LedgerConfig:
    try:
        return load_config(Path(storage_root))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)


def _open_store(config: LedgerConfig, verbose: bool = False) -> SessionStore:
    """Load the ledger into a fresh store.

    Store log lines only reach the console with --verbose; they always go to
    the configured log file.
    """
    sink: LogSink = create_sink(config.log_path) if verbose else MemorySink()
    store = SessionStore(config, sink=sink)
    asyncio.run(store.load())
    return store


def _format_status(status: SessionStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _session_mode(session: Session) -> str:
    decision = session.context.mode_decision
    return decision.mode.value if decision else "-"


@click.group()
@click.version_option(package_name="taskledger")
def main():
    """taskledger - persistent session ledger for task runners."""
    pass


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.option('--status', 'status_filter', type=click.Choice([s.value for s in SessionStatus]),
              help='Only show sessions with this status')
@click.option('--task', 'task_id', help='Only show sessions of this task id')
@click.option('--json', 'as_json', is_flag=True, help='Print sessions as JSON')
@click.option('--verbose', '-v', is_flag=True, help='Show store log output')
def sessions(
    storage_root: str,
    status_filter: Optional[str],
    task_id: Optional[str],
    as_json: bool,
    verbose: bool
):
    """List sessions in the ledger.

    STORAGE_ROOT is the directory that holds the .taskledger/ namespace.
    """
    config = _config_or_exit(storage_root)
    store = _open_store(config, verbose)

    status = SessionStatus(status_filter) if status_filter else None
    found = store.list_sessions(status)
    if task_id:
        found = [s for s in found if s.task.id == task_id]

    if as_json:
        click.echo(json.dumps([s.model_dump(mode="json", by_alias=True) for s in found], indent=2))
        return

    if not found:
        console.print("[yellow]No sessions found.[/yellow]")
        return

    table = Table(title=f"Sessions ({len(found)})")
    table.add_column("ID", style="cyan")
    table.add_column("Task")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Mode")
    table.add_column("Checkpoints", justify="right")
    table.add_column("Last active")

    for session in found:
        table.add_row(
            session.id,
            session.task.id,
            session.task.type.value,
            _format_status(session.status),
            _session_mode(session),
            str(len(session.checkpoints)),
            session.last_active_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.argument('session_id')
@click.option('--json', 'as_json', is_flag=True, help='Print the session as JSON')
def show(storage_root: str, session_id: str, as_json: bool):
    """Show one session in detail."""
    config = _config_or_exit(storage_root)
    store = _open_store(config)

    session = store.get(session_id)
    if session is None:
        console.print(f"[red]Session not found: {session_id}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(session.model_dump_json(by_alias=True, indent=2))
        return

    lines = [
        f"[bold]Task:[/bold] {session.task.id} ({session.task.type.value})",
        f"[bold]Description:[/bold] {session.task.description}",
        f"[bold]Status:[/bold] {_format_status(session.status)}",
        f"[bold]Created:[/bold] {session.created_at.isoformat()}",
        f"[bold]Last active:[/bold] {session.last_active_at.isoformat()}",
    ]

    decision = session.context.mode_decision
    if decision:
        lines.append(f"[bold]Mode:[/bold] {decision.mode.value} (source: {decision.source.value})")
        if decision.recommendation:
            rec = decision.recommendation
            lines.append(f"[bold]Score:[/bold] {rec.score:.1f}/10, confidence {rec.confidence:.1f}%")

    complexity = session.context.complexity_score
    if complexity:
        lines.append(
            f"[bold]Complexity:[/bold] scale {complexity.code_scale:.1f}, "
            f"difficulty {complexity.technical_difficulty:.1f}, "
            f"impact {complexity.business_impact:.1f}"
        )

    if session.task.related_files:
        lines.append(f"[bold]Files:[/bold] {', '.join(session.task.related_files)}")

    lines.append(f"[bold]Checkpoints:[/bold] {len(session.checkpoints)}")

    last_result = session.metadata.get("last_result")
    if isinstance(last_result, dict):
        outcome = "success" if last_result.get("success") else "failure"
        lines.append(f"[bold]Last result:[/bold] {outcome}")
        error = last_result.get("error")
        if error:
            lines.append(f"[red]Error ({error.get('code')}): {error.get('message')}[/red]")

    console.print(Panel("\n".join(lines), title=f"Session {session.id}"))


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.option('--json', 'as_json', is_flag=True, help='Print statistics as JSON')
def stats(storage_root: str, as_json: bool):
    """Show session counts by status."""
    config = _config_or_exit(storage_root)
    store = _open_store(config)
    statistics = store.get_statistics()

    if as_json:
        click.echo(statistics.model_dump_json(indent=2))
        return

    table = Table(title="Session Statistics")
    table.add_column("Status")
    table.add_column("Count", justify="right")

    table.add_row("[bold]total[/bold]", str(statistics.total))
    for status in SessionStatus:
        table.add_row(_format_status(status), str(getattr(statistics, status.value)))

    console.print(table)


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.option('--max-age', type=float, help='Idle seconds before an active session times out '
              '(defaults to the configured session timeout)')
@click.option('--verbose', '-v', is_flag=True, help='Show store log output')
def cleanup(storage_root: str, max_age: Optional[float], verbose: bool):
    """Time out active sessions that have been idle too long."""
    config = _config_or_exit(storage_root)
    store = _open_store(config, verbose)

    async def _cleanup() -> int:
        count = await store.cleanup_expired(max_age)
        await store.engine.close()
        return count

    try:
        count = asyncio.run(_cleanup())
    except PersistenceError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if count:
        console.print(f"[green]OK[/green] Timed out {count} session(s)")
    else:
        console.print("[dim]No expired sessions.[/dim]")


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.argument('session_id')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.option('--verbose', '-v', is_flag=True, help='Show store log output')
def delete(storage_root: str, session_id: str, yes: bool, verbose: bool):
    """Delete a session from the ledger."""
    config = _config_or_exit(storage_root)
    store = _open_store(config, verbose)

    if session_id not in store:
        console.print(f"[red]Session not found: {session_id}[/red]")
        sys.exit(1)

    if not yes and not click.confirm(f"Delete session {session_id}?"):
        console.print("[yellow]Aborted[/yellow]")
        return

    try:
        asyncio.run(store.delete_session(session_id))
    except (NotFoundError, PersistenceError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]OK[/green] Deleted session: {session_id}")


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.argument('session_id')
@click.option('--json', 'as_json', is_flag=True, help='Print checkpoints as JSON')
def checkpoints(storage_root: str, session_id: str, as_json: bool):
    """List the checkpoints of a session, oldest first."""
    config = _config_or_exit(storage_root)
    store = _open_store(config)

    try:
        found = store.get_checkpoints(session_id)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([c.model_dump(mode="json", by_alias=True) for c in found], indent=2))
        return

    if not found:
        console.print("[yellow]No checkpoints.[/yellow]")
        return

    table = Table(title=f"Checkpoints of {session_id}")
    table.add_column("#", justify="right")
    table.add_column("Timestamp")
    table.add_column("Description")
    table.add_column("State keys")

    for index, checkpoint in enumerate(found, 1):
        table.add_row(
            str(index),
            checkpoint.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            checkpoint.description,
            ", ".join(sorted(checkpoint.state)) or "-",
        )

    console.print(table)


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.argument('description')
@click.option('--task-id', default='adhoc', help='Task id (used for session continuity)')
@click.option('--type', 'task_type', type=click.Choice([t.value for t in TaskType]),
              default=TaskType.IMPLEMENTATION.value, help='Task type')
@click.option('--file', 'files', multiple=True, help='Related file (repeatable)')
@click.option('--force', 'force_mode', type=click.Choice([m.value for m in ExecutionMode]),
              help='Explicit mode override')
@click.option('--json', 'as_json', is_flag=True, help='Print the explanation as JSON')
def route(
    storage_root: str,
    description: str,
    task_id: str,
    task_type: str,
    files: tuple[str, ...],
    force_mode: Optional[str],
    as_json: bool
):
    """Explain which execution mode a task would get.

    Does not create a session.

    \b
    Examples:
        taskledger route . "Fix typo in README"
        taskledger route . "Refactor the parser across modules" --file a.py --file b.py
        taskledger route . "Add caching" --task-id t-42 --force remote
    """
    config = _config_or_exit(storage_root)
    store = _open_store(config)

    task = TaskDescriptor(
        id=task_id,
        type=TaskType(task_type),
        description=description,
        related_files=list(files),
    )
    options = ExecutionOptions(force_mode=ExecutionMode(force_mode) if force_mode else None)
    selector = ModeSelector.from_config(config, ComplexityRecommender(threshold=config.remote_threshold))
    explanation = selector.explain(task, options, store.find_latest_decided_for_task(task_id))

    if as_json:
        click.echo(json.dumps(explanation, indent=2, default=str))
        return

    console.print(f"[bold]Mode:[/bold] {explanation['mode']} (source: {explanation['source']})")
    if explanation.get("score") is not None:
        console.print(f"[bold]Score:[/bold] {explanation['score']:.1f}/10")
    if explanation.get("confidence") is not None:
        console.print(f"[bold]Confidence:[/bold] {explanation['confidence']:.1f}%")
    for reason in explanation.get("reasons", []):
        console.print(f"  - {reason}")


@main.command()
@click.argument('storage_root', type=click.Path(exists=True, file_okay=False))
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
@click.option('--reload', is_flag=True, help='Enable auto-reload for development')
def dashboard(storage_root: str, host: str, port: int, reload: bool):
    """Serve a read-only HTTP API over the ledger.

    Example:
        taskledger dashboard ./my-project --port 8000
    """
    from .api import run_dashboard

    config = _config_or_exit(storage_root)
    console.print("[bold]Starting taskledger dashboard[/bold]")
    console.print(f"Ledger: {config.ledger_path}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_dashboard(config.storage_root, host=host, port=port, reload=reload)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dashboard stopped[/yellow]")


if __name__ == '__main__':
    main()
