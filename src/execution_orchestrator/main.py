"""CLI entrypoint for the execution orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from execution_orchestrator import __version__
from execution_orchestrator.orchestrator.controllers import (
    DbCommand,
    DeadLettersCommand,
    EnqueueCommand,
    InspectExecutionCommand,
    ListExecutionsCommand,
    OrchestratorCliController,
    RequeueCommand,
    RunCommand,
    ServeCommand,
    StatsCommand,
    TickCommand,
)
from execution_orchestrator.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
WORKFLOW_STATUSES = (
    "IDLE",
    "ANALYZING",
    "DISPATCHING",
    "MONITORING",
    "COMPLETED",
    "ERROR_RECOVERY",
    "FAILED",
)

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to EXEC_ORCH_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="exec-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root log level.",
)
def exec_orchestrator(log_level: str) -> None:
    """Execution orchestrator CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@exec_orchestrator.command("enqueue")
@db_path_option
@click.option("--workflow-type", required=True, help="Routing key, e.g. content-pipeline.")
@click.option(
    "--priority",
    type=click.IntRange(min=1, max=4),
    default=2,
    show_default=True,
    help="1 low, 2 normal, 3 high, 4 urgent.",
)
@click.option("--context", "context_json", default="{}", help="JSON object passed to the worker.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Override EXEC_ORCH_MAX_ATTEMPTS for this execution.",
)
def enqueue(
    db_path: Path | None,
    workflow_type: str,
    priority: int,
    context_json: str,
    max_attempts: int | None,
) -> None:
    """Enqueue one execution in IDLE state."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.enqueue(
            EnqueueCommand(
                db_path=db_path,
                workflow_type=workflow_type,
                priority=priority,
                context_json=context_json,
                max_attempts=max_attempts,
            ),
        ),
    )


@exec_orchestrator.command("tick")
@db_path_option
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0),
    default=30.0,
    show_default=True,
    help="How long to wait for dispatch calls before exiting.",
)
def tick(db_path: Path | None, wait_seconds: float) -> None:
    """Run a single scheduler tick."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.tick(
            TickCommand(db_path=db_path, wait_seconds=wait_seconds),
        ),
    )


@exec_orchestrator.command("run")
@db_path_option
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until SIGINT/SIGTERM).",
)
@click.option(
    "--with-api/--without-api",
    default=True,
    show_default=True,
    help="Serve the callback receiver alongside the scheduler.",
)
def run(db_path: Path | None, max_ticks: int | None, with_api: bool) -> None:
    """Run the scheduler loop on its configured tick interval."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.run(
            RunCommand(db_path=db_path, max_ticks=max_ticks, with_api=with_api),
        ),
    )


@exec_orchestrator.command("serve")
@db_path_option
@click.option("--host", default=None, help="Bind host (defaults to EXEC_ORCH_API_HOST).")
@click.option("--port", type=int, default=None, help="Bind port (defaults to EXEC_ORCH_API_PORT).")
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the callback receiver and operator endpoints without ticking."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.serve(
            ServeCommand(db_path=db_path, host=host, port=port),
        ),
    )


@exec_orchestrator.command("tasks")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(WORKFLOW_STATUSES, case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent executions."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.list_executions(
            ListExecutionsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@exec_orchestrator.command("inspect")
@db_path_option
@click.argument("execution_id")
def inspect(db_path: Path | None, execution_id: str) -> None:
    """Show one execution with attempts and events."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.inspect(
            InspectExecutionCommand(db_path=db_path, execution_id=execution_id),
        ),
    )


@exec_orchestrator.command("dead-letters")
@db_path_option
@click.option("--pending-only", is_flag=True, help="Hide entries that were already requeued.")
@click.option("--workflow-type", default=None, help="Filter by workflow type.")
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def dead_letters(
    db_path: Path | None,
    pending_only: bool,
    workflow_type: str | None,
    limit: int,
) -> None:
    """List dead-letter entries."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.dead_letters(
            DeadLettersCommand(
                db_path=db_path,
                pending_only=pending_only,
                workflow_type=workflow_type,
                limit=limit,
            ),
        ),
    )


@exec_orchestrator.command("requeue")
@db_path_option
@click.argument("entry_id")
@click.option(
    "--priority",
    type=click.IntRange(min=1, max=4),
    default=None,
    help="Override the original priority.",
)
def requeue(db_path: Path | None, entry_id: str, priority: int | None) -> None:
    """Create a fresh execution from a dead-letter entry."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.requeue(
            RequeueCommand(db_path=db_path, entry_id=entry_id, priority=priority),
        ),
    )


@exec_orchestrator.command("resources")
@db_path_option
def resources(db_path: Path | None) -> None:
    """Show resource budgets and the dispatch pause flag."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.resources(DbCommand(db_path=db_path)))


@exec_orchestrator.command("resume")
@db_path_option
def resume(db_path: Path | None) -> None:
    """Clear a dispatch pause after a fatal system error."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.resume(DbCommand(db_path=db_path)))


@exec_orchestrator.command("stats")
@db_path_option
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for attempt metrics.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show execution, attempt and cost metrics."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (OrchestratorError, RuntimeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    exec_orchestrator()
