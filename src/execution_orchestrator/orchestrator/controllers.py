"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import uvicorn

from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.api import create_app
from execution_orchestrator.orchestrator.metrics import (
    build_orchestrator_metrics,
    render_stats_lines,
)
from execution_orchestrator.orchestrator.models import ExecutionStatus
from execution_orchestrator.orchestrator.services import EnqueueExecution, OrchestratorRuntime
from execution_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

API_SHUTDOWN_TIMEOUT_SECONDS = 5.0


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for enqueue."""

    db_path: Path | None
    workflow_type: str
    priority: int
    context_json: str
    max_attempts: int | None


@dataclass(slots=True)
class TickCommand:
    """CLI input for a single scheduler tick."""

    db_path: Path | None
    wait_seconds: float


@dataclass(slots=True)
class RunCommand:
    """CLI input for the long-running scheduler."""

    db_path: Path | None
    max_ticks: int | None
    with_api: bool


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the HTTP surface only."""

    db_path: Path | None
    host: str | None
    port: int | None


@dataclass(slots=True)
class ListExecutionsCommand:
    """CLI input for execution listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectExecutionCommand:
    """CLI input for execution inspection."""

    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class DeadLettersCommand:
    """CLI input for dead-letter listing."""

    db_path: Path | None
    pending_only: bool
    workflow_type: str | None
    limit: int


@dataclass(slots=True)
class RequeueCommand:
    """CLI input for dead-letter requeue."""

    db_path: Path | None
    entry_id: str
    priority: int | None


@dataclass(slots=True)
class StatsCommand:
    """CLI input for operator stats."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


class OrchestratorCliController:
    """Coordinates scheduler, inspection and operator CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        context = json.loads(command.context_json) if command.context_json.strip() else {}
        if not isinstance(context, dict):
            raise ValueError("--context must be a JSON object.")
        with _runtime(settings) as runtime:
            execution = runtime.enqueue(
                EnqueueExecution(
                    workflow_type=command.workflow_type,
                    priority=command.priority,
                    context=context,
                    max_attempts=command.max_attempts,
                ),
            )
        return [
            "Execution enqueued: "
            f"id={execution.execution_id} workflow_type={execution.workflow_type} "
            f"priority={execution.priority} status={execution.status.value}",
        ]

    def tick(self, command: TickCommand) -> list[str]:
        """Run one tick, then wait for its dispatch calls."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _runtime(settings) as runtime:
            runtime.scheduler.recover()
            summary = runtime.scheduler.tick()
            runtime.scheduler.drain(timeout=command.wait_seconds)
        return [
            "Tick summary: "
            f"health={summary.health} paused={summary.paused} "
            f"timed_out={summary.timed_out} retried={summary.retried} "
            f"selected={summary.selected} dispatched={summary.dispatched} "
            f"denied={summary.denied} degraded={summary.degraded}",
        ]

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _runtime(settings) as runtime:
            server: uvicorn.Server | None = None
            thread: threading.Thread | None = None
            if command.with_api:
                server = uvicorn.Server(
                    uvicorn.Config(
                        create_app(runtime),
                        host=settings.api.host,
                        port=settings.api.port,
                        log_config=None,
                    ),
                )
                thread = threading.Thread(target=server.run, name="callback-api", daemon=True)
                thread.start()
                logger.info(
                    "Callback receiver listening on http://%s:%d",
                    settings.api.host,
                    settings.api.port,
                )
            try:
                summary = runtime.scheduler.run_loop(max_ticks=command.max_ticks)
            finally:
                if server is not None and thread is not None:
                    server.should_exit = True
                    thread.join(timeout=API_SHUTDOWN_TIMEOUT_SECONDS)

        return [
            "Scheduler summary: "
            f"ticks={summary.ticks} dispatched={summary.dispatched} "
            f"timed_out={summary.timed_out} retried={summary.retried} denied={summary.denied}",
        ]

    def serve(self, command: ServeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        host = command.host or settings.api.host
        port = command.port or settings.api.port
        with _runtime(settings) as runtime:
            uvicorn.run(create_app(runtime), host=host, port=port, log_config=None)
        return [f"HTTP server stopped: {host}:{port}"]

    def list_executions(self, command: ListExecutionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _runtime(settings) as runtime:
            executions = runtime.registry.list_executions(
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Executions: {len(executions)}"]
        for execution in executions:
            lines.append(
                f"  {execution.execution_id} type={execution.workflow_type} "
                f"status={execution.status.value} priority={execution.priority} "
                f"attempt={execution.attempt_count}/{execution.max_attempts} "
                f"created_at={execution.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: InspectExecutionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.registry.get_details(command.execution_id)
        if details is None:
            return [f"Execution not found: {command.execution_id}"]

        execution = details.execution
        last_error = execution.last_error
        lines = [
            f"Execution: {execution.execution_id}",
            f"Workflow type: {execution.workflow_type}",
            f"Status: {execution.status.value}",
            f"Priority: {execution.priority}",
            f"Attempt: {execution.attempt_count}/{execution.max_attempts}",
            f"Parent: {execution.parent_id or '-'}",
            f"Deadline: {_iso(execution.deadline_at)}",
            f"Next retry: {_iso(execution.next_retry_at)}",
            (
                f"Last error: {last_error.kind.value}: {last_error.message}"
                if last_error is not None
                else "Last error: -"
            ),
            f"Attempts: {len(details.attempts)}",
        ]
        for attempt in details.attempts:
            lines.append(
                f"  attempt={attempt.attempt_no} outcome={attempt.outcome.value} "
                f"dispatched_at={attempt.dispatched_at.isoformat()} "
                f"finished_at={_iso(attempt.finished_at)} "
                f"error_kind={attempt.error_kind.value if attempt.error_kind else '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            entries = runtime.dead_letters.list_entries(
                pending_only=command.pending_only,
                workflow_type=command.workflow_type,
                limit=command.limit,
            )

        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.entry_id} execution={entry.execution_id} "
                f"type={entry.workflow_type} reason={entry.reason} "
                f"attempts={entry.attempt_count} created_at={entry.created_at.isoformat()} "
                f"requeued_as={entry.requeued_execution_id or '-'}",
            )
        return lines

    def requeue(self, command: RequeueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            execution = runtime.dead_letters.requeue(command.entry_id, priority=command.priority)
        return [
            f"Dead letter requeued: entry={command.entry_id} "
            f"new_execution={execution.execution_id} parent={execution.parent_id}",
        ]

    def resources(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.state_machine.sync_ceilings()
            snapshot = runtime.governor.snapshot()
            paused = runtime.state_machine.is_paused()

        lines = [f"Dispatch paused: {'yes' if paused else 'no'}", "Resource budgets:"]
        for kind, budget in snapshot.items():
            lines.append(
                f"  {kind} used={float(budget['used']):g} limit={float(budget['limit']):g} "
                f"window={budget['window']}",
            )
        return lines

    def resume(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            cleared = runtime.state_machine.resume(source="operator")
        if cleared:
            return ["Dispatch resumed."]
        return ["Dispatch was not paused."]

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing execution metrics."""

        settings = Settings.from_env(db_path=command.db_path)
        now = utc_now()
        cutoff = now - timedelta(hours=max(1, command.hours))
        with _runtime(settings) as runtime:
            snapshot = build_orchestrator_metrics(
                status_counts=runtime.registry.count_by_status(),
                ready=runtime.registry.list_ready(now=now),
                window_attempts=runtime.registry.list_attempts_finished_since(since=cutoff),
                dead_letter_pending=len(
                    runtime.registry.list_dead_letters(pending_only=True, limit=10_000),
                ),
            )
        return render_stats_lines(snapshot=snapshot, hours=command.hours)


def _parse_status(value: str | None) -> ExecutionStatus | None:
    if value is None:
        return None
    return ExecutionStatus(value.strip().upper())


def _iso(value: object) -> str:
    isoformat = getattr(value, "isoformat", None)
    if isoformat is None:
        return "-"
    return str(isoformat())


@contextmanager
def _runtime(settings: Settings) -> Iterator[OrchestratorRuntime]:
    runtime = OrchestratorRuntime(settings)
    runtime.init_schema()
    try:
        yield runtime
    finally:
        runtime.close()
