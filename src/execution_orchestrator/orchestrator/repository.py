"""Execution registry: persistent source of truth for executions and attempts."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from execution_orchestrator.orchestrator.models import (
    AttemptOutcome,
    AttemptStart,
    AttemptUpdate,
    DeadLetterView,
    DeadLetterWrite,
    ExecutionAttemptView,
    ExecutionCreate,
    ExecutionDetails,
    ExecutionEventView,
    ExecutionStatus,
    ExecutionView,
    FailureKind,
    LastError,
)
from execution_orchestrator.storage.alembic_runner import upgrade_head
from execution_orchestrator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from execution_orchestrator.storage.sqlmodel_models import (
    DailyResourceUsage,
    DeadLetter,
    Execution,
    ExecutionAttempt,
    ExecutionEvent,
    OrchestratorFlag,
)

logger = logging.getLogger(__name__)


class ExecutionRegistry:
    """Execution persistence facade backed by SQLModel + SQLite.

    Status writes go through :meth:`compare_and_set`, which only succeeds
    when the stored ``(status, attempt_count)`` still matches what the
    caller observed. The state machine relies on this to make every
    transition happen at most once, even across processes.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: ExecutionCreate, *, now: datetime | None = None) -> ExecutionView:
        """Create an execution in IDLE state."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = self._add_execution(session=session, payload=payload, now=now)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def get(self, execution_id: str) -> ExecutionView | None:
        """Return one execution or None."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Execution).where(Execution.execution_id == execution_id),
            ).one_or_none()
        if row is None:
            return None
        return _to_execution_view(row)

    def compare_and_set(  # noqa: PLR0913
        self,
        *,
        execution_id: str,
        expected_status: ExecutionStatus,
        expected_attempt: int | None,
        status_to: ExecutionStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object] | None = None,
        attempt_start: AttemptStart | None = None,
        attempt_update: AttemptUpdate | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Apply one status transition if the row still matches expectations.

        The attempt row insert/update and the audit event are written in the
        same transaction as the status change.
        """

        now = now or utc_now()
        conditions = [
            col(Execution.execution_id) == execution_id,
            col(Execution.status) == expected_status.value,
        ]
        if expected_attempt is not None:
            conditions.append(col(Execution.attempt_count) == expected_attempt)

        db_values = {key: _db_value(value) for key, value in values.items()}
        db_values["status"] = status_to.value
        db_values["updated_at"] = to_db_datetime(now)

        with Session(self.engine) as session:
            result = session.exec(sa_update(Execution).where(*conditions).values(**db_values))
            if result.rowcount != 1:
                session.rollback()
                return False
            if attempt_start is not None:
                session.add(
                    ExecutionAttempt(
                        execution_id=execution_id,
                        attempt_no=attempt_start.attempt_no,
                        workflow_type=attempt_start.workflow_type,
                        outcome=AttemptOutcome.IN_FLIGHT.value,
                        dispatched_at=to_db_datetime(attempt_start.dispatched_at),
                        deadline_at=to_db_datetime(attempt_start.deadline_at),
                        estimated_cost_usd=attempt_start.estimated_cost_usd,
                    ),
                )
            if attempt_update is not None:
                self._apply_attempt_update(
                    session=session,
                    execution_id=execution_id,
                    update=attempt_update,
                )
            self._add_event(
                session=session,
                execution_id=execution_id,
                event_type=event_type,
                status_from=expected_status,
                status_to=status_to,
                details=details or {},
                now=now,
            )
            session.commit()
            return True

    def add_event(
        self,
        *,
        execution_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Append an audit event without changing status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                execution_id=execution_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details or {},
                now=now or utc_now(),
            )
            session.commit()

    def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[ExecutionView]:
        """List recent executions, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Execution).order_by(col(Execution.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Execution.status == status.value)
            rows = session.exec(statement).all()
        return [_to_execution_view(row) for row in rows]

    def list_by_status(self, statuses: Iterable[ExecutionStatus]) -> list[ExecutionView]:
        """List all executions currently in any of the given statuses."""

        values = [status.value for status in statuses]
        with Session(self.engine) as session:
            rows = session.exec(
                select(Execution)
                .where(col(Execution.status).in_(values))
                .order_by(col(Execution.created_at).asc()),
            ).all()
        return [_to_execution_view(row) for row in rows]

    def list_ready(self, *, now: datetime) -> list[ExecutionView]:
        """List IDLE executions that are due and still have attempts left."""

        with Session(self.engine) as session:
            rows = session.exec(self._ready_statement(now=now)).all()
        return [_to_execution_view(row) for row in rows]

    def count_ready(self, *, now: datetime) -> int:
        """Count IDLE executions that are due and still have attempts left."""

        with Session(self.engine) as session:
            subquery = self._ready_statement(now=now).subquery()
            return int(session.exec(select(func.count()).select_from(subquery)).one())

    def list_expired(self, *, now: datetime) -> list[ExecutionView]:
        """List in-flight executions whose deadline has passed."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Execution)
                .where(
                    col(Execution.status).in_(
                        [ExecutionStatus.DISPATCHING.value, ExecutionStatus.MONITORING.value],
                    ),
                    col(Execution.deadline_at).is_not(None),
                    col(Execution.deadline_at) <= to_db_datetime(now),
                )
                .order_by(col(Execution.deadline_at).asc()),
            ).all()
        return [_to_execution_view(row) for row in rows]

    def list_retry_due(self, *, now: datetime) -> list[ExecutionView]:
        """List ERROR_RECOVERY executions whose retry time has come."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Execution)
                .where(
                    Execution.status == ExecutionStatus.ERROR_RECOVERY.value,
                    col(Execution.next_retry_at).is_not(None),
                    col(Execution.next_retry_at) <= to_db_datetime(now),
                )
                .order_by(col(Execution.next_retry_at).asc()),
            ).all()
        return [_to_execution_view(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        """Return execution counts per status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Execution.status, func.count()).group_by(Execution.status),
            ).all()
        return {str(status): int(count) for status, count in rows}

    def get_details(self, execution_id: str) -> ExecutionDetails | None:
        """Return execution details with event stream and attempts."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Execution).where(Execution.execution_id == execution_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(ExecutionEvent)
                .where(ExecutionEvent.execution_id == execution_id)
                .order_by(col(ExecutionEvent.created_at).asc(), col(ExecutionEvent.id).asc()),
            ).all()
            execution = _to_execution_view(row)

        return ExecutionDetails(
            execution=execution,
            events=[_to_event_view(event) for event in event_rows],
            attempts=self.list_attempts(execution_id=execution_id),
        )

    def list_attempts(self, *, execution_id: str) -> list[ExecutionAttemptView]:
        """Return attempt history for one execution, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionAttempt)
                .where(ExecutionAttempt.execution_id == execution_id)
                .order_by(col(ExecutionAttempt.attempt_no).asc()),
            ).all()
        return [_to_attempt_view(row) for row in rows]

    def list_attempts_finished_since(self, *, since: datetime) -> list[ExecutionAttemptView]:
        """Return attempts that reached an outcome inside the window."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionAttempt).where(
                    col(ExecutionAttempt.finished_at).is_not(None),
                    col(ExecutionAttempt.finished_at) >= to_db_datetime(since),
                ),
            ).all()
        return [_to_attempt_view(row) for row in rows]

    def insert_dead_letter(
        self,
        entry: DeadLetterWrite,
        *,
        now: datetime | None = None,
    ) -> DeadLetterView | None:
        """Persist a dead-letter entry; returns None if one already exists."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = DeadLetter(
                entry_id=str(uuid4()),
                execution_id=entry.execution_id,
                workflow_type=entry.workflow_type,
                reason=entry.reason,
                attempt_count=entry.attempt_count,
                snapshot_json=json.dumps(entry.snapshot, ensure_ascii=False, sort_keys=True),
                attempts_json=json.dumps(entry.attempts, ensure_ascii=False, sort_keys=True),
                created_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                execution_id=entry.execution_id,
                event_type="dead_lettered",
                status_from=None,
                status_to=None,
                details={"entry_id": row.entry_id, "reason": entry.reason},
                now=now,
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_dead_letter_view(row)

    def get_dead_letter(self, entry_id: str) -> DeadLetterView | None:
        """Return one dead-letter entry."""

        with Session(self.engine) as session:
            row = session.exec(
                select(DeadLetter).where(DeadLetter.entry_id == entry_id),
            ).one_or_none()
        if row is None:
            return None
        return _to_dead_letter_view(row)

    def get_dead_letter_for_execution(self, execution_id: str) -> DeadLetterView | None:
        """Return the dead-letter entry of an execution, if any."""

        with Session(self.engine) as session:
            row = session.exec(
                select(DeadLetter).where(DeadLetter.execution_id == execution_id),
            ).one_or_none()
        if row is None:
            return None
        return _to_dead_letter_view(row)

    def list_dead_letters(
        self,
        *,
        pending_only: bool = False,
        workflow_type: str | None = None,
        limit: int = 50,
    ) -> list[DeadLetterView]:
        """List dead-letter entries, newest first."""

        with Session(self.engine) as session:
            statement = select(DeadLetter).order_by(col(DeadLetter.created_at).desc()).limit(limit)
            if pending_only:
                statement = statement.where(col(DeadLetter.requeued_at).is_(None))
            if workflow_type is not None:
                statement = statement.where(DeadLetter.workflow_type == workflow_type)
            rows = session.exec(statement).all()
        return [_to_dead_letter_view(row) for row in rows]

    def requeue_dead_letter(
        self,
        *,
        entry_id: str,
        payload: ExecutionCreate,
        now: datetime | None = None,
    ) -> ExecutionView | None:
        """Mark a dead-letter entry requeued and enqueue its replacement in one transaction.

        Returns None when the entry is missing or was already requeued.
        """

        now = now or utc_now()
        execution_id = payload.execution_id or str(uuid4())
        payload = replace(payload, execution_id=execution_id)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DeadLetter)
                .where(
                    col(DeadLetter.entry_id) == entry_id,
                    col(DeadLetter.requeued_at).is_(None),
                )
                .values(
                    requeued_at=to_db_datetime(now),
                    requeued_execution_id=execution_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = self._add_execution(session=session, payload=payload, now=now)
            if payload.parent_id is not None:
                self._add_event(
                    session=session,
                    execution_id=payload.parent_id,
                    event_type="dead_letter_requeued",
                    status_from=None,
                    status_to=None,
                    details={"entry_id": entry_id, "requeued_execution_id": execution_id},
                    now=now,
                )
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def load_daily_usage(self, *, usage_date: date, kind: str) -> float:
        """Return persisted usage for one resource kind on one UTC day."""

        with Session(self.engine) as session:
            row = session.exec(
                select(DailyResourceUsage).where(
                    DailyResourceUsage.usage_date == usage_date.isoformat(),
                    DailyResourceUsage.kind == kind,
                ),
            ).one_or_none()
        if row is None:
            return 0.0
        return float(row.used)

    def add_daily_usage(
        self,
        *,
        usage_date: date,
        kind: str,
        delta: float,
        now: datetime | None = None,
    ) -> float:
        """Atomically add ``delta`` to one resource kind's usage and return the new total.

        Usage never drops below zero. Concurrent writers from other processes
        are serialized by SQLite, so increments are never lost.
        """

        now = now or utc_now()
        key = (
            col(DailyResourceUsage.usage_date) == usage_date.isoformat(),
            col(DailyResourceUsage.kind) == kind,
        )
        for _ in range(2):
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(DailyResourceUsage)
                    .where(*key)
                    .values(
                        used=func.max(0.0, col(DailyResourceUsage.used) + delta),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.add(
                        DailyResourceUsage(
                            usage_date=usage_date.isoformat(),
                            kind=kind,
                            used=max(0.0, delta),
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    try:
                        session.flush()
                    except IntegrityError:
                        # Another writer inserted the row first; retry as an update.
                        session.rollback()
                        continue
                used = session.exec(select(DailyResourceUsage.used).where(*key)).one()
                session.commit()
                return float(used)
        raise RuntimeError(f"Could not record daily usage for {kind!r} on {usage_date}.")

    def get_flag(self, name: str) -> tuple[str | None, datetime] | None:
        """Return (reason, set_at) for a system flag, or None when clear."""

        with Session(self.engine) as session:
            row = session.exec(
                select(OrchestratorFlag).where(OrchestratorFlag.name == name),
            ).one_or_none()
        if row is None:
            return None
        return row.reason, to_utc_aware(row.set_at)

    def set_flag(self, name: str, *, reason: str, now: datetime | None = None) -> bool:
        """Set a system flag; returns False when it was already set."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(OrchestratorFlag).where(OrchestratorFlag.name == name),
            ).one_or_none()
            if row is not None:
                return False
            session.add(OrchestratorFlag(name=name, reason=reason, set_at=to_db_datetime(now)))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def clear_flag(self, name: str) -> bool:
        """Clear a system flag; returns False when it was not set."""

        with Session(self.engine) as session:
            row = session.exec(
                select(OrchestratorFlag).where(OrchestratorFlag.name == name),
            ).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def _ready_statement(self, *, now: datetime):
        db_now = to_db_datetime(now)
        return select(Execution).where(
            Execution.status == ExecutionStatus.IDLE.value,
            col(Execution.attempt_count) < col(Execution.max_attempts),
            or_(col(Execution.next_retry_at).is_(None), col(Execution.next_retry_at) <= db_now),
            or_(col(Execution.scheduled_at).is_(None), col(Execution.scheduled_at) <= db_now),
        )

    def _add_execution(
        self,
        *,
        session: Session,
        payload: ExecutionCreate,
        now: datetime,
    ) -> Execution:
        execution_id = payload.execution_id or str(uuid4())
        row = Execution(
            execution_id=execution_id,
            workflow_type=payload.workflow_type,
            priority=payload.priority,
            status=ExecutionStatus.IDLE.value,
            context_json=json.dumps(payload.context, ensure_ascii=False, sort_keys=True),
            attempt_count=0,
            max_attempts=payload.max_attempts,
            parent_id=payload.parent_id,
            created_at=to_db_datetime(now),
            scheduled_at=(
                to_db_datetime(payload.scheduled_at) if payload.scheduled_at is not None else None
            ),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        self._add_event(
            session=session,
            execution_id=execution_id,
            event_type="enqueued",
            status_from=None,
            status_to=ExecutionStatus.IDLE,
            details={
                "workflow_type": payload.workflow_type,
                "priority": payload.priority,
                "max_attempts": payload.max_attempts,
                "parent_id": payload.parent_id,
            },
            now=now,
        )
        return row

    def _apply_attempt_update(
        self,
        *,
        session: Session,
        execution_id: str,
        update: AttemptUpdate,
    ) -> None:
        row = session.exec(
            select(ExecutionAttempt).where(
                ExecutionAttempt.execution_id == execution_id,
                ExecutionAttempt.attempt_no == update.attempt_no,
            ),
        ).one_or_none()
        if row is None:
            logger.warning(
                "Attempt row missing for execution_id=%s attempt=%s",
                execution_id,
                update.attempt_no,
            )
            return
        if update.outcome is not None:
            row.outcome = update.outcome.value
        if update.acknowledged_at is not None:
            row.acknowledged_at = to_db_datetime(update.acknowledged_at)
        if update.finished_at is not None:
            row.finished_at = to_db_datetime(update.finished_at)
        if update.error_kind is not None:
            row.error_kind = update.error_kind.value
        if update.error_message is not None:
            row.error_message = update.error_message
        if update.metrics is not None:
            row.metrics_json = json.dumps(update.metrics, ensure_ascii=False, sort_keys=True)
        if update.actual_cost_usd is not None:
            row.actual_cost_usd = update.actual_cost_usd
        session.add(row)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        execution_id: str,
        event_type: str,
        status_from: ExecutionStatus | None,
        status_to: ExecutionStatus | None,
        details: dict[str, object],
        now: datetime,
    ) -> None:
        session.add(
            ExecutionEvent(
                execution_id=execution_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(now),
            ),
        )


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_datetime(value)
    if isinstance(value, FailureKind):
        return value.value
    return value


def _optional_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_aware(value)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {}


def _to_execution_view(row: Execution) -> ExecutionView:
    last_error = None
    if row.last_error_kind is not None:
        last_error = LastError(
            kind=FailureKind(row.last_error_kind),
            message=row.last_error_message or "",
            at=to_utc_aware(row.last_error_at or row.updated_at),
        )
    return ExecutionView(
        execution_id=row.execution_id,
        workflow_type=row.workflow_type,
        priority=row.priority,
        status=ExecutionStatus(row.status),
        context=_load_json_dict(row.context_json),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        parent_id=row.parent_id,
        created_at=to_utc_aware(row.created_at),
        scheduled_at=_optional_aware(row.scheduled_at),
        dispatched_at=_optional_aware(row.dispatched_at),
        deadline_at=_optional_aware(row.deadline_at),
        completed_at=_optional_aware(row.completed_at),
        next_retry_at=_optional_aware(row.next_retry_at),
        last_error=last_error,
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_event_view(row: ExecutionEvent) -> ExecutionEventView:
    return ExecutionEventView(
        event_id=row.id or 0,
        execution_id=row.execution_id,
        event_type=row.event_type,
        status_from=ExecutionStatus(row.status_from) if row.status_from is not None else None,
        status_to=ExecutionStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware(row.created_at),
        details=_load_json_dict(row.details_json),
    )


def _to_attempt_view(row: ExecutionAttempt) -> ExecutionAttemptView:
    return ExecutionAttemptView(
        attempt_id=row.attempt_id or 0,
        execution_id=row.execution_id,
        attempt_no=row.attempt_no,
        workflow_type=row.workflow_type,
        outcome=AttemptOutcome(row.outcome),
        dispatched_at=to_utc_aware(row.dispatched_at),
        deadline_at=to_utc_aware(row.deadline_at),
        acknowledged_at=_optional_aware(row.acknowledged_at),
        finished_at=_optional_aware(row.finished_at),
        error_kind=FailureKind(row.error_kind) if row.error_kind is not None else None,
        error_message=row.error_message,
        metrics=_load_json_dict(row.metrics_json),
        estimated_cost_usd=row.estimated_cost_usd,
        actual_cost_usd=row.actual_cost_usd,
    )


def _to_dead_letter_view(row: DeadLetter) -> DeadLetterView:
    attempts = json.loads(row.attempts_json) if row.attempts_json else []
    return DeadLetterView(
        entry_id=row.entry_id,
        execution_id=row.execution_id,
        workflow_type=row.workflow_type,
        reason=row.reason,
        attempt_count=row.attempt_count,
        snapshot=_load_json_dict(row.snapshot_json),
        attempts=attempts if isinstance(attempts, list) else [],
        created_at=to_utc_aware(row.created_at),
        requeued_at=_optional_aware(row.requeued_at),
        requeued_execution_id=row.requeued_execution_id,
    )
