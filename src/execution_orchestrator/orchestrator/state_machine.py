"""State machine controller: the only writer of execution status."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from execution_orchestrator.config import SchedulerSettings
from execution_orchestrator.orchestrator.dead_letter import (
    REASON_RETRIES_EXHAUSTED,
    REASON_VALIDATION,
    DeadLetterHandler,
)
from execution_orchestrator.orchestrator.dispatcher import DispatchResult
from execution_orchestrator.orchestrator.errors import (
    ExecutionTimeoutError,
    FatalSystemError,
    OrchestratorError,
    TransientDispatchError,
    ValidationError,
)
from execution_orchestrator.orchestrator.governor import Admission, ResourceGovernor, ResourceKind
from execution_orchestrator.orchestrator.models import (
    IN_FLIGHT_STATUSES,
    AttemptOutcome,
    AttemptStart,
    AttemptUpdate,
    DispatchOutcome,
    ExecutionStatus,
    ExecutionView,
)
from execution_orchestrator.orchestrator.pricing import reported_cost_usd
from execution_orchestrator.orchestrator.repository import ExecutionRegistry
from execution_orchestrator.orchestrator.routing import RoutingTable
from execution_orchestrator.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)

PAUSE_FLAG = "dispatch_paused"

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.IDLE: frozenset({ExecutionStatus.ANALYZING}),
    ExecutionStatus.ANALYZING: frozenset({ExecutionStatus.DISPATCHING, ExecutionStatus.IDLE}),
    ExecutionStatus.DISPATCHING: frozenset(
        {ExecutionStatus.MONITORING, ExecutionStatus.ERROR_RECOVERY},
    ),
    ExecutionStatus.MONITORING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.ERROR_RECOVERY},
    ),
    ExecutionStatus.ERROR_RECOVERY: frozenset({ExecutionStatus.IDLE, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class AdmissionResult:
    """Outcome of moving one ANALYZING execution towards dispatch."""

    admitted: bool
    execution: ExecutionView | None
    reason: str | None = None
    admission: Admission | None = None

    @property
    def degrade(self) -> bool:
        return self.admission is not None and self.admission.degrade


class _KeyedLocks:
    """Per-key reentrant locks that are dropped once nobody holds them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.RLock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.RLock(), 0))
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


class StateMachineController:
    """Apply execution transitions with per-execution serialization.

    Every transition runs under an in-process lock for the execution and
    a compare-and-set on ``(status, attempt_count)`` in the registry, so a
    transition tagged with an attempt that is no longer current is a no-op.
    Ceiling resources are released exactly once, by whichever transition
    wins the compare-and-set out of DISPATCHING or MONITORING. Acquire and
    release are paired with their compare-and-set under one ceiling lock, so
    governor usage and registry rows agree whenever :meth:`sync_ceilings` runs.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: ExecutionRegistry,
        governor: ResourceGovernor,
        routing: RoutingTable,
        dead_letters: DeadLetterHandler,
        settings: SchedulerSettings,
        clock: Clock = utc_now,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._registry = registry
        self._governor = governor
        self._routing = routing
        self._dead_letters = dead_letters
        self._settings = settings
        self._clock = clock
        self._random = random_fn
        self._locks = _KeyedLocks()
        self._ceilings = threading.RLock()

    def is_paused(self) -> bool:
        return self._registry.get_flag(PAUSE_FLAG) is not None

    def pause(self, reason: str, *, execution_id: str | None = None) -> bool:
        """Block new dispatches system-wide until resumed."""

        now = self._clock()
        newly_set = self._registry.set_flag(PAUSE_FLAG, reason=reason, now=now)
        if newly_set:
            logger.critical("Dispatch paused: %s", reason)
        if execution_id is not None:
            self._registry.add_event(
                execution_id=execution_id,
                event_type="dispatch_paused",
                details={"reason": reason, "newly_set": newly_set},
                now=now,
            )
        return newly_set

    def resume(self, *, source: str = "operator") -> bool:
        """Clear the dispatch pause flag."""

        cleared = self._registry.clear_flag(PAUSE_FLAG)
        if cleared:
            logger.warning("Dispatch resumed by %s", source)
        return cleared

    def sync_ceilings(self) -> int:
        """Rebuild ceiling usage from the executions in flight in the registry.

        Slots released by another process sharing the registry only show up
        here. Returns the number of in-flight executions.
        """

        with self._ceilings:
            in_flight = self._registry.list_by_status(IN_FLIGHT_STATUSES)
            return self._governor.sync_in_flight(
                self._routing.requirements_for(execution.workflow_type) for execution in in_flight
            )

    def retry_delay(self, attempt_count: int) -> timedelta:
        """Backoff before the next attempt: base, 2x base, 4x base, ..."""

        seconds = float(self._settings.retry_base_seconds * 2 ** max(0, attempt_count - 1))
        if self._settings.retry_jitter:
            seconds *= 0.5 + self._random()
        return timedelta(seconds=min(seconds, float(self._settings.retry_max_seconds)))

    def select(self, execution: ExecutionView) -> ExecutionView | None:
        """IDLE -> ANALYZING for an execution picked by the queue."""

        with self._locks.hold(execution.execution_id):
            applied = self._transition(
                execution,
                ExecutionStatus.ANALYZING,
                values={},
                event_type="selected",
            )
            if not applied:
                return None
            return self._registry.get(execution.execution_id)

    def admit(self, execution: ExecutionView) -> AdmissionResult:
        """ANALYZING -> DISPATCHING when every budget admits, else back to IDLE."""

        with self._locks.hold(execution.execution_id):
            if self.is_paused():
                self._return_to_idle(execution, reason=PAUSE_FLAG)
                return AdmissionResult(admitted=False, execution=None, reason=PAUSE_FLAG)

            requirements = self._routing.requirements_for(execution.workflow_type)
            with self._ceilings:
                admission = self._governor.try_acquire(requirements)
                if not admission.admitted:
                    self._return_to_idle(execution, reason=admission.reason or "denied")
                    return AdmissionResult(
                        admitted=False,
                        execution=None,
                        reason=admission.reason,
                        admission=admission,
                    )

                now = self._clock()
                attempt_no = execution.attempt_count + 1
                deadline_at = now + timedelta(seconds=self._settings.execution_timeout_seconds)
                estimated_cost = requirements.get(ResourceKind.DAILY_COST_USD, 0.0)
                applied = self._transition(
                    execution,
                    ExecutionStatus.DISPATCHING,
                    values={
                        "attempt_count": attempt_no,
                        "dispatched_at": now,
                        "deadline_at": deadline_at,
                        "next_retry_at": None,
                    },
                    event_type="admitted",
                    details={"attempt": attempt_no, "deadline_at": deadline_at.isoformat()},
                    attempt_start=AttemptStart(
                        attempt_no=attempt_no,
                        workflow_type=execution.workflow_type,
                        dispatched_at=now,
                        deadline_at=deadline_at,
                        estimated_cost_usd=estimated_cost,
                    ),
                    now=now,
                )
                if not applied:
                    self._governor.release_all(requirements)
                    if estimated_cost:
                        self._governor.adjust(ResourceKind.DAILY_COST_USD, -estimated_cost)
                    return AdmissionResult(admitted=False, execution=None, reason="stale")
            return AdmissionResult(
                admitted=True,
                execution=self._registry.get(execution.execution_id),
                admission=admission,
            )

    def on_dispatch_result(self, execution: ExecutionView, result: DispatchResult) -> bool:
        """Apply the outcome of the outbound dispatch call."""

        if result.outcome is DispatchOutcome.ACKNOWLEDGED:
            return self.acknowledge(execution.execution_id, execution.attempt_count)
        if result.outcome is DispatchOutcome.REJECTED:
            return self.fail(
                execution.execution_id,
                execution.attempt_count,
                ValidationError(result.error or "Worker rejected the dispatch"),
                outcome=AttemptOutcome.REJECTED,
            )
        return self.fail(
            execution.execution_id,
            execution.attempt_count,
            TransientDispatchError(result.error or "Dispatch failed"),
            outcome=AttemptOutcome.DISPATCH_FAILED,
        )

    def acknowledge(self, execution_id: str, attempt: int) -> bool:
        """DISPATCHING -> MONITORING."""

        with self._locks.hold(execution_id):
            view = self._current(execution_id, attempt, {ExecutionStatus.DISPATCHING})
            if view is None:
                return False
            now = self._clock()
            return self._transition(
                view,
                ExecutionStatus.MONITORING,
                values={},
                event_type="acknowledged",
                details={"attempt": attempt},
                attempt_update=AttemptUpdate(attempt_no=attempt, acknowledged_at=now),
                now=now,
            )

    def complete(self, execution_id: str, attempt: int, *, metrics: dict[str, Any]) -> bool:
        """MONITORING -> COMPLETED, or a timeout when the deadline already passed."""

        with self._locks.hold(execution_id):
            view = self._current(execution_id, attempt, {ExecutionStatus.MONITORING})
            if view is None:
                return False
            now = self._clock()
            if view.deadline_at is not None and now >= view.deadline_at:
                return self._fail_locked(
                    view,
                    ExecutionTimeoutError(
                        f"Success reported after deadline {view.deadline_at.isoformat()}",
                    ),
                    outcome=AttemptOutcome.TIMED_OUT,
                    metrics=metrics,
                )

            actual_cost = reported_cost_usd(metrics)
            with self._ceilings:
                applied = self._transition(
                    view,
                    ExecutionStatus.COMPLETED,
                    values={"completed_at": now},
                    event_type="completed",
                    details={"attempt": attempt},
                    attempt_update=AttemptUpdate(
                        attempt_no=attempt,
                        outcome=AttemptOutcome.SUCCEEDED,
                        finished_at=now,
                        metrics=metrics,
                        actual_cost_usd=actual_cost,
                    ),
                    now=now,
                )
                if applied:
                    self._release(view)
            if applied:
                self._reconcile_cost(view, actual_cost)
            return applied

    def fail(
        self,
        execution_id: str,
        attempt: int,
        error: OrchestratorError,
        *,
        outcome: AttemptOutcome = AttemptOutcome.FAILED,
        metrics: dict[str, Any] | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move an in-flight attempt to ERROR_RECOVERY (and on to FAILED if it gave up).

        ``details`` are merged into the ``attempt_failed`` event.
        """

        with self._locks.hold(execution_id):
            view = self._current(execution_id, attempt, IN_FLIGHT_STATUSES)
            if view is None:
                return False
            return self._fail_locked(
                view,
                error,
                outcome=outcome,
                metrics=metrics,
                details=details,
            )

    def expire(self, execution: ExecutionView) -> bool:
        """Timeout sweep entry: fail an in-flight attempt whose deadline passed."""

        with self._locks.hold(execution.execution_id):
            view = self._current(
                execution.execution_id,
                execution.attempt_count,
                IN_FLIGHT_STATUSES,
            )
            if view is None or view.deadline_at is None:
                return False
            if view.deadline_at > self._clock():
                return False
            return self._fail_locked(
                view,
                ExecutionTimeoutError(
                    f"No callback before deadline {view.deadline_at.isoformat()}",
                ),
                outcome=AttemptOutcome.TIMED_OUT,
            )

    def retry(self, execution: ExecutionView) -> bool:
        """Retry sweep entry: ERROR_RECOVERY -> IDLE once the backoff elapsed."""

        with self._locks.hold(execution.execution_id):
            view = self._current(
                execution.execution_id,
                execution.attempt_count,
                {ExecutionStatus.ERROR_RECOVERY},
            )
            if view is None:
                return False
            now = self._clock()
            if view.next_retry_at is not None and view.next_retry_at > now:
                return False
            if view.retries_exhausted:
                return self._fail_permanently_locked(view, reason=REASON_RETRIES_EXHAUSTED)
            return self._transition(
                view,
                ExecutionStatus.IDLE,
                values={"next_retry_at": None},
                event_type="retry_scheduled",
                details={"next_attempt": view.attempt_count + 1},
                now=now,
            )

    def reset_orphan(self, execution: ExecutionView) -> bool:
        """ANALYZING -> IDLE for a row left behind by a crashed tick."""

        with self._locks.hold(execution.execution_id):
            return self._transition(
                execution,
                ExecutionStatus.IDLE,
                values={},
                event_type="recovered",
                details={"reason": "orphaned_analyzing"},
            )

    def _fail_locked(
        self,
        view: ExecutionView,
        error: OrchestratorError,
        *,
        outcome: AttemptOutcome,
        metrics: dict[str, Any] | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        now = self._clock()
        retry_left = error.retryable and view.attempt_count < view.max_attempts
        next_retry_at = now + self.retry_delay(view.attempt_count) if retry_left else None
        actual_cost = reported_cost_usd(metrics) if metrics else None
        event_details: dict[str, object] = dict(details or {})
        event_details.update(
            {
                "attempt": view.attempt_count,
                "kind": error.kind.value,
                "message": error.message,
                "retryable": error.retryable,
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
            },
        )
        with self._ceilings:
            applied = self._transition(
                view,
                ExecutionStatus.ERROR_RECOVERY,
                values={
                    "last_error_kind": error.kind,
                    "last_error_message": error.message,
                    "last_error_at": now,
                    "next_retry_at": next_retry_at,
                },
                event_type="attempt_failed",
                details=event_details,
                attempt_update=AttemptUpdate(
                    attempt_no=view.attempt_count,
                    outcome=outcome,
                    finished_at=now,
                    error_kind=error.kind,
                    error_message=error.message,
                    metrics=metrics,
                    actual_cost_usd=actual_cost,
                ),
                now=now,
            )
            if not applied:
                return False
            self._release(view)

        self._reconcile_cost(view, actual_cost)
        logger.warning(
            "Execution attempt failed: execution_id=%s attempt=%d/%d kind=%s next_retry_at=%s",
            view.execution_id,
            view.attempt_count,
            view.max_attempts,
            error.kind.value,
            next_retry_at.isoformat() if next_retry_at else None,
        )
        if isinstance(error, FatalSystemError):
            self.pause(error.message, execution_id=view.execution_id)

        if retry_left:
            return True
        recovering = self._registry.get(view.execution_id)
        if recovering is None:
            return True
        reason = REASON_RETRIES_EXHAUSTED if error.retryable else REASON_VALIDATION
        self._fail_permanently_locked(recovering, reason=reason)
        return True

    def _fail_permanently_locked(self, view: ExecutionView, *, reason: str) -> bool:
        now = self._clock()
        applied = self._transition(
            view,
            ExecutionStatus.FAILED,
            values={"completed_at": now, "next_retry_at": None},
            event_type="failed",
            details={"reason": reason, "attempts": view.attempt_count},
            now=now,
        )
        if not applied:
            return False
        failed = self._registry.get(view.execution_id)
        if failed is not None:
            self._dead_letters.record(failed, reason=reason)
        return True

    def _return_to_idle(self, execution: ExecutionView, *, reason: str) -> None:
        self._transition(
            execution,
            ExecutionStatus.IDLE,
            values={},
            event_type="admission_denied",
            details={"reason": reason},
        )

    def _current(
        self,
        execution_id: str,
        attempt: int,
        statuses: frozenset[ExecutionStatus] | set[ExecutionStatus],
    ) -> ExecutionView | None:
        view = self._registry.get(execution_id)
        if view is None or view.attempt_count != attempt or view.status not in statuses:
            return None
        return view

    def _transition(  # noqa: PLR0913
        self,
        view: ExecutionView,
        status_to: ExecutionStatus,
        *,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object] | None = None,
        attempt_start: AttemptStart | None = None,
        attempt_update: AttemptUpdate | None = None,
        now: datetime | None = None,
    ) -> bool:
        if status_to not in ALLOWED_TRANSITIONS[view.status]:
            raise RuntimeError(
                f"Illegal transition {view.status.value} -> {status_to.value} "
                f"for execution {view.execution_id}",
            )
        return self._registry.compare_and_set(
            execution_id=view.execution_id,
            expected_status=view.status,
            expected_attempt=view.attempt_count,
            status_to=status_to,
            values=values,
            event_type=event_type,
            details=details,
            attempt_start=attempt_start,
            attempt_update=attempt_update,
            now=now or self._clock(),
        )

    def _release(self, view: ExecutionView) -> None:
        self._governor.release_all(self._routing.requirements_for(view.workflow_type))

    def _reconcile_cost(self, view: ExecutionView, actual_cost: float | None) -> None:
        if actual_cost is None:
            return
        estimated = 0.0
        for attempt in self._registry.list_attempts(execution_id=view.execution_id):
            if attempt.attempt_no == view.attempt_count:
                estimated = attempt.estimated_cost_usd or 0.0
                break
        delta = actual_cost - estimated
        if delta:
            self._governor.adjust(ResourceKind.DAILY_COST_USD, delta)
