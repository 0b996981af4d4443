"""Domain models for the execution registry and scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    """Execution state machine states."""

    IDLE = "IDLE"
    ANALYZING = "ANALYZING"
    DISPATCHING = "DISPATCHING"
    MONITORING = "MONITORING"
    COMPLETED = "COMPLETED"
    ERROR_RECOVERY = "ERROR_RECOVERY"
    FAILED = "FAILED"


IN_FLIGHT_STATUSES = frozenset({ExecutionStatus.DISPATCHING, ExecutionStatus.MONITORING})


class FailureKind(str, Enum):
    """Normalized failure kinds used by retry policy."""

    VALIDATION = "validation"
    TRANSIENT_DISPATCH = "transient_dispatch"
    WORKER = "worker"
    TIMEOUT = "timeout"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    FATAL_SYSTEM = "fatal_system"


class AttemptOutcome(str, Enum):
    """Per-attempt outcomes recorded in attempt history."""

    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    DISPATCH_FAILED = "dispatch_failed"
    REJECTED = "rejected"


class DispatchOutcome(str, Enum):
    """Result of one outbound dispatch call."""

    ACKNOWLEDGED = "acknowledged"
    TRANSIENT_ERROR = "transient_error"
    REJECTED = "rejected"


@dataclass(slots=True, frozen=True)
class LastError:
    """Structured failure record kept on the execution."""

    kind: FailureKind
    message: str
    at: datetime


@dataclass(slots=True)
class ExecutionCreate:
    """Input payload for enqueuing an execution."""

    workflow_type: str
    priority: int = 2
    context: dict[str, Any] = field(default_factory=dict)
    execution_id: str | None = None
    max_attempts: int = 3
    scheduled_at: datetime | None = None
    parent_id: str | None = None


@dataclass(slots=True)
class ExecutionView:
    """Readable execution view for scheduler, callbacks and CLI."""

    execution_id: str
    workflow_type: str
    priority: int
    status: ExecutionStatus
    context: dict[str, Any]
    attempt_count: int
    max_attempts: int
    parent_id: str | None
    created_at: datetime
    scheduled_at: datetime | None
    dispatched_at: datetime | None
    deadline_at: datetime | None
    completed_at: datetime | None
    next_retry_at: datetime | None
    last_error: LastError | None
    updated_at: datetime

    @property
    def retries_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


@dataclass(slots=True)
class ExecutionEventView:
    """Execution event entry for audit trail."""

    event_id: int
    execution_id: str
    event_type: str
    status_from: ExecutionStatus | None
    status_to: ExecutionStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionAttemptView:
    """Per-attempt dispatch telemetry."""

    attempt_id: int
    execution_id: str
    attempt_no: int
    workflow_type: str
    outcome: AttemptOutcome
    dispatched_at: datetime
    deadline_at: datetime
    acknowledged_at: datetime | None
    finished_at: datetime | None
    error_kind: FailureKind | None
    error_message: str | None
    metrics: dict[str, Any]
    estimated_cost_usd: float | None
    actual_cost_usd: float | None

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize for dead-letter snapshots."""

        return {
            "attempt_no": self.attempt_no,
            "outcome": self.outcome.value,
            "dispatched_at": self.dispatched_at.isoformat(),
            "deadline_at": self.deadline_at.isoformat(),
            "acknowledged_at": _iso_or_none(self.acknowledged_at),
            "finished_at": _iso_or_none(self.finished_at),
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "error_message": self.error_message,
            "metrics": self.metrics,
            "estimated_cost_usd": self.estimated_cost_usd,
            "actual_cost_usd": self.actual_cost_usd,
        }


@dataclass(slots=True)
class ExecutionDetails:
    """Execution with event stream and attempt history."""

    execution: ExecutionView
    events: list[ExecutionEventView]
    attempts: list[ExecutionAttemptView]


@dataclass(slots=True)
class AttemptStart:
    """Input to create the attempt row when an execution is admitted."""

    attempt_no: int
    workflow_type: str
    dispatched_at: datetime
    deadline_at: datetime
    estimated_cost_usd: float | None = None


@dataclass(slots=True)
class AttemptUpdate:
    """Input to update one attempt row; None fields are left untouched."""

    attempt_no: int
    outcome: AttemptOutcome | None = None
    acknowledged_at: datetime | None = None
    finished_at: datetime | None = None
    error_kind: FailureKind | None = None
    error_message: str | None = None
    metrics: dict[str, Any] | None = None
    actual_cost_usd: float | None = None


@dataclass(slots=True)
class DeadLetterWrite:
    """Immutable snapshot persisted once per failed execution."""

    execution_id: str
    workflow_type: str
    reason: str
    attempt_count: int
    snapshot: dict[str, Any]
    attempts: list[dict[str, Any]]


@dataclass(slots=True)
class DeadLetterView:
    """Stored dead-letter entry."""

    entry_id: str
    execution_id: str
    workflow_type: str
    reason: str
    attempt_count: int
    snapshot: dict[str, Any]
    attempts: list[dict[str, Any]]
    created_at: datetime
    requeued_at: datetime | None
    requeued_execution_id: str | None


@dataclass(slots=True)
class CallbackPayload:
    """Worker completion notice."""

    execution_id: str
    attempt: int
    status: str
    metrics: dict[str, Any] = field(default_factory=dict)
    error_kind: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def execution_snapshot(view: ExecutionView) -> dict[str, Any]:
    """Serialize an execution for dead-letter snapshots and API responses."""

    return {
        "id": view.execution_id,
        "workflow_type": view.workflow_type,
        "priority": view.priority,
        "status": view.status.value,
        "context": view.context,
        "attempt_count": view.attempt_count,
        "max_attempts": view.max_attempts,
        "parent_id": view.parent_id,
        "created_at": view.created_at.isoformat(),
        "scheduled_at": _iso_or_none(view.scheduled_at),
        "dispatched_at": _iso_or_none(view.dispatched_at),
        "deadline_at": _iso_or_none(view.deadline_at),
        "completed_at": _iso_or_none(view.completed_at),
        "next_retry_at": _iso_or_none(view.next_retry_at),
        "last_error": (
            {
                "kind": view.last_error.kind.value,
                "message": view.last_error.message,
                "at": view.last_error.at.isoformat(),
            }
            if view.last_error is not None
            else None
        ),
    }


def _iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()
