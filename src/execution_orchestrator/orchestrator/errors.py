"""Failure taxonomy for orchestrated executions."""

from __future__ import annotations

from execution_orchestrator.orchestrator.models import FailureKind


class OrchestratorError(Exception):
    """Base class for per-execution and system failures."""

    kind: FailureKind = FailureKind.WORKER
    retryable: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrchestratorError):
    """Payload or context malformed; never retried."""

    kind = FailureKind.VALIDATION
    retryable = False


class TransientDispatchError(OrchestratorError):
    """Network or timeout failure of the dispatch call itself."""

    kind = FailureKind.TRANSIENT_DISPATCH


class WorkerError(OrchestratorError):
    """Worker reported failure through its callback."""

    kind = FailureKind.WORKER


class ExecutionTimeoutError(OrchestratorError):
    """No callback arrived before the execution deadline."""

    kind = FailureKind.TIMEOUT


class ResourceExhaustedError(OrchestratorError):
    """Resource governor denied admission; the execution stays queued."""

    kind = FailureKind.RESOURCE_EXHAUSTED


class FatalSystemError(OrchestratorError):
    """Anomaly that halts new dispatches system-wide until cleared."""

    kind = FailureKind.FATAL_SYSTEM
    retryable = True


def error_for_kind(kind: FailureKind, message: str) -> OrchestratorError:
    """Build the exception instance that matches a failure kind."""

    return _ERROR_BY_KIND[kind](message)


_ERROR_BY_KIND: dict[FailureKind, type[OrchestratorError]] = {
    FailureKind.VALIDATION: ValidationError,
    FailureKind.TRANSIENT_DISPATCH: TransientDispatchError,
    FailureKind.WORKER: WorkerError,
    FailureKind.TIMEOUT: ExecutionTimeoutError,
    FailureKind.RESOURCE_EXHAUSTED: ResourceExhaustedError,
    FailureKind.FATAL_SYSTEM: FatalSystemError,
}
