"""Callback receiver: applies worker completion notices to executions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from execution_orchestrator.orchestrator.errors import ValidationError
from execution_orchestrator.orchestrator.failure_classifier import classify_callback_failure
from execution_orchestrator.orchestrator.models import (
    IN_FLIGHT_STATUSES,
    CallbackPayload,
    ExecutionStatus,
)
from execution_orchestrator.orchestrator.repository import ExecutionRegistry
from execution_orchestrator.orchestrator.state_machine import StateMachineController

logger = logging.getLogger(__name__)

CALLBACK_STATUSES = ("success", "failure")


@dataclass(slots=True, frozen=True)
class CallbackResult:
    """How a callback was handled; ``accepted`` is always answered with HTTP 200."""

    accepted: bool
    applied: bool
    reason: str | None = None


class CallbackReceiver:
    """Translate callbacks into state machine transitions.

    Unknown or stale ``(execution_id, attempt)`` pairs are logged and
    dropped; the worker still gets a success response.
    """

    def __init__(
        self,
        *,
        registry: ExecutionRegistry,
        state_machine: StateMachineController,
    ) -> None:
        self._registry = registry
        self._state_machine = state_machine

    def on_callback(self, payload: CallbackPayload) -> CallbackResult:
        if payload.status not in CALLBACK_STATUSES:
            raise ValidationError(
                f"Unsupported callback status {payload.status!r}; "
                f"expected one of {', '.join(CALLBACK_STATUSES)}.",
            )

        view = self._registry.get(payload.execution_id)
        if view is None:
            logger.warning("Dropping callback for unknown execution_id=%s", payload.execution_id)
            return CallbackResult(accepted=True, applied=False, reason="unknown_execution")
        if view.attempt_count != payload.attempt or view.status not in IN_FLIGHT_STATUSES:
            logger.info(
                "Dropping stale callback execution_id=%s attempt=%d (current attempt=%d status=%s)",
                payload.execution_id,
                payload.attempt,
                view.attempt_count,
                view.status.value,
            )
            return CallbackResult(accepted=True, applied=False, reason="stale")

        if view.status is ExecutionStatus.DISPATCHING:
            self._state_machine.acknowledge(payload.execution_id, payload.attempt)

        if payload.succeeded:
            applied = self._state_machine.complete(
                payload.execution_id,
                payload.attempt,
                metrics=payload.metrics,
            )
        else:
            classification = classify_callback_failure(
                error_kind=payload.error_kind,
                error_message=payload.error_message,
            )
            applied = self._state_machine.fail(
                payload.execution_id,
                payload.attempt,
                classification.to_error(payload.error_message or "Worker reported failure"),
                metrics=payload.metrics,
                details=classification.to_event_details(),
            )

        if not applied:
            logger.info(
                "Callback lost the race for execution_id=%s attempt=%d",
                payload.execution_id,
                payload.attempt,
            )
            return CallbackResult(accepted=True, applied=False, reason="stale")
        return CallbackResult(accepted=True, applied=True)
