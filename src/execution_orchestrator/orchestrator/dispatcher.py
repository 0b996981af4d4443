"""Outbound dispatch of executions to worker endpoints over HTTP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from execution_orchestrator.orchestrator.failure_classifier import classify_dispatch_status
from execution_orchestrator.orchestrator.models import DispatchOutcome, ExecutionView
from execution_orchestrator.orchestrator.routing import RoutingTable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "execution-orchestrator/0.1"
_ERROR_BODY_LIMIT = 500


@dataclass(slots=True, frozen=True)
class DispatchResult:
    """Result of one dispatch call."""

    outcome: DispatchOutcome
    status_code: int | None = None
    error: str | None = None


class Dispatcher:
    """Send executions to their worker and return without waiting for completion."""

    def __init__(
        self,
        *,
        routing: RoutingTable,
        callback_address: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._routing = routing
        self._callback_address = callback_address
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0)),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=transport,
        )

    def build_payload(self, execution: ExecutionView) -> dict[str, Any]:
        """Dispatch request body sent to the worker."""

        return {
            "id": execution.execution_id,
            "attempt": execution.attempt_count,
            "workflow_type": execution.workflow_type,
            "priority": execution.priority,
            "context": execution.context,
            "callback_address": self._callback_address,
            "deadline_at": (
                execution.deadline_at.isoformat() if execution.deadline_at is not None else None
            ),
        }

    def dispatch(self, execution: ExecutionView) -> DispatchResult:
        """POST the execution to its worker endpoint."""

        route = self._routing.get(execution.workflow_type)
        if route is None:
            logger.warning(
                "No route for workflow_type=%s (execution_id=%s)",
                execution.workflow_type,
                execution.execution_id,
            )
            return DispatchResult(
                outcome=DispatchOutcome.REJECTED,
                error=f"Unknown workflow_type {execution.workflow_type!r}",
            )

        try:
            response = self._client.post(route.endpoint, json=self.build_payload(execution))
        except httpx.TimeoutException:
            logger.warning(
                "Timeout dispatching execution_id=%s to %s",
                execution.execution_id,
                route.endpoint,
            )
            return DispatchResult(outcome=DispatchOutcome.TRANSIENT_ERROR, error="timeout")
        except httpx.HTTPError as exc:
            logger.warning(
                "HTTP error dispatching execution_id=%s to %s: %s",
                execution.execution_id,
                route.endpoint,
                exc,
            )
            return DispatchResult(outcome=DispatchOutcome.TRANSIENT_ERROR, error=str(exc))

        outcome = classify_dispatch_status(response.status_code)
        if outcome is DispatchOutcome.ACKNOWLEDGED:
            return DispatchResult(outcome=outcome, status_code=response.status_code)
        detail = response.text[:_ERROR_BODY_LIMIT].strip()
        error = f"HTTP {response.status_code}" + (f": {detail}" if detail else "")
        logger.warning(
            "Worker %s answered execution_id=%s with %s",
            route.endpoint,
            execution.execution_id,
            error,
        )
        return DispatchResult(outcome=outcome, status_code=response.status_code, error=error)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
