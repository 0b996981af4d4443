"""HTTP surface: worker callbacks plus operator endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from execution_orchestrator import __version__
from execution_orchestrator.orchestrator.errors import ValidationError
from execution_orchestrator.orchestrator.models import (
    CallbackPayload,
    DeadLetterView,
    execution_snapshot,
)
from execution_orchestrator.orchestrator.services import EnqueueExecution, OrchestratorRuntime

logger = logging.getLogger(__name__)


class CallbackError(BaseModel):
    """Error block of a failure callback."""

    kind: str | None = None
    message: str | None = None


class CallbackRequest(BaseModel):
    """Worker completion notice."""

    id: str = Field(..., description="Execution id from the dispatch request")
    attempt: int = Field(..., ge=1)
    status: Literal["success", "failure"]
    metrics: dict[str, Any] = Field(default_factory=dict)
    error: CallbackError | None = None


class CallbackResponse(BaseModel):
    accepted: bool
    applied: bool
    reason: str | None = None


class ExecutionCreateRequest(BaseModel):
    """Request to enqueue a new execution."""

    workflow_type: str
    priority: int = Field(2, ge=1, le=4)
    context: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(None, ge=1)
    scheduled_at: datetime | None = None


class RequeueRequest(BaseModel):
    priority: int | None = Field(None, ge=1, le=4)


def create_app(runtime: OrchestratorRuntime) -> FastAPI:
    """Build the FastAPI application bound to one orchestrator runtime."""

    app = FastAPI(title="Execution Orchestrator", version=__version__)

    @app.post("/callbacks", response_model=CallbackResponse)
    def receive_callback(request: CallbackRequest) -> CallbackResponse:
        result = runtime.callbacks.on_callback(
            CallbackPayload(
                execution_id=request.id,
                attempt=request.attempt,
                status=request.status,
                metrics=request.metrics,
                error_kind=request.error.kind if request.error is not None else None,
                error_message=request.error.message if request.error is not None else None,
            ),
        )
        return CallbackResponse(
            accepted=result.accepted,
            applied=result.applied,
            reason=result.reason,
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        report = runtime.health.check(
            consecutive_denied_ticks=runtime.scheduler.consecutive_denied_ticks,
        )
        return report.to_dict()

    @app.get("/resources")
    def resources() -> dict[str, Any]:
        runtime.state_machine.sync_ceilings()
        return {
            "paused": runtime.state_machine.is_paused(),
            "budgets": runtime.governor.snapshot(),
        }

    @app.post("/executions", status_code=201)
    def enqueue_execution(request: ExecutionCreateRequest) -> dict[str, Any]:
        try:
            execution = runtime.enqueue(
                EnqueueExecution(
                    workflow_type=request.workflow_type,
                    priority=request.priority,
                    context=request.context,
                    max_attempts=request.max_attempts,
                    scheduled_at=request.scheduled_at,
                ),
            )
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=exc.message) from exc
        return execution_snapshot(execution)

    @app.get("/executions/{execution_id}")
    def get_execution(execution_id: str) -> dict[str, Any]:
        details = runtime.registry.get_details(execution_id)
        if details is None:
            raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
        payload = execution_snapshot(details.execution)
        payload["attempts"] = [attempt.to_snapshot() for attempt in details.attempts]
        payload["events"] = [
            {
                "event_type": event.event_type,
                "status_from": event.status_from.value if event.status_from else None,
                "status_to": event.status_to.value if event.status_to else None,
                "created_at": event.created_at.isoformat(),
                "details": event.details,
            }
            for event in details.events
        ]
        return payload

    @app.get("/dead-letters")
    def list_dead_letters(
        pending_only: bool = Query(False),
        workflow_type: str | None = Query(None),
        limit: int = Query(50, ge=1, le=1000),
    ) -> list[dict[str, Any]]:
        entries = runtime.dead_letters.list_entries(
            pending_only=pending_only,
            workflow_type=workflow_type,
            limit=limit,
        )
        return [_dead_letter_payload(entry) for entry in entries]

    @app.post("/dead-letters/{entry_id}/requeue", status_code=201)
    def requeue_dead_letter(entry_id: str, request: RequeueRequest | None = None) -> dict[str, Any]:
        if runtime.dead_letters.get(entry_id) is None:
            raise HTTPException(status_code=404, detail=f"Dead-letter entry not found: {entry_id}")
        try:
            execution = runtime.dead_letters.requeue(
                entry_id,
                priority=request.priority if request is not None else None,
            )
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return execution_snapshot(execution)

    @app.post("/system/resume")
    def resume_dispatch() -> dict[str, Any]:
        cleared = runtime.state_machine.resume(source="api")
        return {"resumed": cleared, "paused": runtime.state_machine.is_paused()}

    return app


def _dead_letter_payload(entry: DeadLetterView) -> dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "execution_id": entry.execution_id,
        "workflow_type": entry.workflow_type,
        "reason": entry.reason,
        "attempt_count": entry.attempt_count,
        "snapshot": entry.snapshot,
        "attempts": entry.attempts,
        "created_at": entry.created_at.isoformat(),
        "requeued_at": entry.requeued_at.isoformat() if entry.requeued_at else None,
        "requeued_execution_id": entry.requeued_execution_id,
    }
