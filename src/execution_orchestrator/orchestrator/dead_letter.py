"""Dead letter handler: permanent record of executions that gave up."""

from __future__ import annotations

import logging
from uuid import uuid4

from execution_orchestrator.orchestrator.models import (
    DeadLetterView,
    DeadLetterWrite,
    ExecutionCreate,
    ExecutionView,
    execution_snapshot,
)
from execution_orchestrator.orchestrator.repository import ExecutionRegistry
from execution_orchestrator.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)

REASON_RETRIES_EXHAUSTED = "retries_exhausted"
REASON_VALIDATION = "validation"


class DeadLetterHandler:
    """Write, list and requeue dead-letter entries."""

    def __init__(
        self,
        registry: ExecutionRegistry,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._clock = clock

    def record(self, execution: ExecutionView, *, reason: str) -> DeadLetterView | None:
        """Snapshot a FAILED execution with its attempt history.

        Returns None when the execution already has an entry.
        """

        attempts = self._registry.list_attempts(execution_id=execution.execution_id)
        entry = self._registry.insert_dead_letter(
            DeadLetterWrite(
                execution_id=execution.execution_id,
                workflow_type=execution.workflow_type,
                reason=reason,
                attempt_count=execution.attempt_count,
                snapshot=execution_snapshot(execution),
                attempts=[attempt.to_snapshot() for attempt in attempts],
            ),
            now=self._clock(),
        )
        if entry is None:
            logger.debug("Dead-letter entry already exists for %s", execution.execution_id)
            return None
        logger.error(
            "Execution dead-lettered: execution_id=%s workflow_type=%s reason=%s attempts=%d",
            execution.execution_id,
            execution.workflow_type,
            reason,
            execution.attempt_count,
        )
        return entry

    def list_entries(
        self,
        *,
        pending_only: bool = False,
        workflow_type: str | None = None,
        limit: int = 50,
    ) -> list[DeadLetterView]:
        return self._registry.list_dead_letters(
            pending_only=pending_only,
            workflow_type=workflow_type,
            limit=limit,
        )

    def get(self, entry_id: str) -> DeadLetterView | None:
        return self._registry.get_dead_letter(entry_id)

    def requeue(self, entry_id: str, *, priority: int | None = None) -> ExecutionView:
        """Enqueue a fresh execution from a dead-letter snapshot.

        The new execution keeps ``parent_id`` pointing at the failed one.
        An entry can be requeued only once.
        """

        entry = self._registry.get_dead_letter(entry_id)
        if entry is None:
            raise RuntimeError(f"Dead-letter entry not found: {entry_id}")
        if entry.requeued_at is not None:
            raise RuntimeError(
                f"Dead-letter entry {entry_id} was already requeued as "
                f"{entry.requeued_execution_id}",
            )

        snapshot = entry.snapshot
        context = snapshot.get("context")
        new_execution_id = str(uuid4())
        view = self._registry.requeue_dead_letter(
            entry_id=entry_id,
            payload=ExecutionCreate(
                workflow_type=entry.workflow_type,
                priority=priority if priority is not None else int(snapshot.get("priority", 2)),
                context=context if isinstance(context, dict) else {},
                execution_id=new_execution_id,
                max_attempts=int(snapshot.get("max_attempts", 3)),
                parent_id=entry.execution_id,
            ),
            now=self._clock(),
        )
        if view is None:
            raise RuntimeError(f"Dead-letter entry {entry_id} was already requeued")
        logger.info(
            "Dead-letter entry %s requeued as execution %s",
            entry_id,
            new_execution_id,
        )
        return view
