from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from execution_orchestrator.orchestrator import dead_letter
from execution_orchestrator.orchestrator.errors import ValidationError
from execution_orchestrator.orchestrator.models import ExecutionStatus
from execution_orchestrator.orchestrator.services import EnqueueExecution, OrchestratorRuntime

pytestmark = [
    allure.epic("Dead Letter Queue"),
    allure.feature("Record & Requeue"),
]


def _dead_lettered(runtime: OrchestratorRuntime, *, workflow_type: str = "seo-monitor") -> str:
    execution = runtime.enqueue(
        EnqueueExecution(
            workflow_type=workflow_type,
            priority=3,
            context={"site": "example.com"},
        ),
    )
    analyzing = runtime.state_machine.select(execution)
    assert analyzing is not None
    admitted = runtime.state_machine.admit(analyzing)
    assert admitted.execution is not None
    runtime.state_machine.fail(execution.execution_id, 1, ValidationError("bad context"))
    entry = runtime.registry.get_dead_letter_for_execution(execution.execution_id)
    assert entry is not None
    return entry.entry_id


def test_requeue_creates_linked_execution(runtime: OrchestratorRuntime) -> None:
    entry_id = _dead_lettered(runtime)
    entry = runtime.dead_letters.get(entry_id)
    assert entry is not None

    requeued = runtime.dead_letters.requeue(entry_id)

    assert requeued.status == ExecutionStatus.IDLE
    assert requeued.attempt_count == 0
    assert requeued.parent_id == entry.execution_id
    assert requeued.priority == 3
    assert requeued.context == {"site": "example.com"}

    stored = runtime.dead_letters.get(entry_id)
    assert stored is not None
    assert stored.requeued_execution_id == requeued.execution_id
    assert runtime.dead_letters.list_entries(pending_only=True) == []

    original = runtime.registry.get_details(entry.execution_id)
    assert original is not None
    assert original.execution.status == ExecutionStatus.FAILED
    assert original.events[-1].event_type == "dead_letter_requeued"


def test_requeue_can_override_priority(runtime: OrchestratorRuntime) -> None:
    entry_id = _dead_lettered(runtime)

    requeued = runtime.dead_letters.requeue(entry_id, priority=4)

    assert requeued.priority == 4


def test_entry_can_be_requeued_only_once(runtime: OrchestratorRuntime) -> None:
    entry_id = _dead_lettered(runtime)
    runtime.dead_letters.requeue(entry_id)

    with pytest.raises(RuntimeError, match="already requeued"):
        runtime.dead_letters.requeue(entry_id)


def test_failed_requeue_leaves_entry_pending(
    runtime: OrchestratorRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    entry_id = _dead_lettered(runtime)
    existing = runtime.enqueue(EnqueueExecution(workflow_type="seo-monitor"))
    monkeypatch.setattr(dead_letter, "uuid4", lambda: existing.execution_id)

    with pytest.raises(IntegrityError):
        runtime.dead_letters.requeue(entry_id)

    stored = runtime.dead_letters.get(entry_id)
    assert stored is not None
    assert stored.requeued_at is None
    assert stored.requeued_execution_id is None

    monkeypatch.undo()
    requeued = runtime.dead_letters.requeue(entry_id)
    assert requeued.execution_id != existing.execution_id
    assert runtime.dead_letters.list_entries(pending_only=True) == []


def test_requeue_of_unknown_entry_fails(runtime: OrchestratorRuntime) -> None:
    with pytest.raises(RuntimeError, match="not found"):
        runtime.dead_letters.requeue("missing-entry")


def test_list_entries_filters_by_workflow_type(runtime: OrchestratorRuntime) -> None:
    _dead_lettered(runtime, workflow_type="seo-monitor")
    _dead_lettered(runtime, workflow_type="revenue-optimizer")

    entries = runtime.dead_letters.list_entries(workflow_type="revenue-optimizer")

    assert [entry.workflow_type for entry in entries] == ["revenue-optimizer"]
    assert len(runtime.dead_letters.list_entries()) == 2
