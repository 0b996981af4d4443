from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta

import allure
import pytest

from conftest import START, FakeClock
from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.errors import (
    FatalSystemError,
    ValidationError,
    WorkerError,
)
from execution_orchestrator.orchestrator.governor import ResourceKind
from execution_orchestrator.orchestrator.models import (
    AttemptOutcome,
    ExecutionStatus,
    ExecutionView,
    FailureKind,
)
from execution_orchestrator.orchestrator.services import EnqueueExecution, OrchestratorRuntime
from execution_orchestrator.orchestrator.state_machine import PAUSE_FLAG

pytestmark = [
    allure.epic("State Machine"),
    allure.feature("Transitions, Retries & Dead Letters"),
]


def _enqueue(runtime: OrchestratorRuntime, workflow_type: str = "seo-monitor") -> ExecutionView:
    return runtime.enqueue(EnqueueExecution(workflow_type=workflow_type, priority=2))


def _start_attempt(runtime: OrchestratorRuntime, execution_id: str) -> ExecutionView:
    view = runtime.registry.get(execution_id)
    assert view is not None
    analyzing = runtime.state_machine.select(view)
    assert analyzing is not None
    assert analyzing.status == ExecutionStatus.ANALYZING
    result = runtime.state_machine.admit(analyzing)
    assert result.admitted
    assert result.execution is not None
    return result.execution


def _monitor(runtime: OrchestratorRuntime, execution_id: str) -> ExecutionView:
    dispatching = _start_attempt(runtime, execution_id)
    assert runtime.state_machine.acknowledge(execution_id, dispatching.attempt_count)
    monitoring = runtime.registry.get(execution_id)
    assert monitoring is not None
    return monitoring


def _slots_in_use(runtime: OrchestratorRuntime) -> float:
    return float(runtime.governor.snapshot()[ResourceKind.CONCURRENCY_SLOTS.value]["used"])


def test_backoff_doubles_from_one_minute(runtime: OrchestratorRuntime) -> None:
    delays = [runtime.state_machine.retry_delay(attempt) for attempt in (1, 2, 3)]

    assert delays == [timedelta(minutes=1), timedelta(minutes=2), timedelta(minutes=4)]


def test_backoff_is_capped(
    make_runtime: Callable[..., OrchestratorRuntime],
    settings: Settings,
) -> None:
    settings.scheduler.retry_max_seconds = 90
    runtime = make_runtime(settings)

    assert runtime.state_machine.retry_delay(5) == timedelta(seconds=90)


def test_admission_sets_attempt_deadline_and_persists_attempt_row(
    runtime: OrchestratorRuntime,
) -> None:
    execution = _enqueue(runtime)

    dispatching = _start_attempt(runtime, execution.execution_id)

    assert dispatching.status == ExecutionStatus.DISPATCHING
    assert dispatching.attempt_count == 1
    assert dispatching.dispatched_at == START
    assert dispatching.deadline_at == START + timedelta(minutes=5)
    attempts = runtime.registry.list_attempts(execution_id=execution.execution_id)
    assert [attempt.outcome for attempt in attempts] == [AttemptOutcome.IN_FLIGHT]
    assert attempts[0].estimated_cost_usd == pytest.approx(0.05)
    assert _slots_in_use(runtime) == 1


def test_successful_lifecycle_releases_slot(runtime: OrchestratorRuntime) -> None:
    execution = _enqueue(runtime)
    _monitor(runtime, execution.execution_id)

    assert runtime.state_machine.complete(execution.execution_id, 1, metrics={"items": 4})

    details = runtime.registry.get_details(execution.execution_id)
    assert details is not None
    assert details.execution.status == ExecutionStatus.COMPLETED
    assert details.execution.completed_at == START
    assert [event.status_to for event in details.events if event.status_to] == [
        ExecutionStatus.IDLE,
        ExecutionStatus.ANALYZING,
        ExecutionStatus.DISPATCHING,
        ExecutionStatus.MONITORING,
        ExecutionStatus.COMPLETED,
    ]
    assert details.attempts[0].outcome == AttemptOutcome.SUCCEEDED
    assert details.attempts[0].metrics == {"items": 4}
    assert _slots_in_use(runtime) == 0


def test_stale_attempt_notices_are_no_ops(runtime: OrchestratorRuntime) -> None:
    execution = _enqueue(runtime)
    _monitor(runtime, execution.execution_id)

    assert not runtime.state_machine.complete(execution.execution_id, 2, metrics={})
    assert not runtime.state_machine.fail(
        execution.execution_id,
        0,
        WorkerError("late failure"),
    )
    assert not runtime.state_machine.acknowledge(execution.execution_id, 1)

    current = runtime.registry.get(execution.execution_id)
    assert current is not None
    assert current.status == ExecutionStatus.MONITORING
    assert _slots_in_use(runtime) == 1


def test_governor_denial_leaves_execution_untouched(
    make_runtime: Callable[..., OrchestratorRuntime],
    settings: Settings,
) -> None:
    settings.governor.concurrency_slots = 1
    runtime = make_runtime(settings)
    first = _enqueue(runtime)
    second = _enqueue(runtime)
    _start_attempt(runtime, first.execution_id)

    analyzing = runtime.state_machine.select(second)
    assert analyzing is not None
    result = runtime.state_machine.admit(analyzing)

    assert not result.admitted
    assert result.admission is not None
    assert result.admission.denied_kind is ResourceKind.CONCURRENCY_SLOTS
    current = runtime.registry.get(second.execution_id)
    assert current is not None
    assert current.status == ExecutionStatus.IDLE
    assert current.attempt_count == 0
    assert current.dispatched_at is None
    assert runtime.registry.list_attempts(execution_id=second.execution_id) == []


def test_worker_failure_schedules_retry_with_backoff(runtime: OrchestratorRuntime) -> None:
    execution = _enqueue(runtime)
    _monitor(runtime, execution.execution_id)

    assert runtime.state_machine.fail(execution.execution_id, 1, WorkerError("boom"))

    current = runtime.registry.get(execution.execution_id)
    assert current is not None
    assert current.status == ExecutionStatus.ERROR_RECOVERY
    assert current.next_retry_at == START + timedelta(minutes=1)
    assert current.last_error is not None
    assert current.last_error.kind is FailureKind.WORKER
    assert current.last_error.message == "boom"
    assert _slots_in_use(runtime) == 0

    assert not runtime.state_machine.retry(current)


def test_three_failures_dead_letter_exactly_once(
    runtime: OrchestratorRuntime,
    clock: FakeClock,
) -> None:
    execution = _enqueue(runtime)

    for attempt in (1, 2, 3):
        _monitor(runtime, execution.execution_id)
        assert runtime.state_machine.fail(
            execution.execution_id,
            attempt,
            WorkerError(f"failure {attempt}"),
        )
        current = runtime.registry.get(execution.execution_id)
        assert current is not None
        if attempt < 3:
            assert current.status == ExecutionStatus.ERROR_RECOVERY
            clock.advance(minutes=2**attempt)
            assert runtime.state_machine.retry(current)

    final = runtime.registry.get(execution.execution_id)
    assert final is not None
    assert final.status == ExecutionStatus.FAILED
    assert final.attempt_count == 3
    assert final.next_retry_at is None

    entries = runtime.dead_letters.list_entries()
    assert len(entries) == 1
    assert entries[0].execution_id == execution.execution_id
    assert entries[0].reason == "retries_exhausted"
    assert [attempt["attempt_no"] for attempt in entries[0].attempts] == [1, 2, 3]
    assert entries[0].snapshot["status"] == "FAILED"

    assert not runtime.state_machine.fail(execution.execution_id, 3, WorkerError("again"))
    assert len(runtime.dead_letters.list_entries()) == 1


def test_validation_failure_skips_retries(runtime: OrchestratorRuntime) -> None:
    execution = _enqueue(runtime)
    _monitor(runtime, execution.execution_id)

    assert runtime.state_machine.fail(
        execution.execution_id,
        1,
        ValidationError("context.site is required"),
    )

    current = runtime.registry.get(execution.execution_id)
    assert current is not None
    assert current.status == ExecutionStatus.FAILED
    assert current.attempt_count == 1
    entry = runtime.registry.get_dead_letter_for_execution(execution.execution_id)
    assert entry is not None
    assert entry.reason == "validation"


def test_fatal_error_pauses_new_dispatches(runtime: OrchestratorRuntime) -> None:
    first = _enqueue(runtime)
    second = _enqueue(runtime)
    _monitor(runtime, first.execution_id)

    assert runtime.state_machine.fail(
        first.execution_id,
        1,
        FatalSystemError("database disk image is malformed"),
    )

    assert runtime.state_machine.is_paused()
    flag = runtime.registry.get_flag(PAUSE_FLAG)
    assert flag is not None
    assert flag[0] == "database disk image is malformed"
    current = runtime.registry.get(first.execution_id)
    assert current is not None
    assert current.status == ExecutionStatus.ERROR_RECOVERY

    analyzing = runtime.state_machine.select(second)
    assert analyzing is not None
    result = runtime.state_machine.admit(analyzing)
    assert not result.admitted
    assert result.reason == PAUSE_FLAG
    idle = runtime.registry.get(second.execution_id)
    assert idle is not None
    assert idle.status == ExecutionStatus.IDLE

    assert runtime.state_machine.resume()
    assert not runtime.state_machine.is_paused()


def test_expire_requires_deadline_to_pass(
    runtime: OrchestratorRuntime,
    clock: FakeClock,
) -> None:
    execution = _enqueue(runtime)
    monitoring = _monitor(runtime, execution.execution_id)

    assert not runtime.state_machine.expire(monitoring)
    clock.advance(minutes=5)
    assert runtime.state_machine.expire(monitoring)
    assert not runtime.state_machine.expire(monitoring)

    attempts = runtime.registry.list_attempts(execution_id=execution.execution_id)
    assert attempts[0].outcome == AttemptOutcome.TIMED_OUT


def test_racing_completion_and_timeout_release_slot_once(
    runtime: OrchestratorRuntime,
    clock: FakeClock,
) -> None:
    racing = _enqueue(runtime)
    bystander = _enqueue(runtime)
    monitoring = _monitor(runtime, racing.execution_id)
    _monitor(runtime, bystander.execution_id)
    assert _slots_in_use(runtime) == 2
    clock.advance(minutes=5)

    barrier = threading.Barrier(2)
    results: list[bool] = []

    def _complete() -> None:
        barrier.wait()
        results.append(runtime.state_machine.complete(racing.execution_id, 1, metrics={}))

    def _expire() -> None:
        barrier.wait()
        results.append(runtime.state_machine.expire(monitoring))

    threads = [threading.Thread(target=_complete), threading.Thread(target=_expire)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert results.count(True) == 1
    assert _slots_in_use(runtime) == 1
    current = runtime.registry.get(racing.execution_id)
    assert current is not None
    assert current.status == ExecutionStatus.ERROR_RECOVERY
    assert current.last_error is not None
    assert current.last_error.kind is FailureKind.TIMEOUT
