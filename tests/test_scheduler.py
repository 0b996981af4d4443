from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import allure
import httpx

from conftest import START, FakeClock, WorkerStub
from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.governor import ResourceKind
from execution_orchestrator.orchestrator.health import HEALTH_PAUSE_PREFIX
from execution_orchestrator.orchestrator.models import (
    AttemptOutcome,
    CallbackPayload,
    ExecutionStatus,
    FailureKind,
)
from execution_orchestrator.orchestrator.scheduler import TickSummary
from execution_orchestrator.orchestrator.services import EnqueueExecution, OrchestratorRuntime
from execution_orchestrator.orchestrator.state_machine import PAUSE_FLAG

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Tick Loop"),
]


def _enqueue_many(
    runtime: OrchestratorRuntime,
    count: int,
    *,
    workflow_type: str = "seo-monitor",
) -> list[str]:
    return [
        runtime.enqueue(EnqueueExecution(workflow_type=workflow_type)).execution_id
        for _ in range(count)
    ]


def _tick(runtime: OrchestratorRuntime) -> TickSummary:
    summary = runtime.scheduler.tick()
    runtime.scheduler.drain(timeout=10)
    return summary


def _statuses(runtime: OrchestratorRuntime, execution_ids: list[str]) -> list[ExecutionStatus]:
    statuses = []
    for execution_id in execution_ids:
        view = runtime.registry.get(execution_id)
        assert view is not None
        statuses.append(view.status)
    return statuses


def test_tick_dispatches_up_to_free_concurrency_slots(
    runtime: OrchestratorRuntime,
    worker: WorkerStub,
) -> None:
    execution_ids = _enqueue_many(runtime, 5)

    summary = _tick(runtime)

    assert summary.dispatched == 3
    assert summary.denied == 0
    statuses = _statuses(runtime, execution_ids)
    assert statuses.count(ExecutionStatus.MONITORING) == 3
    assert statuses.count(ExecutionStatus.IDLE) == 2
    assert len(worker.requests) == 3
    body = worker.bodies()[0]
    assert body["attempt"] == 1
    assert body["callback_address"] == "http://localhost:8100/callbacks"
    assert body["deadline_at"] == (START + timedelta(minutes=5)).isoformat()
    assert worker.requests[0]["url"] == "http://localhost:8102/execute"


def test_missing_callback_is_swept_after_deadline(
    runtime: OrchestratorRuntime,
    clock: FakeClock,
) -> None:
    [execution_id] = _enqueue_many(runtime, 1)
    _tick(runtime)

    clock.advance(minutes=4, seconds=59)
    assert _tick(runtime).timed_out == 0

    clock.advance(seconds=1)
    summary = _tick(runtime)

    assert summary.timed_out == 1
    view = runtime.registry.get(execution_id)
    assert view is not None
    assert view.status == ExecutionStatus.ERROR_RECOVERY
    assert view.next_retry_at == START + timedelta(minutes=6)
    assert view.last_error is not None
    assert view.last_error.kind is FailureKind.TIMEOUT
    attempts = runtime.registry.list_attempts(execution_id=execution_id)
    assert attempts[0].outcome == AttemptOutcome.TIMED_OUT


def test_retry_sweep_redispatches_after_backoff(
    runtime: OrchestratorRuntime,
    clock: FakeClock,
    worker: WorkerStub,
) -> None:
    [execution_id] = _enqueue_many(runtime, 1)
    _tick(runtime)
    clock.advance(minutes=5)
    _tick(runtime)

    clock.advance(seconds=59)
    assert _tick(runtime).retried == 0

    clock.advance(seconds=1)
    summary = _tick(runtime)

    assert summary.retried == 1
    assert summary.dispatched == 1
    view = runtime.registry.get(execution_id)
    assert view is not None
    assert view.status == ExecutionStatus.MONITORING
    assert view.attempt_count == 2
    assert [body["attempt"] for body in worker.bodies()] == [1, 2]


def test_paused_tick_runs_only_the_timeout_sweep(
    runtime: OrchestratorRuntime,
    clock: FakeClock,
    worker: WorkerStub,
) -> None:
    [in_flight] = _enqueue_many(runtime, 1)
    _tick(runtime)
    clock.advance(minutes=5)
    runtime.state_machine.pause("operator maintenance")
    [waiting] = _enqueue_many(runtime, 1)

    summary = _tick(runtime)

    assert summary.paused
    assert summary.dispatch_skipped
    assert summary.timed_out == 1
    assert summary.dispatched == 0
    assert _statuses(runtime, [in_flight, waiting]) == [
        ExecutionStatus.ERROR_RECOVERY,
        ExecutionStatus.IDLE,
    ]
    assert len(worker.requests) == 1

    clock.advance(minutes=1)
    assert _tick(runtime).retried == 0
    assert runtime.state_machine.is_paused()

    runtime.state_machine.resume()
    summary = _tick(runtime)
    assert summary.retried == 1
    assert summary.dispatched == 2


def test_callbacks_free_slots_for_the_next_tick(
    make_runtime: Callable[..., OrchestratorRuntime],
    settings: Settings,
    worker: WorkerStub,
) -> None:
    settings.governor.concurrency_slots = 2
    runtime = make_runtime(settings)
    execution_ids = _enqueue_many(runtime, 6)

    assert _tick(runtime).dispatched == 2
    assert _tick(runtime).dispatched == 0

    first = runtime.registry.list_by_status([ExecutionStatus.MONITORING])[0]
    result = runtime.callbacks.on_callback(
        CallbackPayload(
            execution_id=first.execution_id,
            attempt=first.attempt_count,
            status="success",
            metrics={"cost_usd": 0.04},
        ),
    )
    assert result.applied

    assert _tick(runtime).dispatched == 1
    statuses = _statuses(runtime, execution_ids)
    assert statuses.count(ExecutionStatus.MONITORING) == 2
    assert statuses.count(ExecutionStatus.COMPLETED) == 1
    assert len(worker.requests) == 3


def test_dispatch_http_errors_drive_retry_or_failure(
    runtime: OrchestratorRuntime,
    worker: WorkerStub,
) -> None:
    worker.status_code = 503
    [transient] = _enqueue_many(runtime, 1)
    _tick(runtime)

    worker.status_code = 400
    [rejected] = _enqueue_many(runtime, 1)
    _tick(runtime)

    transient_view = runtime.registry.get(transient)
    assert transient_view is not None
    assert transient_view.status == ExecutionStatus.ERROR_RECOVERY
    assert transient_view.last_error is not None
    assert transient_view.last_error.kind is FailureKind.TRANSIENT_DISPATCH
    attempts = runtime.registry.list_attempts(execution_id=transient)
    assert attempts[0].outcome == AttemptOutcome.DISPATCH_FAILED

    rejected_view = runtime.registry.get(rejected)
    assert rejected_view is not None
    assert rejected_view.status == ExecutionStatus.FAILED
    entry = runtime.registry.get_dead_letter_for_execution(rejected)
    assert entry is not None
    assert entry.reason == "validation"

    assert runtime.governor.available(ResourceKind.CONCURRENCY_SLOTS) == 3


def test_connection_errors_are_transient(
    runtime: OrchestratorRuntime,
    worker: WorkerStub,
) -> None:
    worker.error = httpx.ConnectError("connection refused")
    [execution_id] = _enqueue_many(runtime, 1)

    _tick(runtime)

    view = runtime.registry.get(execution_id)
    assert view is not None
    assert view.status == ExecutionStatus.ERROR_RECOVERY
    assert view.next_retry_at == START + timedelta(minutes=1)


def test_daily_cost_exhaustion_degrades_batch_and_interval(
    make_runtime: Callable[..., OrchestratorRuntime],
    settings: Settings,
) -> None:
    settings.governor.daily_cost_usd = 0.12
    runtime = make_runtime(settings)
    execution_ids = _enqueue_many(runtime, 3)

    summary = _tick(runtime)

    assert summary.dispatched == 2
    assert summary.denied == 1
    assert summary.degraded
    assert runtime.scheduler.degraded
    assert runtime.scheduler.next_interval() == 600
    assert _statuses(runtime, execution_ids).count(ExecutionStatus.IDLE) == 1

    _tick(runtime)
    assert runtime.scheduler.next_interval() == 1_200


def test_sustained_denials_pause_then_auto_resume(
    make_runtime: Callable[..., OrchestratorRuntime],
    settings: Settings,
) -> None:
    settings.governor.gemini_rpm = 1
    settings.health.sustained_denial_ticks = 2
    runtime = make_runtime(settings)
    _enqueue_many(runtime, 2, workflow_type="content-pipeline")

    first = _tick(runtime)
    assert (first.dispatched, first.denied) == (1, 1)
    assert runtime.scheduler.consecutive_denied_ticks == 0

    _tick(runtime)
    _tick(runtime)
    assert runtime.scheduler.consecutive_denied_ticks == 2

    paused = _tick(runtime)
    assert paused.health == "critical"
    assert paused.dispatch_skipped
    flag = runtime.registry.get_flag(PAUSE_FLAG)
    assert flag is not None
    assert flag[0].startswith(HEALTH_PAUSE_PREFIX)
    assert runtime.scheduler.consecutive_denied_ticks == 0

    resumed = _tick(runtime)
    assert not resumed.paused
    assert not runtime.state_machine.is_paused()


def test_recover_resets_orphans_and_restores_in_flight_slots(
    make_runtime: Callable[..., OrchestratorRuntime],
) -> None:
    first = make_runtime()
    orphan, in_flight = _enqueue_many(first, 2)
    in_flight_view = first.registry.get(in_flight)
    orphan_view = first.registry.get(orphan)
    assert in_flight_view is not None
    assert orphan_view is not None
    analyzing = first.state_machine.select(in_flight_view)
    assert analyzing is not None
    assert first.state_machine.admit(analyzing).admitted
    assert first.state_machine.select(orphan_view) is not None

    restarted = make_runtime()
    assert restarted.scheduler.recover() == 1

    assert _statuses(restarted, [orphan, in_flight]) == [
        ExecutionStatus.IDLE,
        ExecutionStatus.DISPATCHING,
    ]
    assert restarted.governor.available(ResourceKind.CONCURRENCY_SLOTS) == 2


def test_run_loop_stops_after_max_ticks(
    make_runtime: Callable[..., OrchestratorRuntime],
    settings: Settings,
    worker: WorkerStub,
) -> None:
    settings.scheduler.tick_interval_seconds = 0.01
    runtime = make_runtime(settings)
    _enqueue_many(runtime, 4)

    summary = runtime.scheduler.run_loop(max_ticks=2)

    assert summary.ticks == 2
    assert summary.dispatched == 3
    assert len(worker.requests) == 3
