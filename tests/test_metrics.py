from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from conftest import START
from execution_orchestrator.orchestrator.metrics import (
    build_orchestrator_metrics,
    render_stats_lines,
)
from execution_orchestrator.orchestrator.models import (
    AttemptOutcome,
    ExecutionAttemptView,
    ExecutionStatus,
    ExecutionView,
    FailureKind,
)

pytestmark = [
    allure.epic("Operator Tooling"),
    allure.feature("Stats"),
]


def _attempt(
    attempt_no: int,
    outcome: AttemptOutcome,
    *,
    seconds: float,
    workflow_type: str = "seo-monitor",
    error_kind: FailureKind | None = None,
    actual_cost_usd: float | None = None,
) -> ExecutionAttemptView:
    return ExecutionAttemptView(
        attempt_id=attempt_no,
        execution_id=f"exec-{attempt_no}",
        attempt_no=attempt_no,
        workflow_type=workflow_type,
        outcome=outcome,
        dispatched_at=START,
        deadline_at=START + timedelta(minutes=5),
        acknowledged_at=START,
        finished_at=START + timedelta(seconds=seconds),
        error_kind=error_kind,
        error_message=None,
        metrics={},
        estimated_cost_usd=0.05,
        actual_cost_usd=actual_cost_usd,
    )


def _ready(priority: int) -> ExecutionView:
    return ExecutionView(
        execution_id=f"ready-{priority}",
        workflow_type="seo-monitor",
        priority=priority,
        status=ExecutionStatus.IDLE,
        context={},
        attempt_count=0,
        max_attempts=3,
        parent_id=None,
        created_at=START,
        scheduled_at=None,
        dispatched_at=None,
        deadline_at=None,
        completed_at=None,
        next_retry_at=None,
        last_error=None,
        updated_at=START,
    )


def test_metrics_snapshot_aggregates_attempts() -> None:
    snapshot = build_orchestrator_metrics(
        status_counts={"IDLE": 2, "COMPLETED": 2, "ERROR_RECOVERY": 1},
        ready=[_ready(1), _ready(4), _ready(4)],
        window_attempts=[
            _attempt(1, AttemptOutcome.SUCCEEDED, seconds=10, actual_cost_usd=0.02),
            _attempt(2, AttemptOutcome.SUCCEEDED, seconds=20),
            _attempt(
                1,
                AttemptOutcome.TIMED_OUT,
                seconds=300,
                error_kind=FailureKind.TIMEOUT,
            ),
        ],
        dead_letter_pending=1,
    )

    assert snapshot.status_counts["IDLE"] == 2
    assert snapshot.status_counts["FAILED"] == 0
    assert snapshot.ready_by_priority == {"low": 1, "urgent": 2}
    assert snapshot.outcome_counts == {"succeeded": 2, "timed_out": 1}
    assert snapshot.error_kind_counts == {"timeout": 1}
    assert snapshot.success_rate == pytest.approx(2 / 3)
    assert snapshot.retry_success_count == 1
    assert snapshot.estimated_cost_usd == pytest.approx(0.15)
    assert snapshot.actual_cost_usd == pytest.approx(0.12)
    latency = snapshot.latency_by_workflow_type["seo-monitor"]
    assert latency.sample_size == 3
    assert latency.p50_seconds == pytest.approx(20)
    assert latency.p90_seconds == pytest.approx(244)


def test_render_stats_lines_without_attempts() -> None:
    snapshot = build_orchestrator_metrics(
        status_counts={},
        ready=[],
        window_attempts=[],
        dead_letter_pending=0,
    )

    lines = render_stats_lines(snapshot=snapshot, hours=24)

    assert lines[0] == "Execution orchestrator stats (window=24h)"
    assert "Ready by priority: none" in lines
    assert "Success rate: n/a (succeeded after retry: 0)" in lines
    assert lines[-1] == "Latency percentiles: none"


def test_render_stats_lines_lists_latency_per_workflow_type() -> None:
    snapshot = build_orchestrator_metrics(
        status_counts={"COMPLETED": 1},
        ready=[],
        window_attempts=[
            _attempt(1, AttemptOutcome.SUCCEEDED, seconds=4, workflow_type="content-pipeline"),
        ],
        dead_letter_pending=0,
    )

    lines = render_stats_lines(snapshot=snapshot, hours=1)

    assert "Success rate: 100.00% (succeeded after retry: 0)" in lines
    assert (
        "  workflow_type=content-pipeline n=1 p50=4.00s p90=4.00s p99=4.00s" in lines
    )
