from __future__ import annotations

from datetime import datetime, timedelta

import allure
import pytest

from conftest import START
from execution_orchestrator.config import QueueSettings
from execution_orchestrator.orchestrator.models import ExecutionStatus, ExecutionView
from execution_orchestrator.orchestrator.queue import (
    PriorityQueueManager,
    priority_score,
    select_fair,
)

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Priority Queue & Fairness"),
]


def _view(
    execution_id: str,
    *,
    priority: int = 2,
    age_minutes: float = 0,
    workflow_type: str = "seo-monitor",
    attempt_count: int = 0,
    max_attempts: int = 3,
) -> ExecutionView:
    created_at = START - timedelta(minutes=age_minutes)
    return ExecutionView(
        execution_id=execution_id,
        workflow_type=workflow_type,
        priority=priority,
        status=ExecutionStatus.IDLE,
        context={},
        attempt_count=attempt_count,
        max_attempts=max_attempts,
        parent_id=None,
        created_at=created_at,
        scheduled_at=None,
        dispatched_at=None,
        deadline_at=None,
        completed_at=None,
        next_retry_at=None,
        last_error=None,
        updated_at=created_at,
    )


class _StaticSource:
    def __init__(self, views: list[ExecutionView]) -> None:
        self.views = views

    def list_ready(self, *, now: datetime) -> list[ExecutionView]:
        return list(self.views)


def _manager(views: list[ExecutionView], **overrides: float) -> PriorityQueueManager:
    return PriorityQueueManager(
        _StaticSource(views),
        QueueSettings(**overrides),  # type: ignore[arg-type]
        clock=lambda: START,
    )


def test_priority_score_is_priority_times_ten_plus_age() -> None:
    assert priority_score(priority=3, created_at=START, now=START) == 30
    assert priority_score(
        priority=1,
        created_at=START - timedelta(minutes=40),
        now=START,
    ) == pytest.approx(50)


def test_old_low_priority_task_outranks_new_high_priority_task() -> None:
    fresh_high = _view("fresh-high", priority=3, age_minutes=0)
    old_low = _view("old-low", priority=1, age_minutes=40)
    manager = _manager([fresh_high, old_low])

    batch = manager.next_batch(10)

    assert [item.execution_id for item in batch] == ["old-low", "fresh-high"]
    assert batch[0].score == pytest.approx(50)
    assert batch[0].boosted
    assert not batch[1].boosted


def test_same_priority_orders_oldest_first() -> None:
    newer = _view("newer", priority=2, age_minutes=0)
    older = _view("older", priority=2, age_minutes=0)
    older.created_at = START - timedelta(seconds=1)
    manager = _manager([newer, older])

    ranked = manager.rank([newer, older], now=START)

    assert [item.execution_id for item in ranked] == ["older", "newer"]


def test_exhausted_executions_are_never_returned() -> None:
    manager = _manager(
        [
            _view("ready"),
            _view("exhausted", attempt_count=3, max_attempts=3),
        ],
    )

    assert [item.execution_id for item in manager.next_batch(10)] == ["ready"]


def test_fairness_caps_one_workflow_type_per_batch() -> None:
    views = [
        _view(f"content-{index}", priority=4, workflow_type="content-pipeline")
        for index in range(4)
    ] + [_view("seo-0", priority=1, workflow_type="seo-monitor")]
    manager = _manager(views, fairness_share=0.5)

    batch = manager.next_batch(4)

    assert [item.execution.workflow_type for item in batch].count("content-pipeline") == 3
    assert "seo-0" in [item.execution_id for item in batch]


def test_fairness_never_leaves_capacity_idle_with_one_type() -> None:
    views = [_view(f"content-{index}", workflow_type="content-pipeline") for index in range(5)]
    manager = _manager(views, fairness_share=0.2)

    batch = manager.next_batch(4)

    assert len(batch) == 4


def test_select_fair_keeps_rank_order() -> None:
    manager = _manager([])
    ranked = manager.rank(
        [
            _view("a1", priority=4, workflow_type="a"),
            _view("a2", priority=3, workflow_type="a"),
            _view("a3", priority=2, workflow_type="a"),
            _view("b1", priority=1, workflow_type="b"),
        ],
        now=START,
    )

    selected = select_fair(ranked, size=3, share=0.34)

    assert [item.execution_id for item in selected] == ["a1", "a2", "b1"]


def test_batch_size_grows_above_high_water_and_shrinks_below_low_water() -> None:
    manager = _manager([], default_batch_size=10, max_batch_size=50, high_water_mark=1000)

    assert manager.adapt_batch_size(500) == 10
    assert manager.adapt_batch_size(2500) == 30
    assert manager.adapt_batch_size(500) == 30
    assert manager.adapt_batch_size(100_000) == 50
    assert manager.adapt_batch_size(150) == 10


def test_next_batch_respects_max_size_and_batch_size() -> None:
    views = [_view(f"task-{index}") for index in range(20)]
    manager = _manager(views, default_batch_size=10)

    assert len(manager.next_batch(3)) == 3
    assert len(manager.next_batch(100)) == 10
    assert manager.next_batch(0) == []
