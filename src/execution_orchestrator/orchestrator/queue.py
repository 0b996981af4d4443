"""Priority queue manager: scoring, fairness and adaptive batch sizing."""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from execution_orchestrator.config import QueueSettings
from execution_orchestrator.orchestrator.models import ExecutionView
from execution_orchestrator.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)


class ReadySource(Protocol):
    def list_ready(self, *, now: datetime) -> list[ExecutionView]: ...


@dataclass(slots=True, frozen=True)
class RankedExecution:
    """Ready execution with its computed priority score."""

    execution: ExecutionView
    score: float
    age_minutes: float
    boosted: bool

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id


def priority_score(*, priority: int, created_at: datetime, now: datetime) -> float:
    """Return ``priority * 10 + age_minutes``."""

    return priority * 10 + age_in_minutes(created_at=created_at, now=now)


def age_in_minutes(*, created_at: datetime, now: datetime) -> float:
    return max(0.0, (now - created_at).total_seconds() / 60.0)


class PriorityQueueManager:
    """Pick the next batch of ready executions for one tick."""

    def __init__(
        self,
        source: ReadySource,
        settings: QueueSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._source = source
        self._settings = settings
        self._clock = clock
        self._batch_size = settings.default_batch_size

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def adapt_batch_size(self, ready_count: int) -> int:
        """Grow above the high-water mark, shrink below the low-water mark."""

        settings = self._settings
        if ready_count > settings.high_water_mark:
            grown = settings.default_batch_size * (1 + ready_count // settings.high_water_mark)
            new_size = min(settings.max_batch_size, grown)
        elif ready_count < settings.low_water_mark:
            new_size = settings.default_batch_size
        else:
            new_size = self._batch_size
        if new_size != self._batch_size:
            logger.info(
                "Batch size changed %d -> %d (ready=%d)",
                self._batch_size,
                new_size,
                ready_count,
            )
            self._batch_size = new_size
        return self._batch_size

    def rank(self, executions: Sequence[ExecutionView], *, now: datetime) -> list[RankedExecution]:
        """Order executions by score, oldest first on ties."""

        ranked = []
        for execution in executions:
            age = age_in_minutes(created_at=execution.created_at, now=now)
            ranked.append(
                RankedExecution(
                    execution=execution,
                    score=execution.priority * 10 + age,
                    age_minutes=age,
                    boosted=age > self._settings.boost_after_minutes,
                ),
            )
        ranked.sort(key=lambda item: (-item.score, item.execution.created_at, item.execution_id))
        return ranked

    def next_batch(self, max_size: int, *, now: datetime | None = None) -> list[RankedExecution]:
        """Return up to ``min(max_size, batch_size)`` executions in dispatch order."""

        now = now or self._clock()
        ready = [
            execution
            for execution in self._source.list_ready(now=now)
            if execution.attempt_count < execution.max_attempts
        ]
        size = min(max_size, self.adapt_batch_size(len(ready)))
        if size <= 0 or not ready:
            return []

        ranked = self.rank(ready, now=now)
        boosted = [item for item in ranked if item.boosted]
        if boosted:
            logger.warning(
                "Starvation boost active for %d ready executions (oldest %.1f minutes)",
                len(boosted),
                max(item.age_minutes for item in boosted),
            )
        return select_fair(ranked, size=size, share=self._settings.fairness_share)


def select_fair(
    ranked: Sequence[RankedExecution],
    *,
    size: int,
    share: float,
) -> list[RankedExecution]:
    """Take ``size`` items in rank order, capping each workflow type per batch.

    Slots left unused by the cap are filled in a second pass, so a single
    waiting workflow type can still use the whole batch.
    """

    cap = max(1, math.ceil(size * share))
    per_type: Counter[str] = Counter()
    chosen: set[int] = set()
    for index, item in enumerate(ranked):
        if len(chosen) >= size:
            break
        workflow_type = item.execution.workflow_type
        if per_type[workflow_type] >= cap:
            continue
        per_type[workflow_type] += 1
        chosen.add(index)

    for index in range(len(ranked)):
        if len(chosen) >= size:
            break
        chosen.add(index)

    return [ranked[index] for index in sorted(chosen)]
