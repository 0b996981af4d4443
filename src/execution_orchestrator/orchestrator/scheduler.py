"""Scheduler loop: one tick of health, sweeps and dispatch on a fixed cadence."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.dispatcher import Dispatcher
from execution_orchestrator.orchestrator.errors import TransientDispatchError
from execution_orchestrator.orchestrator.governor import ResourceGovernor, ResourceKind
from execution_orchestrator.orchestrator.health import HealthMonitor
from execution_orchestrator.orchestrator.models import (
    AttemptOutcome,
    ExecutionStatus,
    ExecutionView,
)
from execution_orchestrator.orchestrator.queue import PriorityQueueManager
from execution_orchestrator.orchestrator.repository import ExecutionRegistry
from execution_orchestrator.orchestrator.state_machine import PAUSE_FLAG, StateMachineController
from execution_orchestrator.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickSummary:
    """Counters for one scheduler tick."""

    started_at: datetime
    health: str = "healthy"
    paused: bool = False
    dispatch_skipped: bool = False
    timed_out: int = 0
    retried: int = 0
    selected: int = 0
    dispatched: int = 0
    denied: int = 0
    degraded: bool = False


@dataclass(slots=True)
class LoopSummary:
    """Aggregate counters for a run of the scheduler loop."""

    ticks: int = 0
    dispatched: int = 0
    timed_out: int = 0
    retried: int = 0
    denied: int = 0


class Scheduler:
    """Drive the orchestrator one tick at a time.

    Phases run in order: health check, timeout sweep, retry sweep, then
    queue pull with admission and dispatch. When the health check is
    critical or dispatch is paused only the timeout sweep runs. Dispatch
    calls are submitted to a bounded thread pool so the tick never waits
    on a worker.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: ExecutionRegistry,
        governor: ResourceGovernor,
        queue: PriorityQueueManager,
        state_machine: StateMachineController,
        dispatcher: Dispatcher,
        health: HealthMonitor,
        settings: Settings,
        clock: Clock = utc_now,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._registry = registry
        self._governor = governor
        self._queue = queue
        self._state_machine = state_machine
        self._dispatcher = dispatcher
        self._health = health
        self._settings = settings
        self._clock = clock
        self._random = random_fn
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, settings.governor.concurrency_slots),
            thread_name_prefix="dispatch",
        )
        self._pending: set[Future[None]] = set()
        self._pending_lock = threading.Lock()
        self._degraded = False
        self._interval_multiplier = 1
        self._consecutive_denied_ticks = 0
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def consecutive_denied_ticks(self) -> int:
        return self._consecutive_denied_ticks

    def recover(self) -> int:
        """Reset orphaned ANALYZING rows and rebuild in-flight ceiling usage."""

        recovered = 0
        for execution in self._registry.list_by_status([ExecutionStatus.ANALYZING]):
            if self._state_machine.reset_orphan(execution):
                recovered += 1
        in_flight = self._state_machine.sync_ceilings()
        if recovered:
            logger.warning("Recovered %d executions stuck in ANALYZING", recovered)
        logger.info("Restored ceiling usage for %d in-flight executions", in_flight)
        return recovered

    def tick(self) -> TickSummary:
        """Run one scheduling tick."""

        summary = TickSummary(started_at=self._clock())

        report = self._health.check(consecutive_denied_ticks=self._consecutive_denied_ticks)
        paused = report.paused
        if report.critical and not paused:
            self._state_machine.pause(self._health.pause_reason(report))
            self._consecutive_denied_ticks = 0
            paused = True
        elif self._health.can_auto_resume(report):
            self._state_machine.resume(source="health_check")
            paused = False
        summary.health = report.status.value
        summary.paused = paused

        summary.timed_out = self.sweep_timeouts()
        if paused or report.critical:
            summary.dispatch_skipped = True
            logger.info("Tick dispatch skipped: health=%s paused=%s", summary.health, paused)
            return summary

        summary.retried = self.sweep_retries()
        self._dispatch_ready(summary)
        logger.info(
            "Tick finished: dispatched=%d denied=%d timed_out=%d retried=%d degraded=%s",
            summary.dispatched,
            summary.denied,
            summary.timed_out,
            summary.retried,
            summary.degraded,
        )
        return summary

    def sweep_timeouts(self) -> int:
        """Fail every in-flight execution past its deadline."""

        expired = 0
        for execution in self._registry.list_expired(now=self._clock()):
            if self._state_machine.expire(execution):
                expired += 1
        return expired

    def sweep_retries(self) -> int:
        """Move ERROR_RECOVERY executions whose backoff elapsed back to IDLE."""

        retried = 0
        for execution in self._registry.list_retry_due(now=self._clock()):
            if self._state_machine.retry(execution):
                retried += 1
        return retried

    def drain(self, timeout: float | None = None) -> None:
        """Wait for dispatch calls submitted so far."""

        with self._pending_lock:
            pending = set(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def next_interval(self) -> float:
        """Seconds until the next tick, stretched while cost-degraded."""

        scheduler = self._settings.scheduler
        interval = min(
            scheduler.tick_interval_seconds * self._interval_multiplier,
            scheduler.max_tick_interval_seconds,
        )
        if scheduler.tick_jitter_seconds > 0:
            interval += self._random() * scheduler.tick_jitter_seconds
        return interval

    def run_loop(self, *, max_ticks: int | None = None) -> LoopSummary:
        """Tick until stopped by a signal or ``max_ticks`` is reached."""

        aggregate = LoopSummary()
        self.recover()
        with self._signal_handlers():
            while not self._stop_requested:
                summary = self.tick()
                aggregate.ticks += 1
                aggregate.dispatched += summary.dispatched
                aggregate.timed_out += summary.timed_out
                aggregate.retried += summary.retried
                aggregate.denied += summary.denied
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                self._sleep_with_stop(self.next_interval())
        if self._stop_signal_name is not None:
            logger.info("Scheduler stopped by %s", self._stop_signal_name)
        self.drain()
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _dispatch_ready(self, summary: TickSummary) -> None:
        self._state_machine.sync_ceilings()
        free_slots = int(self._governor.available(ResourceKind.CONCURRENCY_SLOTS))
        max_size = free_slots
        if self._degraded and free_slots > 0:
            max_size = max(1, min(free_slots, self._queue.batch_size) // 2)

        tick_degraded = False
        batch = self._queue.next_batch(max_size) if max_size > 0 else []
        for ranked in batch:
            selected = self._state_machine.select(ranked.execution)
            if selected is None:
                continue
            summary.selected += 1
            result = self._state_machine.admit(selected)
            if result.admitted and result.execution is not None:
                summary.dispatched += 1
                self._submit(result.execution)
                continue
            summary.denied += 1
            tick_degraded = tick_degraded or result.degrade
            if result.reason == PAUSE_FLAG:
                break
            if (
                result.admission is not None
                and result.admission.denied_kind is ResourceKind.CONCURRENCY_SLOTS
            ):
                break

        if summary.denied and not summary.dispatched:
            self._consecutive_denied_ticks += 1
        else:
            self._consecutive_denied_ticks = 0

        summary.degraded = tick_degraded
        self._degraded = tick_degraded
        if tick_degraded:
            self._interval_multiplier = min(self._interval_multiplier * 2, 64)
            logger.warning("Daily cost budget exhausted; degrading batch size and tick interval")
        else:
            self._interval_multiplier = 1

    def _submit(self, execution: ExecutionView) -> None:
        future = self._executor.submit(self._dispatch_one, execution)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _dispatch_one(self, execution: ExecutionView) -> None:
        try:
            result = self._dispatcher.dispatch(execution)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Dispatch crashed for execution_id=%s", execution.execution_id)
            self._state_machine.fail(
                execution.execution_id,
                execution.attempt_count,
                TransientDispatchError(f"Dispatch crashed: {exc}"),
                outcome=AttemptOutcome.DISPATCH_FAILED,
            )
            return
        self._state_machine.on_dispatch_result(execution, result)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            self._stop_requested = True

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
