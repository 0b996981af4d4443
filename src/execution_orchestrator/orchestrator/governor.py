"""Resource governor: shared budgets for API quotas, cost and capacity."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Protocol

from execution_orchestrator.config import GovernorSettings
from execution_orchestrator.storage.common import Clock, utc_day, utc_now

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class ResourceKind(str, Enum):
    """Budgeted resource kinds."""

    GEMINI_RPM = "gemini_rpm"
    OPENAI_RPM = "openai_rpm"
    DAILY_COST_USD = "daily_cost_usd"
    DB_CONNECTIONS = "db_connections"
    MEMORY_BYTES = "memory_bytes"
    CONCURRENCY_SLOTS = "concurrency_slots"


class BudgetWindow(str, Enum):
    """How a budget's usage is measured."""

    RATE = "rate"
    DAILY = "daily"
    CEILING = "ceiling"


@dataclass(slots=True)
class ResourceBudget:
    """One resource budget with its current usage."""

    kind: ResourceKind
    limit: float
    window: BudgetWindow
    current_usage: float = 0.0


@dataclass(slots=True, frozen=True)
class Admission:
    """Result of an admission check."""

    admitted: bool
    reason: str | None = None
    degrade: bool = False
    denied_kind: ResourceKind | None = None


class UsageStore(Protocol):
    """Persistence for daily usage counters shared by every process."""

    def load_daily_usage(self, *, usage_date: date, kind: str) -> float: ...

    def add_daily_usage(
        self,
        *,
        usage_date: date,
        kind: str,
        delta: float,
        now: datetime | None = None,
    ) -> float: ...


Requirements = Mapping[ResourceKind, float]


class ResourceGovernor:
    """Meter and admit work against shared resource budgets.

    Rate budgets keep a sliding log of commit timestamps, the daily cost
    budget resets at UTC midnight and, when a ``usage_store`` is given, lives
    in the store: it is re-read before every check and written as an
    increment so processes sharing the store never overwrite each other.
    Ceiling budgets are explicit commit/release pairs, re-synced from the
    registry with :meth:`sync_in_flight`. All counters are guarded by one
    lock that is never held while task state is written.
    """

    def __init__(
        self,
        settings: GovernorSettings,
        *,
        usage_store: UsageStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._usage_store = usage_store
        self._clock = clock
        self._lock = threading.Lock()
        self._window = timedelta(seconds=settings.rate_window_seconds)
        self._budgets: dict[ResourceKind, ResourceBudget] = {
            ResourceKind.GEMINI_RPM: ResourceBudget(
                ResourceKind.GEMINI_RPM,
                float(settings.gemini_rpm),
                BudgetWindow.RATE,
            ),
            ResourceKind.OPENAI_RPM: ResourceBudget(
                ResourceKind.OPENAI_RPM,
                float(settings.openai_rpm),
                BudgetWindow.RATE,
            ),
            ResourceKind.DAILY_COST_USD: ResourceBudget(
                ResourceKind.DAILY_COST_USD,
                float(settings.daily_cost_usd),
                BudgetWindow.DAILY,
            ),
            ResourceKind.DB_CONNECTIONS: ResourceBudget(
                ResourceKind.DB_CONNECTIONS,
                float(settings.db_connections),
                BudgetWindow.CEILING,
            ),
            ResourceKind.MEMORY_BYTES: ResourceBudget(
                ResourceKind.MEMORY_BYTES,
                float(settings.memory_bytes),
                BudgetWindow.CEILING,
            ),
            ResourceKind.CONCURRENCY_SLOTS: ResourceBudget(
                ResourceKind.CONCURRENCY_SLOTS,
                float(settings.concurrency_slots),
                BudgetWindow.CEILING,
            ),
        }
        self._rate_log: dict[ResourceKind, deque[tuple[datetime, float]]] = {
            kind: deque()
            for kind, budget in self._budgets.items()
            if budget.window is BudgetWindow.RATE
        }
        self._daily_date: date | None = None
        self.denial_count = 0

    def admit(self, required: Requirements) -> Admission:
        """Check whether ``required`` fits every budget without consuming anything."""

        with self._lock:
            return self._admit_locked(required, now=self._clock())

    def commit(self, kind: ResourceKind, amount: float) -> None:
        """Consume ``amount`` of one budget."""

        with self._lock:
            self._commit_locked(kind, amount, now=self._clock())

    def release(self, kind: ResourceKind, amount: float) -> None:
        """Return ``amount`` of a ceiling budget."""

        budget = self._budgets[kind]
        if budget.window is not BudgetWindow.CEILING:
            raise ValueError(f"Only ceiling budgets can be released, got {kind.value!r}.")
        with self._lock:
            budget.current_usage = max(0.0, budget.current_usage - amount)

    def try_acquire(self, required: Requirements) -> Admission:
        """Admit and commit ``required`` atomically."""

        with self._lock:
            now = self._clock()
            admission = self._admit_locked(required, now=now)
            if admission.admitted:
                for kind, amount in required.items():
                    self._commit_locked(kind, amount, now=now)
            return admission

    def release_all(self, required: Requirements) -> None:
        """Release every ceiling budget named in ``required``."""

        with self._lock:
            for kind, amount in required.items():
                budget = self._budgets[kind]
                if budget.window is BudgetWindow.CEILING:
                    budget.current_usage = max(0.0, budget.current_usage - amount)

    def adjust(self, kind: ResourceKind, delta: float) -> None:
        """Correct daily usage by ``delta`` (actual minus estimated cost)."""

        budget = self._budgets[kind]
        if budget.window is not BudgetWindow.DAILY:
            raise ValueError(f"Only daily budgets can be adjusted, got {kind.value!r}.")
        with self._lock:
            self._add_daily_locked(budget, delta, now=self._clock())

    def available(self, kind: ResourceKind) -> float:
        """Return remaining capacity of one budget."""

        with self._lock:
            used = self._used_locked(kind, now=self._clock())
            return max(0.0, self._budgets[kind].limit - used)

    def sync_in_flight(self, requirements: Iterable[Requirements]) -> int:
        """Replace ceiling usage with the sum of ``requirements``.

        Each item is what one in-flight execution holds. Returns the number
        of executions counted.
        """

        with self._lock:
            for budget in self._budgets.values():
                if budget.window is BudgetWindow.CEILING:
                    budget.current_usage = 0.0
            synced = 0
            for required in requirements:
                synced += 1
                for kind, amount in required.items():
                    budget = self._budgets[kind]
                    if budget.window is BudgetWindow.CEILING:
                        budget.current_usage += amount
        logger.debug("Synced ceiling usage for %d in-flight executions", synced)
        return synced

    def snapshot(self) -> dict[str, dict[str, float | str]]:
        """Return ``{kind: {used, limit, window}}`` for every budget."""

        with self._lock:
            now = self._clock()
            return {
                kind.value: {
                    "used": self._used_locked(kind, now=now),
                    "limit": budget.limit,
                    "window": budget.window.value,
                }
                for kind, budget in self._budgets.items()
            }

    def _admit_locked(self, required: Requirements, *, now: datetime) -> Admission:
        for kind, amount in required.items():
            if amount <= 0:
                continue
            budget = self._budgets[kind]
            used = self._used_locked(kind, now=now)
            if used + amount > budget.limit + _EPSILON:
                self.denial_count += 1
                degrade = budget.window is BudgetWindow.DAILY
                reason = (
                    f"{kind.value} exhausted: used={used:g} limit={budget.limit:g} "
                    f"requested={amount:g}"
                )
                logger.info("Admission denied: %s", reason)
                return Admission(admitted=False, reason=reason, degrade=degrade, denied_kind=kind)
        return Admission(admitted=True)

    def _commit_locked(self, kind: ResourceKind, amount: float, *, now: datetime) -> None:
        if amount <= 0:
            return
        budget = self._budgets[kind]
        if budget.window is BudgetWindow.RATE:
            self._prune_rate_locked(kind, now=now)
            self._rate_log[kind].append((now, amount))
            budget.current_usage += amount
        elif budget.window is BudgetWindow.DAILY:
            self._add_daily_locked(budget, amount, now=now)
        else:
            budget.current_usage += amount

    def _used_locked(self, kind: ResourceKind, *, now: datetime) -> float:
        budget = self._budgets[kind]
        if budget.window is BudgetWindow.RATE:
            self._prune_rate_locked(kind, now=now)
        elif budget.window is BudgetWindow.DAILY:
            today = self._roll_daily_locked(now)
            if self._usage_store is not None:
                budget.current_usage = self._usage_store.load_daily_usage(
                    usage_date=today,
                    kind=budget.kind.value,
                )
        return budget.current_usage

    def _prune_rate_locked(self, kind: ResourceKind, *, now: datetime) -> None:
        log = self._rate_log[kind]
        budget = self._budgets[kind]
        cutoff = now - self._window
        while log and log[0][0] <= cutoff:
            _, amount = log.popleft()
            budget.current_usage = max(0.0, budget.current_usage - amount)

    def _roll_daily_locked(self, now: datetime) -> date:
        today = utc_day(now)
        if self._daily_date != today:
            self._daily_date = today
            for budget in self._budgets.values():
                if budget.window is BudgetWindow.DAILY:
                    budget.current_usage = 0.0
        return today

    def _add_daily_locked(self, budget: ResourceBudget, delta: float, *, now: datetime) -> None:
        today = self._roll_daily_locked(now)
        if self._usage_store is None:
            budget.current_usage = max(0.0, budget.current_usage + delta)
            return
        budget.current_usage = self._usage_store.add_daily_usage(
            usage_date=today,
            kind=budget.kind.value,
            delta=delta,
            now=now,
        )
