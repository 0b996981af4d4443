"""Health and anomaly detection run at the start of every tick."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from execution_orchestrator.config import HealthSettings
from execution_orchestrator.orchestrator.governor import ResourceGovernor, ResourceKind
from execution_orchestrator.orchestrator.models import AttemptOutcome
from execution_orchestrator.orchestrator.repository import ExecutionRegistry
from execution_orchestrator.orchestrator.state_machine import PAUSE_FLAG
from execution_orchestrator.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)

HEALTH_PAUSE_PREFIX = "health: "
COST_WARNING_SHARE = 0.9

_FAILED_OUTCOMES = frozenset(
    {
        AttemptOutcome.FAILED,
        AttemptOutcome.TIMED_OUT,
        AttemptOutcome.DISPATCH_FAILED,
        AttemptOutcome.REJECTED,
    },
)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True, frozen=True)
class HealthIssue:
    """One detected anomaly."""

    severity: HealthStatus
    code: str
    message: str


@dataclass(slots=True)
class HealthReport:
    """Result of one health check."""

    status: HealthStatus
    paused: bool
    pause_reason: str | None
    error_rate: float | None
    finished_attempts: int
    queue_depth: int
    daily_cost_used: float
    daily_cost_limit: float
    issues: list[HealthIssue] = field(default_factory=list)

    @property
    def critical(self) -> bool:
        return self.status is HealthStatus.CRITICAL

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "error_rate": self.error_rate,
            "finished_attempts": self.finished_attempts,
            "queue_depth": self.queue_depth,
            "daily_cost_used": self.daily_cost_used,
            "daily_cost_limit": self.daily_cost_limit,
            "issues": [
                {"severity": issue.severity.value, "code": issue.code, "message": issue.message}
                for issue in self.issues
            ],
        }


class HealthMonitor:
    """Detect error-rate spikes, queue backlog, cost pressure and sustained denials."""

    def __init__(
        self,
        *,
        registry: ExecutionRegistry,
        governor: ResourceGovernor,
        settings: HealthSettings,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._governor = governor
        self._settings = settings
        self._clock = clock

    def check(self, *, consecutive_denied_ticks: int = 0) -> HealthReport:
        now = self._clock()
        settings = self._settings
        issues: list[HealthIssue] = []

        since = now - timedelta(minutes=settings.error_rate_window_minutes)
        attempts = self._registry.list_attempts_finished_since(since=since)
        failed = sum(1 for attempt in attempts if attempt.outcome in _FAILED_OUTCOMES)
        error_rate = failed / len(attempts) if attempts else None
        if (
            error_rate is not None
            and len(attempts) >= settings.error_rate_min_samples
            and error_rate > settings.error_rate_critical
        ):
            issues.append(
                HealthIssue(
                    severity=HealthStatus.CRITICAL,
                    code="error_rate",
                    message=(
                        f"Error rate {error_rate:.1%} over the last "
                        f"{settings.error_rate_window_minutes} minutes "
                        f"({failed}/{len(attempts)} attempts)"
                    ),
                ),
            )

        if consecutive_denied_ticks >= settings.sustained_denial_ticks:
            issues.append(
                HealthIssue(
                    severity=HealthStatus.CRITICAL,
                    code="sustained_exhaustion",
                    message=(
                        f"Admission denied for {consecutive_denied_ticks} consecutive ticks"
                    ),
                ),
            )

        queue_depth = self._registry.count_ready(now=now)
        if queue_depth > settings.queue_depth_warning:
            issues.append(
                HealthIssue(
                    severity=HealthStatus.WARNING,
                    code="queue_depth",
                    message=f"{queue_depth} executions waiting",
                ),
            )

        cost = self._governor.snapshot()[ResourceKind.DAILY_COST_USD.value]
        cost_used = float(cost["used"])
        cost_limit = float(cost["limit"])
        if cost_limit > 0 and cost_used >= cost_limit * COST_WARNING_SHARE:
            issues.append(
                HealthIssue(
                    severity=HealthStatus.WARNING,
                    code="daily_cost",
                    message=f"Daily cost ${cost_used:.2f} of ${cost_limit:.2f} used",
                ),
            )

        flag = self._registry.get_flag(PAUSE_FLAG)
        if any(issue.severity is HealthStatus.CRITICAL for issue in issues):
            status = HealthStatus.CRITICAL
        elif issues:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        for issue in issues:
            log = logger.error if issue.severity is HealthStatus.CRITICAL else logger.warning
            log("Health issue %s: %s", issue.code, issue.message)

        return HealthReport(
            status=status,
            paused=flag is not None,
            pause_reason=flag[0] if flag is not None else None,
            error_rate=error_rate,
            finished_attempts=len(attempts),
            queue_depth=queue_depth,
            daily_cost_used=cost_used,
            daily_cost_limit=cost_limit,
            issues=issues,
        )

    def pause_reason(self, report: HealthReport) -> str:
        """Build the pause reason for a critical report."""

        critical = [
            issue.message for issue in report.issues if issue.severity is HealthStatus.CRITICAL
        ]
        return HEALTH_PAUSE_PREFIX + "; ".join(critical)

    def can_auto_resume(self, report: HealthReport) -> bool:
        """Health-triggered pauses clear themselves once the system is no longer critical."""

        return (
            self._settings.auto_resume
            and report.paused
            and not report.critical
            and (report.pause_reason or "").startswith(HEALTH_PAUSE_PREFIX)
        )
