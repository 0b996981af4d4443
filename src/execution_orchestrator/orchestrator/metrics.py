"""Operator metrics derived from executions and attempt history."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass

from execution_orchestrator.orchestrator.models import (
    AttemptOutcome,
    ExecutionAttemptView,
    ExecutionStatus,
    ExecutionView,
)

PRIORITY_LABELS = {1: "low", 2: "normal", 3: "high", 4: "urgent"}


@dataclass(slots=True)
class LatencyPercentiles:
    """Dispatch-to-finish latency percentiles for one workflow type."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class OrchestratorMetricsSnapshot:
    """Aggregated metrics used by the stats command."""

    status_counts: dict[str, int]
    ready_by_priority: dict[str, int]
    window_attempt_count: int
    outcome_counts: dict[str, int]
    error_kind_counts: dict[str, int]
    success_rate: float | None
    retry_success_count: int
    latency_by_workflow_type: dict[str, LatencyPercentiles]
    estimated_cost_usd: float
    actual_cost_usd: float
    dead_letter_pending: int


def build_orchestrator_metrics(
    *,
    status_counts: dict[str, int],
    ready: list[ExecutionView],
    window_attempts: list[ExecutionAttemptView],
    dead_letter_pending: int,
) -> OrchestratorMetricsSnapshot:
    """Build one metrics snapshot from registry views."""

    ready_by_priority = Counter[str]()
    for execution in ready:
        ready_by_priority[PRIORITY_LABELS.get(execution.priority, str(execution.priority))] += 1

    outcome_counts = Counter[str]()
    error_kind_counts = Counter[str]()
    latency_values: dict[str, list[float]] = defaultdict(list)
    retry_success_count = 0
    estimated_cost = 0.0
    actual_cost = 0.0
    for attempt in window_attempts:
        outcome_counts[attempt.outcome.value] += 1
        if attempt.error_kind is not None:
            error_kind_counts[attempt.error_kind.value] += 1
        if attempt.outcome is AttemptOutcome.SUCCEEDED and attempt.attempt_no > 1:
            retry_success_count += 1
        if attempt.finished_at is not None:
            latency_values[attempt.workflow_type].append(
                max(0.0, (attempt.finished_at - attempt.dispatched_at).total_seconds()),
            )
        estimated_cost += attempt.estimated_cost_usd or 0.0
        actual_cost += (
            attempt.actual_cost_usd
            if attempt.actual_cost_usd is not None
            else attempt.estimated_cost_usd or 0.0
        )

    finished = sum(outcome_counts.values())
    latency_by_workflow_type = {
        workflow_type: LatencyPercentiles(
            sample_size=len(values),
            p50_seconds=_percentile(values, 0.50),
            p90_seconds=_percentile(values, 0.90),
            p99_seconds=_percentile(values, 0.99),
        )
        for workflow_type, values in sorted(latency_values.items())
    }
    return OrchestratorMetricsSnapshot(
        status_counts={
            status.value: status_counts.get(status.value, 0) for status in ExecutionStatus
        },
        ready_by_priority=dict(sorted(ready_by_priority.items())),
        window_attempt_count=len(window_attempts),
        outcome_counts=dict(sorted(outcome_counts.items())),
        error_kind_counts=dict(sorted(error_kind_counts.items())),
        success_rate=_safe_ratio(
            numerator=outcome_counts[AttemptOutcome.SUCCEEDED.value],
            denominator=finished,
        ),
        retry_success_count=retry_success_count,
        latency_by_workflow_type=latency_by_workflow_type,
        estimated_cost_usd=estimated_cost,
        actual_cost_usd=actual_cost,
        dead_letter_pending=dead_letter_pending,
    )


def render_stats_lines(*, snapshot: OrchestratorMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Execution orchestrator stats (window={hours}h)",
        "Status: " + _fmt_key_value(snapshot.status_counts),
        "Ready by priority: " + (_fmt_key_value(snapshot.ready_by_priority) or "none"),
        f"Finished attempts: {snapshot.window_attempt_count}",
        "Attempt outcomes: " + (_fmt_key_value(snapshot.outcome_counts) or "none"),
        "Error kinds: " + (_fmt_key_value(snapshot.error_kind_counts) or "none"),
        (
            f"Success rate: {_fmt_ratio(snapshot.success_rate)} "
            f"(succeeded after retry: {snapshot.retry_success_count})"
        ),
        (
            f"Cost: estimated=${snapshot.estimated_cost_usd:.4f} "
            f"actual=${snapshot.actual_cost_usd:.4f}"
        ),
        f"Dead letters awaiting action: {snapshot.dead_letter_pending}",
    ]
    if snapshot.latency_by_workflow_type:
        lines.append("Latency percentiles (dispatched_at -> finished_at):")
        for workflow_type, metrics in snapshot.latency_by_workflow_type.items():
            lines.append(
                "  "
                f"workflow_type={workflow_type} n={metrics.sample_size} "
                f"p50={metrics.p50_seconds:.2f}s "
                f"p90={metrics.p90_seconds:.2f}s "
                f"p99={metrics.p99_seconds:.2f}s",
            )
    else:
        lines.append("Latency percentiles: none")
    return lines


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
