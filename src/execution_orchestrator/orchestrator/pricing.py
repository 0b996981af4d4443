"""Per-workflow cost estimates charged against the daily cost budget."""

from __future__ import annotations

DEFAULT_WORKFLOW_COSTS_USD: dict[str, float] = {
    "content-pipeline": 0.15,
    "seo-monitor": 0.05,
    "revenue-optimizer": 0.02,
    "intelligence-engine": 0.08,
}
FALLBACK_COST_USD = 0.10


def estimate_cost_usd(*, workflow_type: str, raw_mapping: str = "") -> float:
    """Estimate the cost of one dispatch of ``workflow_type`` in USD.

    Lookup order: exact entry from ``raw_mapping``, built-in default for the
    type, ``*`` entry from ``raw_mapping``, then :data:`FALLBACK_COST_USD`.
    """

    key = workflow_type.strip().lower()
    mapping = _parse_cost_mapping(raw_mapping)
    direct = mapping.get(key)
    if direct is not None:
        return direct

    builtin = DEFAULT_WORKFLOW_COSTS_USD.get(key)
    if builtin is not None:
        return builtin

    wildcard = mapping.get("*")
    if wildcard is not None:
        return wildcard
    return FALLBACK_COST_USD


def reported_cost_usd(metrics: dict[str, object]) -> float | None:
    """Extract the worker-reported cost from callback metrics, if usable."""

    value = metrics.get("cost_usd")
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if value < 0:
        return None
    return float(value)


def _parse_cost_mapping(raw: str) -> dict[str, float]:
    """Parse `EXEC_ORCH_WORKFLOW_COSTS` mapping.

    Format:
    - `workflow_type:cost_usd`
    - multiple entries separated by `,`
    - `*` matches any workflow type without a built-in estimate
    """

    parsed: dict[str, float] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 2:
            continue
        workflow_type, cost = parts
        try:
            cost_usd = float(cost)
        except ValueError:
            continue
        if cost_usd < 0:
            continue
        parsed[workflow_type.lower()] = cost_usd
    return parsed
