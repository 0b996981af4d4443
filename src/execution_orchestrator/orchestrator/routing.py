"""Workflow routing table: endpoint and resource footprint per workflow type."""

from __future__ import annotations

from dataclasses import dataclass, field

from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.errors import ValidationError
from execution_orchestrator.orchestrator.governor import ResourceKind
from execution_orchestrator.orchestrator.pricing import estimate_cost_usd

MIB = 1024 * 1024

DEFAULT_ROUTE_RESOURCES: dict[str, dict[ResourceKind, float]] = {
    "content-pipeline": {ResourceKind.GEMINI_RPM: 1},
    "seo-monitor": {ResourceKind.DB_CONNECTIONS: 1},
    "revenue-optimizer": {ResourceKind.MEMORY_BYTES: 256 * MIB},
    "intelligence-engine": {ResourceKind.OPENAI_RPM: 1, ResourceKind.DB_CONNECTIONS: 1},
}


@dataclass(slots=True)
class WorkflowRoute:
    """Resolved dispatch target for one workflow type."""

    workflow_type: str
    endpoint: str
    estimated_cost_usd: float
    resources: dict[ResourceKind, float] = field(default_factory=dict)

    def requirements(self) -> dict[ResourceKind, float]:
        """Budget amounts one dispatch of this workflow consumes."""

        required: dict[ResourceKind, float] = {
            ResourceKind.CONCURRENCY_SLOTS: 1,
            ResourceKind.DAILY_COST_USD: self.estimated_cost_usd,
        }
        required.update(self.resources)
        return required


class RoutingTable:
    """Lookup of workflow routes built from settings."""

    def __init__(self, routes: dict[str, WorkflowRoute], *, workflow_costs: str = "") -> None:
        self._routes = routes
        self._workflow_costs = workflow_costs

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingTable:
        """Build routes for every configured worker endpoint."""

        costs = settings.dispatch.workflow_costs
        routes = {
            workflow_type: WorkflowRoute(
                workflow_type=workflow_type,
                endpoint=endpoint,
                estimated_cost_usd=estimate_cost_usd(
                    workflow_type=workflow_type,
                    raw_mapping=costs,
                ),
                resources=dict(DEFAULT_ROUTE_RESOURCES.get(workflow_type, {})),
            )
            for workflow_type, endpoint in settings.dispatch.worker_endpoints.items()
        }
        return cls(routes, workflow_costs=costs)

    def workflow_types(self) -> list[str]:
        return sorted(self._routes)

    def get(self, workflow_type: str) -> WorkflowRoute | None:
        return self._routes.get(_normalize(workflow_type))

    def resolve(self, workflow_type: str) -> WorkflowRoute:
        """Return the route or raise ValidationError for unknown types."""

        route = self.get(workflow_type)
        if route is None:
            known = ", ".join(self.workflow_types()) or "<none>"
            raise ValidationError(
                f"Unknown workflow_type {workflow_type!r}. Known types: {known}.",
            )
        return route

    def requirements_for(self, workflow_type: str) -> dict[ResourceKind, float]:
        """Requirements of a route, or the bare slot and cost for unknown types."""

        route = self.get(workflow_type)
        if route is not None:
            return route.requirements()
        return {
            ResourceKind.CONCURRENCY_SLOTS: 1,
            ResourceKind.DAILY_COST_USD: estimate_cost_usd(
                workflow_type=workflow_type,
                raw_mapping=self._workflow_costs,
            ),
        }


def _normalize(workflow_type: str) -> str:
    return workflow_type.strip().lower()
