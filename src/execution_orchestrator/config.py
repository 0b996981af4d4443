"""Runtime configuration for the execution orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_WORKER_ENDPOINTS: dict[str, str] = {
    "content-pipeline": "http://localhost:8101/execute",
    "seo-monitor": "http://localhost:8102/execute",
    "revenue-optimizer": "http://localhost:8103/execute",
    "intelligence-engine": "http://localhost:8104/execute",
}


@dataclass(slots=True)
class GovernorSettings:
    """Resource budget limits."""

    gemini_rpm: int = 60
    openai_rpm: int = 50
    rate_window_seconds: int = 60
    daily_cost_usd: float = 300.0
    db_connections: int = 20
    memory_bytes: int = 2 * 1024 * 1024 * 1024
    concurrency_slots: int = 3


@dataclass(slots=True)
class QueueSettings:
    """Priority queue batching and fairness settings."""

    default_batch_size: int = 10
    max_batch_size: int = 50
    high_water_mark: int = 1_000
    low_water_mark: int = 200
    fairness_share: float = 0.5
    boost_after_minutes: int = 30


@dataclass(slots=True)
class SchedulerSettings:
    """Tick cadence and retry policy."""

    tick_interval_seconds: float = 300.0
    tick_jitter_seconds: float = 0.0
    max_tick_interval_seconds: float = 1_800.0
    execution_timeout_seconds: int = 300
    max_attempts: int = 3
    retry_base_seconds: int = 60
    retry_max_seconds: int = 900
    retry_jitter: bool = False


@dataclass(slots=True)
class DispatchSettings:
    """Outbound worker dispatch settings."""

    worker_endpoints: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_WORKER_ENDPOINTS),
    )
    callback_address: str = "http://localhost:8100/callbacks"
    request_timeout_seconds: float = 10.0
    workflow_costs: str = ""


@dataclass(slots=True)
class HealthSettings:
    """Anomaly detection thresholds."""

    error_rate_window_minutes: int = 60
    error_rate_critical: float = 0.10
    error_rate_min_samples: int = 10
    queue_depth_warning: int = 1_000
    sustained_denial_ticks: int = 6
    auto_resume: bool = True


@dataclass(slots=True)
class ApiSettings:
    """Callback receiver HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".execution_orchestrator.db")
    orchestrator_id: str = "orchestrator-1"
    governor: GovernorSettings = field(default_factory=GovernorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("EXEC_ORCH_DB_PATH", ".execution_orchestrator.db")),
            orchestrator_id=os.getenv("EXEC_ORCH_ORCHESTRATOR_ID", "orchestrator-1"),
            governor=GovernorSettings(
                gemini_rpm=int(os.getenv("EXEC_ORCH_GEMINI_RPM", "60")),
                openai_rpm=int(os.getenv("EXEC_ORCH_OPENAI_RPM", "50")),
                rate_window_seconds=int(os.getenv("EXEC_ORCH_RATE_WINDOW_SECONDS", "60")),
                daily_cost_usd=float(os.getenv("EXEC_ORCH_DAILY_COST_USD", "300.0")),
                db_connections=int(os.getenv("EXEC_ORCH_DB_CONNECTIONS", "20")),
                memory_bytes=int(
                    os.getenv("EXEC_ORCH_MEMORY_BYTES", str(2 * 1024 * 1024 * 1024)),
                ),
                concurrency_slots=int(os.getenv("EXEC_ORCH_CONCURRENCY_SLOTS", "3")),
            ),
            queue=QueueSettings(
                default_batch_size=int(os.getenv("EXEC_ORCH_BATCH_SIZE", "10")),
                max_batch_size=int(os.getenv("EXEC_ORCH_MAX_BATCH_SIZE", "50")),
                high_water_mark=int(os.getenv("EXEC_ORCH_QUEUE_HIGH_WATER", "1000")),
                low_water_mark=int(os.getenv("EXEC_ORCH_QUEUE_LOW_WATER", "200")),
                fairness_share=float(os.getenv("EXEC_ORCH_FAIRNESS_SHARE", "0.5")),
                boost_after_minutes=int(os.getenv("EXEC_ORCH_BOOST_AFTER_MINUTES", "30")),
            ),
            scheduler=SchedulerSettings(
                tick_interval_seconds=float(os.getenv("EXEC_ORCH_TICK_INTERVAL_SECONDS", "300")),
                tick_jitter_seconds=float(os.getenv("EXEC_ORCH_TICK_JITTER_SECONDS", "0")),
                max_tick_interval_seconds=float(
                    os.getenv("EXEC_ORCH_MAX_TICK_INTERVAL_SECONDS", "1800"),
                ),
                execution_timeout_seconds=int(
                    os.getenv("EXEC_ORCH_EXECUTION_TIMEOUT_SECONDS", "300"),
                ),
                max_attempts=int(os.getenv("EXEC_ORCH_MAX_ATTEMPTS", "3")),
                retry_base_seconds=int(os.getenv("EXEC_ORCH_RETRY_BASE_SECONDS", "60")),
                retry_max_seconds=int(os.getenv("EXEC_ORCH_RETRY_MAX_SECONDS", "900")),
                retry_jitter=_env_bool("EXEC_ORCH_RETRY_JITTER", default=False),
            ),
            dispatch=DispatchSettings(
                worker_endpoints=_collect_worker_endpoints(),
                callback_address=os.getenv(
                    "EXEC_ORCH_CALLBACK_ADDRESS",
                    "http://localhost:8100/callbacks",
                ),
                request_timeout_seconds=float(
                    os.getenv("EXEC_ORCH_DISPATCH_TIMEOUT_SECONDS", "10.0"),
                ),
                workflow_costs=os.getenv("EXEC_ORCH_WORKFLOW_COSTS", ""),
            ),
            health=HealthSettings(
                error_rate_window_minutes=int(
                    os.getenv("EXEC_ORCH_ERROR_RATE_WINDOW_MINUTES", "60"),
                ),
                error_rate_critical=float(os.getenv("EXEC_ORCH_ERROR_RATE_CRITICAL", "0.10")),
                error_rate_min_samples=int(os.getenv("EXEC_ORCH_ERROR_RATE_MIN_SAMPLES", "10")),
                queue_depth_warning=int(os.getenv("EXEC_ORCH_QUEUE_DEPTH_WARNING", "1000")),
                sustained_denial_ticks=int(os.getenv("EXEC_ORCH_SUSTAINED_DENIAL_TICKS", "6")),
                auto_resume=_env_bool("EXEC_ORCH_AUTO_RESUME", default=True),
            ),
            api=ApiSettings(
                host=os.getenv("EXEC_ORCH_API_HOST", "127.0.0.1"),
                port=int(os.getenv("EXEC_ORCH_API_PORT", "8100")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or endpoints are inconsistent."""

        if self.governor.concurrency_slots <= 0:
            raise ValueError("EXEC_ORCH_CONCURRENCY_SLOTS must be > 0.")
        if self.governor.daily_cost_usd < 0:
            raise ValueError("EXEC_ORCH_DAILY_COST_USD must be >= 0.")
        if self.governor.rate_window_seconds <= 0:
            raise ValueError("EXEC_ORCH_RATE_WINDOW_SECONDS must be > 0.")
        if self.queue.default_batch_size <= 0:
            raise ValueError("EXEC_ORCH_BATCH_SIZE must be > 0.")
        if self.queue.max_batch_size < self.queue.default_batch_size:
            raise ValueError("EXEC_ORCH_MAX_BATCH_SIZE must be >= EXEC_ORCH_BATCH_SIZE.")
        if self.queue.low_water_mark > self.queue.high_water_mark:
            raise ValueError("EXEC_ORCH_QUEUE_LOW_WATER must be <= EXEC_ORCH_QUEUE_HIGH_WATER.")
        if not 0.0 < self.queue.fairness_share <= 1.0:
            raise ValueError("EXEC_ORCH_FAIRNESS_SHARE must be in (0, 1].")
        if self.scheduler.max_attempts <= 0:
            raise ValueError("EXEC_ORCH_MAX_ATTEMPTS must be > 0.")
        if self.scheduler.tick_interval_seconds <= 0:
            raise ValueError("EXEC_ORCH_TICK_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.execution_timeout_seconds <= 0:
            raise ValueError("EXEC_ORCH_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if not self.dispatch.worker_endpoints:
            raise ValueError(
                "At least one worker endpoint is required. Set EXEC_ORCH_WORKER_ENDPOINTS.",
            )
        for workflow_type, endpoint in self.dispatch.worker_endpoints.items():
            _validate_http_url(endpoint, label=f"worker endpoint for {workflow_type!r}")
        _validate_http_url(self.dispatch.callback_address, label="callback address")


def _collect_worker_endpoints() -> dict[str, str]:
    raw = os.getenv("EXEC_ORCH_WORKER_ENDPOINTS", "").strip()
    if not raw:
        return dict(DEFAULT_WORKER_ENDPOINTS)

    endpoints: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid EXEC_ORCH_WORKER_ENDPOINTS entry: "
                f"{token!r}. Expected format '<workflow_type>=<url>'.",
            )
        workflow_type, endpoint = token.split("=", 1)
        workflow_type = workflow_type.strip().lower()
        endpoint = endpoint.strip()
        if not workflow_type:
            raise ValueError(f"Empty workflow type in EXEC_ORCH_WORKER_ENDPOINTS: {token!r}")
        _validate_http_url(endpoint, label=f"worker endpoint for {workflow_type!r}")
        endpoints[workflow_type] = endpoint
    return endpoints


def _validate_http_url(value: str, *, label: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {label}: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
