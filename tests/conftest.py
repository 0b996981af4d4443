"""Shared test fixtures."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.services import OrchestratorRuntime

START = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock shared by every component under test."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now


class WorkerStub:
    """httpx transport standing in for every worker endpoint."""

    def __init__(self) -> None:
        self.requests: list[dict[str, object]] = []
        self.status_code = 202
        self.error: Exception | None = None
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        with self._lock:
            self.requests.append({"url": str(request.url), "body": body})
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json={"accepted": self.status_code < 300})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def bodies(self) -> list[dict[str, object]]:
        with self._lock:
            return [dict(request["body"]) for request in self.requests]  # type: ignore[arg-type]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def worker() -> WorkerStub:
    return WorkerStub()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(db_path=tmp_path / "orchestrator.db")


@pytest.fixture()
def make_runtime(
    settings: Settings,
    clock: FakeClock,
    worker: WorkerStub,
) -> Iterator[Callable[..., OrchestratorRuntime]]:
    runtimes: list[OrchestratorRuntime] = []

    def _make(custom: Settings | None = None) -> OrchestratorRuntime:
        runtime = OrchestratorRuntime(
            custom or settings,
            clock=clock,
            transport=worker.transport(),
            random_fn=lambda: 0.5,
        )
        runtime.init_schema()
        runtimes.append(runtime)
        return runtime

    yield _make
    for runtime in runtimes:
        runtime.close()


@pytest.fixture()
def runtime(make_runtime: Callable[..., OrchestratorRuntime]) -> OrchestratorRuntime:
    return make_runtime()
