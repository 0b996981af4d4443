"""Use-case services and component wiring for the orchestrator."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from execution_orchestrator.config import Settings
from execution_orchestrator.orchestrator.callbacks import CallbackReceiver
from execution_orchestrator.orchestrator.dead_letter import DeadLetterHandler
from execution_orchestrator.orchestrator.dispatcher import Dispatcher
from execution_orchestrator.orchestrator.errors import ValidationError
from execution_orchestrator.orchestrator.governor import ResourceGovernor
from execution_orchestrator.orchestrator.health import HealthMonitor
from execution_orchestrator.orchestrator.models import ExecutionCreate, ExecutionView
from execution_orchestrator.orchestrator.queue import PriorityQueueManager
from execution_orchestrator.orchestrator.repository import ExecutionRegistry
from execution_orchestrator.orchestrator.routing import RoutingTable
from execution_orchestrator.orchestrator.scheduler import Scheduler
from execution_orchestrator.orchestrator.state_machine import StateMachineController
from execution_orchestrator.storage.common import Clock, utc_now

MIN_PRIORITY = 1
MAX_PRIORITY = 4


@dataclass(slots=True)
class EnqueueExecution:
    """High-level command to enqueue one execution."""

    workflow_type: str
    priority: int = 2
    context: dict[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None
    scheduled_at: datetime | None = None


class OrchestratorRuntime:
    """Builds and owns every orchestrator component for one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock = utc_now,
        transport: httpx.BaseTransport | None = None,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings
        self.registry = ExecutionRegistry(settings.db_path)
        self.routing = RoutingTable.from_settings(settings)
        self.governor = ResourceGovernor(
            settings.governor,
            usage_store=self.registry,
            clock=clock,
        )
        self.queue = PriorityQueueManager(self.registry, settings.queue, clock=clock)
        self.dead_letters = DeadLetterHandler(self.registry, clock=clock)
        self.state_machine = StateMachineController(
            registry=self.registry,
            governor=self.governor,
            routing=self.routing,
            dead_letters=self.dead_letters,
            settings=settings.scheduler,
            clock=clock,
            random_fn=random_fn,
        )
        self.dispatcher = Dispatcher(
            routing=self.routing,
            callback_address=settings.dispatch.callback_address,
            timeout_seconds=settings.dispatch.request_timeout_seconds,
            transport=transport,
        )
        self.health = HealthMonitor(
            registry=self.registry,
            governor=self.governor,
            settings=settings.health,
            clock=clock,
        )
        self.callbacks = CallbackReceiver(
            registry=self.registry,
            state_machine=self.state_machine,
        )
        self.scheduler = Scheduler(
            registry=self.registry,
            governor=self.governor,
            queue=self.queue,
            state_machine=self.state_machine,
            dispatcher=self.dispatcher,
            health=self.health,
            settings=settings,
            clock=clock,
            random_fn=random_fn,
        )
        self._clock = clock

    def init_schema(self) -> None:
        self.registry.init_schema()

    def enqueue(self, command: EnqueueExecution) -> ExecutionView:
        """Validate and persist a new execution in IDLE state."""

        route = self.routing.resolve(command.workflow_type)
        if not MIN_PRIORITY <= command.priority <= MAX_PRIORITY:
            raise ValidationError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, "
                f"got {command.priority}.",
            )
        if not isinstance(command.context, dict):
            raise ValidationError("context must be a JSON object.")
        max_attempts = (
            command.max_attempts
            if command.max_attempts is not None
            else self.settings.scheduler.max_attempts
        )
        if max_attempts <= 0:
            raise ValidationError("max_attempts must be > 0.")
        return self.registry.enqueue(
            ExecutionCreate(
                workflow_type=route.workflow_type,
                priority=command.priority,
                context=command.context,
                max_attempts=max_attempts,
                scheduled_at=command.scheduled_at,
            ),
            now=self._clock(),
        )

    def close(self) -> None:
        self.scheduler.close()
        self.dispatcher.close()
        self.registry.close()

    def __enter__(self) -> OrchestratorRuntime:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
