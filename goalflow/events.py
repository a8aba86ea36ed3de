"""
Typed lifecycle event stream for orchestration runs.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from .domain import new_id, utcnow

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_RETRYING = "task_retrying"
    TASK_BLOCKED = "task_blocked"

    CONFLICT_DETECTED = "conflict_detected"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_COMPLETED = "workflow_completed"
    PLAN_ADAPTED = "plan_adapted"
    PLAN_AT_RISK = "plan_at_risk"

    RECOMMENDATION_AVAILABLE = "recommendation_available"
    AGENT_SWITCHED = "agent_switched"


@dataclass(frozen=True)
class OrchestratorEvent:
    """One lifecycle notification; carries enough context to render without querying the engine."""

    type: EventType
    plan_id: str
    message: str = ""
    task_id: str | None = None
    agent: str | None = None
    run_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "plan_id": self.plan_id,
            "run_id": self.run_id,
            "task_id": self.task_id,
            "agent": self.agent,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[OrchestratorEvent], Awaitable[None] | None]


class EventStream:
    """Fan-out of events to queue subscribers and callback handlers.

    Subscriber queues are bounded; when one is full its oldest event is dropped.
    A failing handler is logged and never interrupts the emitter.
    """

    def __init__(self, *, queue_size: int = 1000) -> None:
        self._handlers: list[EventHandler] = []
        self._subscribers: list[tuple[asyncio.Queue[OrchestratorEvent], frozenset[EventType] | None]] = []
        self._queue_size = queue_size

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def subscribe(self, types: Iterable[EventType] | None = None) -> asyncio.Queue[OrchestratorEvent]:
        queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append((queue, frozenset(types) if types is not None else None))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[OrchestratorEvent]) -> None:
        self._subscribers = [(q, t) for q, t in self._subscribers if q is not queue]

    async def emit(self, event: OrchestratorEvent) -> OrchestratorEvent:
        for queue, types in self._subscribers:
            if types is not None and event.type not in types:
                continue
            if queue.full():
                queue.get_nowait()
                logger.warning("Event subscriber queue full, dropped oldest event")
            queue.put_nowait(event)

        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type.value)
        return event


async def persist_event_handler(event: OrchestratorEvent) -> None:
    """Handler that writes events to the ``event_log`` table."""
    from .db import get_session, log_event

    async with get_session() as session:
        await log_event(
            session,
            plan_id=event.plan_id,
            event=event.type.value,
            task_id=event.task_id,
            agent=event.agent,
            message=event.message,
            details=event.data,
        )


async def publish_event_handler(event: OrchestratorEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub on ``channel:plan:{plan_id}``."""
    from .redis_client import get_redis_client

    try:
        redis = get_redis_client()
        await redis.publish(f"channel:plan:{event.plan_id}", json.dumps(event.to_dict()))
    except Exception as exc:
        logger.warning("Redis publish failed: %s", exc)


def install_handlers(stream: EventStream, *, persist: bool = False, publish: bool = False) -> None:
    if persist:
        stream.on_event(persist_event_handler)
    if publish:
        stream.on_event(publish_event_handler)
