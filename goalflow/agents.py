"""
Agent execution contract and in-process agent implementations.

The engine only looks at timing and outcome. An agent returns an
``AgentResult``; raising is also fine, the exception is classified the same
way a reported error kind would be.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .domain import Task
from .errors import ErrorClass, ErrorClassification, classify_error, classify_exception


@dataclass(frozen=True)
class AgentError:
    kind: str
    message: str
    error_class: ErrorClass | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> AgentError:
        kind, classification = classify_exception(exc)
        return cls(kind=kind, message=str(exc) or type(exc).__name__, error_class=classification.error_class)

    @property
    def classification(self) -> ErrorClassification:
        found = classify_error(self.kind, self.message)
        if self.error_class is None or self.error_class == found.error_class:
            return found
        return ErrorClassification(self.error_class, found.category, found.severity)


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: Any = None
    error: AgentError | None = None
    # Work time reported by the agent; wall-clock time is used when absent.
    minutes: float | None = None

    @classmethod
    def ok(cls, output: Any = None, *, minutes: float | None = None) -> AgentResult:
        return cls(success=True, output=output, minutes=minutes)

    @classmethod
    def failed(cls, kind: str, message: str, *, minutes: float | None = None) -> AgentResult:
        return cls(success=False, error=AgentError(kind, message), minutes=minutes)


class Agent(Protocol):
    async def execute(self, task: Task) -> AgentResult: ...


@dataclass
class AgentSlot:
    """One agent instance. Holds at most one task at a time."""

    id: str
    agent_type: str
    agent: Agent
    current_task: str | None = field(default=None, init=False)
    completed: int = field(default=0, init=False)
    failed: int = field(default=0, init=False)

    @property
    def idle(self) -> bool:
        return self.current_task is None

    @classmethod
    def pool(cls, agent_type: str, agent: Agent, count: int = 1) -> list[AgentSlot]:
        return [cls(id=f"{agent_type}-{index + 1}", agent_type=str(agent_type), agent=agent) for index in range(count)]


class CallableAgent:
    """Adapts an ``async def fn(task) -> AgentResult | Any`` to the agent contract."""

    def __init__(self, fn: Callable[[Task], Awaitable[Any]]) -> None:
        self._fn = fn

    async def execute(self, task: Task) -> AgentResult:
        result = await self._fn(task)
        if isinstance(result, AgentResult):
            return result
        return AgentResult.ok(result)


TRANSIENT_KINDS = ("timeout", "network", "rate_limit", "unavailable")


class SimulatedAgent:
    """Sleeps in proportion to the task estimate and fails at a configured rate.

    ``seconds_per_minute`` scales estimated minutes to real sleep time. The
    reported work time is the estimate with +/-20% noise.
    """

    def __init__(
        self,
        *,
        failure_rate: float = 0.0,
        seconds_per_minute: float = 0.001,
        seed: int | None = None,
        failure_kinds: Iterable[str] = TRANSIENT_KINDS,
    ) -> None:
        self.failure_rate = failure_rate
        self.seconds_per_minute = seconds_per_minute
        self.failure_kinds = tuple(failure_kinds)
        self._random = random.Random(seed)

    async def execute(self, task: Task) -> AgentResult:
        minutes = task.estimated_minutes * self._random.uniform(0.8, 1.2)
        await asyncio.sleep(minutes * self.seconds_per_minute)
        if self._random.random() < self.failure_rate:
            kind = self._random.choice(self.failure_kinds)
            return AgentResult.failed(kind, f"simulated {kind} while running {task.id}", minutes=minutes)
        return AgentResult.ok({"task_id": task.id, "outputs": list(task.outputs)}, minutes=minutes)


def default_slots(agent_types: Iterable[str], agent: Agent, *, per_type: int = 1) -> list[AgentSlot]:
    """Slots for every agent type in ``agent_types``, all backed by ``agent``."""
    slots: list[AgentSlot] = []
    for agent_type in dict.fromkeys(str(a) for a in agent_types):
        slots.extend(AgentSlot.pool(agent_type, agent, per_type))
    return slots
