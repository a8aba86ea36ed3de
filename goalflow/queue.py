"""Redis Streams transport for handing tasks to remote agent workers."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, cast

from .agents import AgentError, AgentResult
from .config import settings
from .domain import Task, TaskPriority, new_id
from .errors import ErrorClass
from .redis_client import get_redis_client

STREAM_PREFIX = "stream:tasks"
STREAM_PRIORITY = f"{STREAM_PREFIX}:priority"
RESULT_PREFIX = "result"


class QueueFullError(RuntimeError):
    """Raised when a Redis task stream reaches capacity."""


def stream_for_agent(agent_type: str) -> str:
    return f"{STREAM_PREFIX}:{agent_type}"


def result_key(job_id: str) -> str:
    return f"{RESULT_PREFIX}:{job_id}"


@dataclass(frozen=True)
class TaskJob:
    job_id: str
    task_id: str
    name: str
    agent_type: str
    task_type: str
    phase: str
    estimated_minutes: float
    priority: str = TaskPriority.MEDIUM.value
    description: str = ""
    plan_id: str = ""
    schema_version: str = "1.0"
    retry_count: int = 0

    @classmethod
    def from_task(cls, task: Task, *, plan_id: str = "") -> TaskJob:
        return cls(
            job_id=new_id(),
            task_id=task.id,
            name=task.name,
            agent_type=str(task.agent_type),
            task_type=str(task.task_type),
            phase=task.phase,
            estimated_minutes=task.estimated_minutes,
            priority=str(task.priority),
            description=task.description,
            plan_id=plan_id,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, str]) -> TaskJob:
        """Parse a stream entry; raises ``KeyError``/``ValueError`` for malformed payloads."""
        return cls(
            job_id=payload["job_id"],
            task_id=payload["task_id"],
            name=payload.get("name", payload["task_id"]),
            agent_type=payload["agent_type"],
            task_type=payload["task_type"],
            phase=payload.get("phase", ""),
            estimated_minutes=float(payload["estimated_minutes"]),
            priority=payload.get("priority", TaskPriority.MEDIUM.value),
            description=payload.get("description", ""),
            plan_id=payload.get("plan_id", ""),
            schema_version=payload.get("schema_version", "1.0"),
            retry_count=int(payload.get("retry_count", "0")),
        )

    def to_dict(self) -> dict[str, str]:
        payload: dict[str, str] = {
            "schema_version": str(self.schema_version),
            "job_id": str(self.job_id),
            "task_id": str(self.task_id),
            "name": str(self.name),
            "agent_type": str(self.agent_type),
            "task_type": str(self.task_type),
            "phase": str(self.phase),
            "estimated_minutes": str(self.estimated_minutes),
            "priority": str(self.priority),
            "retry_count": str(self.retry_count),
        }
        if self.description:
            payload["description"] = self.description
        if self.plan_id:
            payload["plan_id"] = self.plan_id
        return payload

    def to_task(self) -> Task:
        return Task(
            id=self.task_id,
            name=self.name,
            description=self.description,
            agent_type=self.agent_type,
            task_type=self.task_type,
            phase=self.phase,
            priority=TaskPriority(self.priority),
            estimated_minutes=self.estimated_minutes,
        )


def result_to_dict(result: AgentResult) -> dict[str, Any]:
    data: dict[str, Any] = {"success": result.success, "output": result.output, "minutes": result.minutes}
    if result.error is not None:
        data["error"] = {
            "kind": result.error.kind,
            "message": result.error.message,
            "error_class": result.error.error_class.value if result.error.error_class else None,
        }
    return data


def result_from_dict(data: dict[str, Any]) -> AgentResult:
    error = data.get("error")
    return AgentResult(
        success=bool(data["success"]),
        output=data.get("output"),
        minutes=data.get("minutes"),
        error=AgentError(
            kind=error["kind"],
            message=error["message"],
            error_class=ErrorClass(error["error_class"]) if error.get("error_class") else None,
        )
        if error
        else None,
    )


async def _ensure_capacity(stream: str) -> None:
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.redis_queue_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")


async def enqueue_task(job: TaskJob, *, priority: bool = False) -> str:
    """Enqueue a task job to Redis Streams."""
    stream = STREAM_PRIORITY if priority else stream_for_agent(job.agent_type)
    await _ensure_capacity(stream)

    redis = get_redis_client()
    return await redis.xadd(stream, cast(dict[Any, Any], job.to_dict()))


async def publish_result(job_id: str, result: AgentResult, *, ttl_seconds: int | None = None) -> None:
    redis = get_redis_client()
    await redis.set(
        result_key(job_id),
        json.dumps(result_to_dict(result), default=str),
        ex=ttl_seconds or settings.task_result_ttl_seconds,
    )


async def fetch_result(job_id: str) -> AgentResult | None:
    redis = get_redis_client()
    raw = await redis.getdel(result_key(job_id))
    if raw is None:
        return None
    return result_from_dict(json.loads(raw))


class RedisQueueAgent:
    """Agent that runs tasks on remote workers and polls for their results.

    Queue saturation is reported as a transient ``unavailable`` error so the
    engine retries with backoff.
    """

    def __init__(self, *, plan_id: str = "", poll_interval: float = 1.0, priority: bool = False) -> None:
        self.plan_id = plan_id
        self.poll_interval = poll_interval
        self.priority = priority

    async def execute(self, task: Task) -> AgentResult:
        job = TaskJob.from_task(task, plan_id=self.plan_id)
        try:
            await enqueue_task(job, priority=self.priority)
        except QueueFullError as exc:
            return AgentResult.failed("unavailable", str(exc))

        while True:
            result = await fetch_result(job.job_id)
            if result is not None:
                return result
            await asyncio.sleep(self.poll_interval)
