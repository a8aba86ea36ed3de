"""Redis stream worker that executes queued tasks on a local agent."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any

import click
from redis.exceptions import RedisError, ResponseError
from rich.logging import RichHandler

from ..agents import Agent, AgentError, AgentResult, SimulatedAgent
from ..queue import STREAM_PRIORITY, TaskJob, publish_result, stream_for_agent
from ..redis_client import close_redis, get_redis_client

logger = logging.getLogger(__name__)

MAX_DELIVERIES = 3
IDEMPOTENCY_TTL_SECONDS = 3600


@dataclass
class JobMessage:
    msg_id: str
    stream: str
    payload: dict[str, Any]


class TaskWorker:
    """Consumes task jobs for one agent type.

    Agent failures are published as results so the engine owns retries.
    Jobs whose result cannot be published are requeued, and malformed or
    repeatedly undeliverable jobs go to ``stream:dlq:{agent_type}``.
    """

    def __init__(self, *, agent_type: str, agent: Agent, group: str | None = None) -> None:
        self.agent_type = agent_type
        self.agent = agent
        self.group = group or f"{agent_type}-workers"
        self.consumer = f"{agent_type}-{int(time.time())}"
        self.shutdown_requested = False

    @property
    def streams(self) -> list[str]:
        return [STREAM_PRIORITY, stream_for_agent(self.agent_type)]

    async def setup(self) -> None:
        redis = get_redis_client()
        for stream in self.streams:
            try:
                await redis.xgroup_create(stream, self.group, id="$", mkstream=True)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            logger.info("Received signal %d, finishing current job", signum)
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def _next_job(self) -> JobMessage | None:
        redis = get_redis_client()
        for stream in self.streams:
            result = await redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer,
                streams={stream: ">"},
                count=1,
                block=1000,
            )
            if result:
                stream_name, messages = result[0]
                msg_id, payload = messages[0]
                return JobMessage(msg_id=msg_id, stream=stream_name, payload=payload)
        return None

    async def _ack(self, job: JobMessage) -> None:
        redis = get_redis_client()
        await redis.xack(job.stream, self.group, job.msg_id)

    async def _to_dlq(self, job: JobMessage, error: str) -> None:
        redis = get_redis_client()
        payload = dict(job.payload)
        payload["error"] = error
        await redis.xadd(f"stream:dlq:{self.agent_type}", payload)
        await self._ack(job)
        logger.error("Job %s moved to dead-letter queue: %s", job.msg_id, error)

    async def _requeue(self, job: JobMessage, retry_count: int) -> None:
        redis = get_redis_client()
        payload = dict(job.payload)
        payload["retry_count"] = str(retry_count)
        await redis.xadd(job.stream, payload)
        await self._ack(job)

    async def _should_process(self, payload: dict[str, Any]) -> bool:
        job_id = payload.get("job_id")
        if not job_id or payload.get("agent_type") != self.agent_type:
            return False

        redis = get_redis_client()
        idem_key = f"idempotency:{job_id}:{payload.get('retry_count', '0')}"
        return await redis.set(idem_key, "1", nx=True, ex=IDEMPOTENCY_TTL_SECONDS) is True

    async def process(self, job: TaskJob) -> AgentResult:
        try:
            return await self.agent.execute(job.to_task())
        except Exception as exc:
            logger.warning("Agent raised on %s: %s", job.task_id, exc)
            return AgentResult(success=False, error=AgentError.from_exception(exc))

    async def handle(self, message: JobMessage) -> None:
        if not await self._should_process(message.payload):
            await self._ack(message)
            return

        try:
            job = TaskJob.from_payload(message.payload)
        except (KeyError, ValueError) as exc:
            await self._to_dlq(message, f"malformed payload: {exc}")
            return

        result = await self.process(job)
        try:
            await publish_result(job.job_id, result)
        except RedisError as exc:
            retry_count = job.retry_count + 1
            if retry_count >= MAX_DELIVERIES:
                await self._to_dlq(message, str(exc))
            else:
                await self._requeue(message, retry_count)
            return
        await self._ack(message)
        logger.info("Job %s (%s) finished, success=%s", job.job_id, job.task_id, result.success)

    async def run_forever(self) -> None:
        await self.setup()
        self._install_signal_handlers()
        logger.info("Worker %s consuming %s", self.consumer, ", ".join(self.streams))

        while not self.shutdown_requested:
            message = await self._next_job()
            if message:
                await self.handle(message)

        await close_redis()
        logger.info("Worker %s stopped", self.consumer)


@click.command()
@click.option("--agent-type", required=True, help="Agent type whose stream to consume")
@click.option("--group", default=None, help="Consumer group (default: <agent-type>-workers)")
@click.option("--failure-rate", default=0.0, show_default=True, help="Simulated failure rate")
@click.option("--seconds-per-minute", default=0.01, show_default=True, help="Simulated seconds per estimated minute")
def run_worker(agent_type: str, group: str | None, failure_rate: float, seconds_per_minute: float) -> None:
    """Run a worker that executes queued tasks with a simulated agent."""
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler()])
    agent = SimulatedAgent(failure_rate=failure_rate, seconds_per_minute=seconds_per_minute)
    worker = TaskWorker(agent_type=agent_type, agent=agent, group=group)
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    run_worker()
