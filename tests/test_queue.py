"""Tests for the Redis stream transport and the task worker."""

import asyncio
from collections import defaultdict

import pytest
from redis.exceptions import RedisError

from goalflow import queue
from goalflow.agents import AgentResult, CallableAgent
from goalflow.domain import TaskPriority
from goalflow.errors import ErrorClass
from goalflow.queue import (
    RedisQueueAgent,
    TaskJob,
    result_from_dict,
    result_to_dict,
    stream_for_agent,
)
from goalflow.workers import base as worker_module
from goalflow.workers.base import JobMessage, TaskWorker


class FakeRedis:
    """Just enough of redis.asyncio.Redis for streams and result keys."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = defaultdict(list)
        self.values: dict[str, str] = {}
        self.acked: list[str] = []
        self.fail_results = False
        self.groups: list[tuple[str, str]] = []

    async def xlen(self, stream):
        return len(self.streams[stream])

    async def xadd(self, stream, fields):
        msg_id = f"{len(self.streams[stream]) + 1}-0"
        self.streams[stream].append((msg_id, dict(fields)))
        return msg_id

    async def set(self, key, value, nx=False, ex=None):
        if self.fail_results and key.startswith("result:"):
            raise RedisError("connection lost")
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def getdel(self, key):
        return self.values.pop(key, None)

    async def xack(self, stream, group, msg_id):
        self.acked.append(msg_id)
        return 1

    async def xgroup_create(self, stream, group, id="$", mkstream=False):
        self.groups.append((stream, group))
        return True


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(queue, "get_redis_client", lambda: fake)
    monkeypatch.setattr(worker_module, "get_redis_client", lambda: fake)
    return fake


@pytest.fixture
def job(make_task):
    task = make_task("api_controllers", 60, priority=TaskPriority.HIGH, phase="api")
    return TaskJob.from_task(task, plan_id="plan-1")


def message_for(job: TaskJob, **overrides) -> JobMessage:
    payload = job.to_dict()
    payload.update(overrides)
    return JobMessage(msg_id="1-0", stream=stream_for_agent(job.agent_type), payload=payload)


# =============================================================================
# Serialization
# =============================================================================


def test_job_payload_is_flat_strings(job) -> None:
    payload = job.to_dict()

    assert all(isinstance(v, str) for v in payload.values())
    assert payload["priority"] == "high"
    assert payload["plan_id"] == "plan-1"
    assert TaskJob.from_payload(payload) == job
    assert job.to_task().priority == TaskPriority.HIGH


def test_malformed_payloads_raise(job) -> None:
    payload = job.to_dict()
    del payload["task_id"]
    with pytest.raises(KeyError):
        TaskJob.from_payload(payload)

    with pytest.raises(ValueError):
        TaskJob.from_payload({**job.to_dict(), "estimated_minutes": "soon"})


def test_failed_result_keeps_error_class() -> None:
    result = AgentResult(success=False, minutes=3.5)
    failed = AgentResult.failed("security", "hardcoded secret")

    assert result_from_dict(result_to_dict(result)).error is None
    restored = result_from_dict(result_to_dict(failed))
    assert restored.error.kind == "security"
    assert restored.error.classification.error_class == ErrorClass.CONFLICT


# =============================================================================
# Agent and worker
# =============================================================================


@pytest.mark.asyncio
async def test_queue_agent_round_trip_through_worker(fake_redis, make_task) -> None:
    async def build(task):
        return {"built": task.id}

    worker = TaskWorker(agent_type="api", agent=CallableAgent(build))
    agent = RedisQueueAgent(plan_id="plan-1", poll_interval=0)
    stream = stream_for_agent("api")

    async def serve_one():
        while not fake_redis.streams[stream]:
            await asyncio.sleep(0)
        msg_id, payload = fake_redis.streams[stream][0]
        await worker.handle(JobMessage(msg_id=msg_id, stream=stream, payload=payload))

    result, _ = await asyncio.gather(agent.execute(make_task("api_controllers")), serve_one())

    assert result.success
    assert result.output == {"built": "api_controllers"}
    assert fake_redis.acked == ["1-0"]


@pytest.mark.asyncio
async def test_full_stream_is_reported_as_transient(fake_redis, monkeypatch, make_task) -> None:
    monkeypatch.setattr(queue.settings, "redis_queue_max_depth", 1)
    await fake_redis.xadd(stream_for_agent("api"), {"job_id": "existing"})

    result = await RedisQueueAgent(poll_interval=0).execute(make_task("api_controllers"))

    assert not result.success
    assert result.error.kind == "unavailable"
    assert result.error.classification.retryable


@pytest.mark.asyncio
async def test_worker_publishes_agent_failures(fake_redis, job) -> None:
    async def explode(task):
        raise RuntimeError("validation failed for request body")

    worker = TaskWorker(agent_type="api", agent=CallableAgent(explode))

    await worker.handle(message_for(job))

    published = await queue.fetch_result(job.job_id)
    assert not published.success
    assert published.error.error_class == ErrorClass.PERMANENT
    assert fake_redis.acked == ["1-0"]


@pytest.mark.asyncio
async def test_duplicate_delivery_is_processed_once(fake_redis, job) -> None:
    calls: list[str] = []

    async def record(task):
        calls.append(task.id)

    worker = TaskWorker(agent_type="api", agent=CallableAgent(record))

    await worker.handle(message_for(job))
    await worker.handle(message_for(job))

    assert calls == ["api_controllers"]
    assert fake_redis.acked == ["1-0", "1-0"]


@pytest.mark.asyncio
async def test_foreign_agent_type_is_skipped(fake_redis, job) -> None:
    calls: list[str] = []

    async def record(task):
        calls.append(task.id)

    worker = TaskWorker(agent_type="database", agent=CallableAgent(record))

    await worker.handle(message_for(job))

    assert calls == []
    assert fake_redis.acked == ["1-0"]


@pytest.mark.asyncio
async def test_malformed_job_goes_to_dead_letter(fake_redis, job) -> None:
    worker = TaskWorker(agent_type="api", agent=CallableAgent(lambda task: asyncio.sleep(0)))

    await worker.handle(message_for(job, estimated_minutes="soon"))

    [(_, dead)] = fake_redis.streams["stream:dlq:api"]
    assert dead["error"].startswith("malformed payload")
    assert fake_redis.acked == ["1-0"]


@pytest.mark.asyncio
async def test_unpublishable_result_is_requeued_then_dead_lettered(fake_redis, job) -> None:
    fake_redis.fail_results = True
    worker = TaskWorker(agent_type="api", agent=CallableAgent(lambda task: asyncio.sleep(0)))
    stream = stream_for_agent("api")

    await worker.handle(message_for(job))
    [(_, requeued)] = fake_redis.streams[stream]
    assert requeued["retry_count"] == "1"

    await worker.handle(message_for(job, retry_count="2"))
    [(_, dead)] = fake_redis.streams["stream:dlq:api"]
    assert dead["error"] == "connection lost"


@pytest.mark.asyncio
async def test_worker_closes_redis_pool_on_shutdown(fake_redis, monkeypatch) -> None:
    closed: list[bool] = []

    async def fake_close():
        closed.append(True)

    worker = TaskWorker(agent_type="api", agent=CallableAgent(lambda task: asyncio.sleep(0)))

    async def no_more_jobs():
        worker.shutdown_requested = True
        return None

    monkeypatch.setattr(worker_module, "close_redis", fake_close)
    monkeypatch.setattr(worker, "_install_signal_handlers", lambda: None)
    monkeypatch.setattr(worker, "_next_job", no_more_jobs)

    await worker.run_forever()

    assert fake_redis.groups == [(stream, "api-workers") for stream in worker.streams]
    assert closed == [True]
