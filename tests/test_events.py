import pytest

from goalflow.events import EventStream, EventType, OrchestratorEvent


def event(event_type: EventType, message: str = "") -> OrchestratorEvent:
    return OrchestratorEvent(type=event_type, plan_id="plan-1", message=message)


@pytest.mark.asyncio
async def test_subscribers_only_receive_requested_types() -> None:
    stream = EventStream()
    failures = stream.subscribe([EventType.TASK_FAILED])
    everything = stream.subscribe()

    await stream.emit(event(EventType.TASK_STARTED))
    await stream.emit(event(EventType.TASK_FAILED))

    assert failures.qsize() == 1
    assert (await failures.get()).type == EventType.TASK_FAILED
    assert everything.qsize() == 2


@pytest.mark.asyncio
async def test_full_queue_drops_oldest() -> None:
    stream = EventStream(queue_size=2)
    queue = stream.subscribe()

    for index in range(3):
        await stream.emit(event(EventType.TASK_STARTED, str(index)))

    assert [queue.get_nowait().message for _ in range(queue.qsize())] == ["1", "2"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_others() -> None:
    stream = EventStream()
    seen: list[str] = []

    def broken(evt):
        raise RuntimeError("handler bug")

    async def collect(evt):
        seen.append(evt.message)

    stream.on_event(broken)
    stream.on_event(collect)

    await stream.emit(event(EventType.PLAN_ADAPTED, "v2"))

    assert seen == ["v2"]


@pytest.mark.asyncio
async def test_unsubscribe_and_remove_handler() -> None:
    stream = EventStream()
    queue = stream.subscribe()
    seen: list = []
    stream.on_event(seen.append)

    stream.unsubscribe(queue)
    stream.remove_handler(seen.append)
    await stream.emit(event(EventType.WORKFLOW_STARTED))

    assert queue.empty()
    assert seen == []


def test_event_serializes() -> None:
    data = event(EventType.CONFLICT_DETECTED, "security finding").to_dict()

    assert data["type"] == "conflict_detected"
    assert data["plan_id"] == "plan-1"
    assert data["message"] == "security finding"
