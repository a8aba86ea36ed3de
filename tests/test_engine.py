"""Tests for the orchestration loop: retries, concurrency, conflicts and adaptation."""

import asyncio

import pytest

from goalflow.agents import AgentResult, AgentSlot, CallableAgent
from goalflow.domain import Lesson, LessonType, PlanStatus, TaskStatus, lesson_signature
from goalflow.engine import OrchestratorEngine
from goalflow.errors import ConflictSignal
from goalflow.events import EventStream, EventType
from goalflow.optimizer import AdaptationTrigger


class ConcurrencyTracker:
    """Agent callable that records which tasks overlap in time."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.active: set[str] = set()
        self.max_active = 0
        self.overlaps: list[frozenset[str]] = []
        self.calls: list[str] = []

    async def __call__(self, task):
        self.calls.append(task.id)
        self.active.add(task.id)
        self.max_active = max(self.max_active, len(self.active))
        self.overlaps.append(frozenset(self.active))
        await asyncio.sleep(self.delay)
        self.active.discard(task.id)
        return {"task_id": task.id}


def recorder(stream: EventStream) -> list:
    seen: list = []
    stream.on_event(seen.append)
    return seen


# =============================================================================
# Retries and failures
# =============================================================================


@pytest.mark.asyncio
async def test_transient_failures_exhaust_retries_and_put_plan_at_risk(
    make_task, make_plan, fast_config, no_delay_retry, learning
) -> None:
    async def always_times_out(task):
        return AgentResult.failed("timeout", "upstream timed out")

    plan = make_plan([make_task("deploy", 30)])
    events = EventStream()
    seen = recorder(events)
    engine = OrchestratorEngine(
        plan,
        AgentSlot.pool("api", CallableAgent(always_times_out)),
        config=fast_config,
        retry_policy=no_delay_retry,
        learning=learning,
        events=events,
    )

    report = await engine.run()

    assert report.status == PlanStatus.AT_RISK
    assert report.failed == ("deploy",)
    assert report.attempts == 4
    assert engine.tasks["deploy"].retry_count == 3
    assert "failed after 4 attempts" in engine.tasks["deploy"].error_message

    types = [e.type for e in seen]
    assert types.count(EventType.TASK_RETRYING) == 3
    assert types.count(EventType.TASK_STARTED) == 4
    assert EventType.TASK_FAILED in types
    assert EventType.PLAN_AT_RISK in types


@pytest.mark.asyncio
async def test_every_attempt_is_recorded_and_sealed(
    make_task, make_plan, fast_config, no_delay_retry, learning
) -> None:
    async def always_times_out(task):
        return AgentResult.failed("timeout", "upstream timed out")

    plan = make_plan([make_task("deploy", 30)])
    engine = OrchestratorEngine(
        plan,
        AgentSlot.pool("api", CallableAgent(always_times_out)),
        config=fast_config,
        retry_policy=no_delay_retry,
        learning=learning,
    )

    report = await engine.run()

    records = learning.records
    assert len(records) == report.attempts == 4
    assert all(r.sealed for r in records)
    assert [r.retry_count for r in records] == [0, 1, 2, 3]
    assert learning.learning_stats()["open_records"] == 0


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(make_task, make_plan, fast_config, no_delay_retry) -> None:
    async def invalid(task):
        return AgentResult.failed("validation", "schema rejected payload")

    engine = OrchestratorEngine(
        make_plan([make_task("only", 10)]),
        AgentSlot.pool("api", CallableAgent(invalid)),
        config=fast_config,
        retry_policy=no_delay_retry,
    )

    report = await engine.run()

    assert report.attempts == 1
    assert engine.tasks["only"].error_message == "schema rejected payload"


@pytest.mark.asyncio
async def test_raised_exceptions_are_classified(make_task, make_plan, fast_config, no_delay_retry) -> None:
    calls = {"n": 0}

    async def flaky(task):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionResetError("peer reset")
        return "ok"

    engine = OrchestratorEngine(
        make_plan([make_task("only", 10)]),
        AgentSlot.pool("api", CallableAgent(flaky)),
        config=fast_config,
        retry_policy=no_delay_retry,
    )

    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert report.attempts == 2
    assert engine.tasks["only"].output == "ok"


@pytest.mark.asyncio
async def test_soft_dependent_proceeds_after_non_critical_failure(
    make_task, make_plan, fast_config, no_delay_retry
) -> None:
    tasks = [
        make_task("root", 30),
        make_task("lint", 10, deps=["root"]),
        make_task("build", 60, deps=["root"]),
        make_task("report", 5, deps=["build"], soft=["lint"]),
        make_task("fix_lint", 5, deps=["lint"]),
    ]

    async def lint_fails(task):
        if task.id == "lint":
            return AgentResult.failed("validation", "lint rules violated")
        return None

    plan = make_plan(tasks)
    assert not plan.graph.is_critical("lint")
    engine = OrchestratorEngine(
        plan,
        AgentSlot.pool("api", CallableAgent(lint_fails), count=2),
        config=fast_config,
        retry_policy=no_delay_retry,
    )

    report = await engine.run()

    assert engine.status_of("lint") == TaskStatus.FAILED
    assert engine.status_of("report") == TaskStatus.COMPLETED
    assert engine.status_of("fix_lint") == TaskStatus.BLOCKED
    assert engine.tasks["fix_lint"].blocked_by == "lint"
    assert report.status == PlanStatus.BLOCKED
    assert report.adaptations[0].trigger == AdaptationTrigger.TASK_FAILURE
    assert engine.plan.task("lint").status == TaskStatus.SKIPPED


@pytest.mark.asyncio
async def test_task_without_registered_agent_is_blocked(make_task, make_plan, fast_config) -> None:
    tasks = [make_task("docs", agent_type="documentation"), make_task("api", 10)]
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(ConcurrencyTracker())),
        config=fast_config,
    )

    report = await engine.run()

    assert engine.status_of("docs") == TaskStatus.BLOCKED
    assert engine.status_of("api") == TaskStatus.COMPLETED
    assert report.blocking[0].reason == "no agent registered for type documentation"


# =============================================================================
# Concurrency
# =============================================================================


@pytest.mark.asyncio
async def test_a_slot_holds_one_task_at_a_time(make_task, make_plan, fast_config) -> None:
    tracker = ConcurrencyTracker()
    tasks = [make_task(f"t{i}", 10) for i in range(3)]
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(tracker), count=1),
        config=fast_config,
    )

    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert tracker.max_active == 1
    assert sorted(tracker.calls) == ["t0", "t1", "t2"]


@pytest.mark.asyncio
async def test_width_limits_concurrent_tasks(make_task, make_plan, fast_config) -> None:
    tracker = ConcurrencyTracker()
    tasks = [make_task(f"t{i}", 10) for i in range(5)]
    engine = OrchestratorEngine(
        make_plan(tasks, max_parallel=2),
        AgentSlot.pool("api", CallableAgent(tracker), count=5),
        config=fast_config,
    )

    await engine.run()

    assert tracker.max_active == 2


@pytest.mark.asyncio
async def test_non_parallel_task_runs_alone(make_task, make_plan, fast_config) -> None:
    tracker = ConcurrencyTracker()
    tasks = [
        make_task("exclusive", 10, parallel_eligible=False),
        make_task("b", 10),
        make_task("c", 10),
    ]
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(tracker), count=3),
        config=fast_config,
    )

    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert all(o == {"exclusive"} for o in tracker.overlaps if "exclusive" in o)
    assert tracker.max_active == 2


@pytest.mark.asyncio
async def test_dependencies_complete_before_dependents_start(make_task, make_plan, fast_config) -> None:
    tracker = ConcurrencyTracker()
    tasks = [
        make_task("models", 10),
        make_task("schema", 10, deps=["models"]),
        make_task("api", 10, deps=["models"]),
        make_task("tests", 10, deps=["schema", "api"]),
    ]
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(tracker), count=4),
        config=fast_config,
    )

    await engine.run()

    order = tracker.calls
    assert order[0] == "models"
    assert order[-1] == "tests"
    assert {"schema", "api"} in [set(o) for o in tracker.overlaps]


@pytest.mark.asyncio
async def test_chain_runs_to_completion(make_task, make_plan, fast_config) -> None:
    async def instant(task):
        return {"done": task.id}

    tasks = [make_task("a", 10), make_task("b", 10, deps=["a"]), make_task("c", 10, deps=["b"])]
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(instant)),
        config=fast_config,
    )

    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert sorted(report.completed) == ["a", "b", "c"]
    assert report.blocking == ()


# =============================================================================
# Conflicts and cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_conflict_pauses_until_resolved(make_task, make_plan, fast_config, no_delay_retry) -> None:
    calls: dict[str, int] = {}

    async def flag_once(task):
        calls[task.id] = calls.get(task.id, 0) + 1
        if task.id == "auth" and calls[task.id] == 1:
            raise ConflictSignal("password storage violates security policy")
        return None

    tasks = [make_task("auth", 30), make_task("rbac", 20, deps=["auth"])]
    events = EventStream()
    seen = recorder(events)
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(flag_once)),
        config=fast_config,
        retry_policy=no_delay_retry,
        events=events,
    )

    paused = await engine.run()

    assert paused.status == PlanStatus.PAUSED
    assert engine.paused
    assert engine.status_of("auth") == TaskStatus.BLOCKED
    assert engine.status_of("rbac") == TaskStatus.BLOCKED
    assert engine.plan.status == PlanStatus.PAUSED

    # Running again without resolving does nothing.
    again = await engine.run()
    assert again.status == PlanStatus.PAUSED
    assert calls == {"auth": 1}

    engine.resolve_conflict("auth", "approved by security review")
    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert calls == {"auth": 2, "rbac": 1}
    types = [e.type for e in seen]
    assert types.index(EventType.CONFLICT_DETECTED) < types.index(EventType.WORKFLOW_PAUSED)
    assert types.index(EventType.WORKFLOW_PAUSED) < types.index(EventType.WORKFLOW_RESUMED)
    assert types[-1] == EventType.WORKFLOW_COMPLETED
    triggers = [a.trigger for a in report.adaptations]
    assert triggers == [AdaptationTrigger.CONFLICT_DETECTED, AdaptationTrigger.MANUAL]


@pytest.mark.asyncio
async def test_cancel_blocks_task_and_dependents(make_task, make_plan, fast_config) -> None:
    tasks = [
        make_task("models", 10),
        make_task("api", 10, deps=["models"]),
        make_task("tests", 10, deps=["api"]),
    ]
    engine = OrchestratorEngine(
        make_plan(tasks),
        AgentSlot.pool("api", CallableAgent(ConcurrencyTracker())),
        config=fast_config,
    )

    engine.cancel_task("api", "descoped")
    report = await engine.run()

    assert engine.status_of("models") == TaskStatus.COMPLETED
    assert report.blocked == ("api", "tests")
    assert engine.tasks["api"].blocked_reason == "descoped"
    assert engine.tasks["tests"].blocked_by == "api"
    assert report.status == PlanStatus.BLOCKED

    with pytest.raises(KeyError):
        engine.cancel_task("ghost")


# =============================================================================
# Adaptation and learning
# =============================================================================


@pytest.mark.asyncio
async def test_time_overrun_widens_the_plan(make_task, make_plan, fast_config) -> None:
    now = [0.0]

    async def slow(task):
        now[0] += 20 * 60
        return None

    plan = make_plan([make_task("only", 10)], max_parallel=4)
    engine = OrchestratorEngine(
        plan,
        AgentSlot.pool("api", CallableAgent(slow)),
        config=fast_config,
        clock=lambda: now[0],
    )

    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert [a.trigger for a in report.adaptations] == [AdaptationTrigger.TIME_OVERRUN]
    assert engine.plan.max_parallel == 6
    assert report.elapsed_seconds == 20 * 60


@pytest.mark.asyncio
async def test_agent_selection_lesson_switches_agent(
    make_task, make_plan, fast_config, learning
) -> None:
    pattern = {"task_type": "testing"}
    lesson = Lesson(
        signature=lesson_signature(LessonType.AGENT_SELECTION, pattern),
        lesson_type=LessonType.AGENT_SELECTION,
        pattern=pattern,
        recommendation="Use quality for testing tasks",
        confidence=0.9,
        sample_size=10,
        details={"agent_type": "quality", "success_rate": 0.9},
    )
    await learning.store.upsert_lesson(lesson)
    await learning.refresh()

    executed_by: list[str] = []

    async def run(task):
        executed_by.append(task.agent_type)
        return None

    fast_config.allow_agent_substitution = True
    agent = CallableAgent(run)
    events = EventStream()
    seen = recorder(events)
    engine = OrchestratorEngine(
        make_plan([make_task("tests", 20, agent_type="test", task_type="testing")]),
        [*AgentSlot.pool("test", agent), *AgentSlot.pool("quality", agent)],
        config=fast_config,
        learning=learning,
        events=events,
    )

    report = await engine.run()

    assert report.status == PlanStatus.COMPLETED
    assert executed_by == ["quality"]
    assert EventType.AGENT_SWITCHED in [e.type for e in seen]
    updated = learning.lessons[0]
    assert updated.times_applied == 1
    assert updated.times_successful == 1


def test_duplicate_slot_ids_are_rejected(make_task, make_plan) -> None:
    agent = CallableAgent(ConcurrencyTracker())
    with pytest.raises(ValueError, match="Duplicate agent slot"):
        OrchestratorEngine(
            make_plan([make_task("a")]),
            [*AgentSlot.pool("api", agent), *AgentSlot.pool("api", agent)],
        )
