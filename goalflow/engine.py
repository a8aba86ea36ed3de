"""
Orchestration loop: assigns ready tasks to agent slots and reacts to outcomes.

All runtime state is mutated inside ``tick()``, which never overlaps with
itself. Agents run as asyncio tasks and are polled for completion rather than
awaited. ``cancel_task`` and ``resolve_conflict`` queue a command that the
next tick applies.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from .agents import AgentError, AgentResult, AgentSlot
from .config import EngineConfig
from .domain import ExecutionPlan, PlanStatus, RecommendationTarget, Task, TaskStatus, new_id
from .errors import ErrorClass, PermanentTaskFailure
from .events import EventStream, EventType, OrchestratorEvent
from .learning import LearningService
from .optimizer import Adaptation, AdaptationTrigger, ExecutionContext, ExecutionOptimizer
from .retry import CircuitBreaker, RetryPolicy
from .store import LearningStore

logger = logging.getLogger(__name__)

ORDERING_BOOST_STEP = 5


@dataclass
class AgentTask:
    """Runtime state of one plan task."""

    task: Task
    agent_type: str
    status: TaskStatus = TaskStatus.PENDING
    slot_id: str | None = None
    retry_count: int = 0
    retry_at: float | None = None
    attempts: int = 0
    started_at: float | None = None
    record_id: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    blocked_reason: str | None = None
    blocked_by: str | None = None
    cancel_requested: bool = False
    substitution_checked: bool = False
    output: Any = None

    @property
    def id(self) -> str:
        return self.task.id


@dataclass(frozen=True)
class BlockingTask:
    task_id: str
    status: TaskStatus
    reason: str


@dataclass(frozen=True)
class ExecutionReport:
    """Outcome of one ``run()``; lists the tasks that keep the plan from finishing."""

    plan_id: str
    run_id: str
    status: PlanStatus
    plan_version: int
    completed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    blocking: tuple[BlockingTask, ...] = ()
    adaptations: tuple[Adaptation, ...] = ()
    attempts: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "plan_version": self.plan_version,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "blocked": list(self.blocked),
            "blocking": [
                {"task_id": b.task_id, "status": b.status.value, "reason": b.reason} for b in self.blocking
            ],
            "adaptations": [a.to_dict() for a in self.adaptations],
            "attempts": self.attempts,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass(frozen=True)
class _Command:
    action: str  # resolve | cancel
    task_id: str
    note: str = ""


class OrchestratorEngine:
    """Runs one plan against a fixed set of agent slots."""

    def __init__(
        self,
        plan: ExecutionPlan,
        agents: Iterable[AgentSlot],
        *,
        config: EngineConfig | None = None,
        learning: LearningService | None = None,
        optimizer: ExecutionOptimizer | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        events: EventStream | None = None,
        store: LearningStore | None = None,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.plan = plan
        # Runtime boosts from ordering lessons must not leak into the caller's config.
        self.config = copy.deepcopy(config) if config is not None else EngineConfig.from_settings()
        self.learning = learning
        self.optimizer = optimizer or ExecutionOptimizer(advisor=learning)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.breaker = circuit_breaker or CircuitBreaker.from_settings()
        self.events = events or EventStream()
        self.store = store if store is not None else (learning.store if learning else None)
        self.run_id = run_id or new_id()
        self._clock = clock

        self.slots: dict[str, AgentSlot] = {}
        self._slots_by_type: dict[str, list[AgentSlot]] = {}
        for slot in agents:
            if slot.id in self.slots:
                raise ValueError(f"Duplicate agent slot id {slot.id}")
            self.slots[slot.id] = slot
            self._slots_by_type.setdefault(str(slot.agent_type), []).append(slot)

        self.tasks: dict[str, AgentTask] = {}
        for task in plan.tasks:
            status = task.status if task.status in (TaskStatus.BLOCKED, TaskStatus.COMPLETED) else TaskStatus.PENDING
            if task.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                status = task.status
            self.tasks[task.id] = AgentTask(task=task, agent_type=str(task.agent_type), status=status)
        self._position = {task.id: index for index, task in enumerate(plan.tasks)}

        self.paused = False
        self.adaptations: list[Adaptation] = []
        self.versions: list[ExecutionPlan] = [plan]
        self._conflicts: set[str] = set()
        self._commands: list[_Command] = []
        self._running: dict[str, asyncio.Task[AgentResult]] = {}
        self._applied: dict[str, set[str]] = {
            lesson.signature: set(lesson.task_ids) for lesson in plan.applied_lessons
        }
        self._outcomes_reported = False
        self._overrun_adapted = False
        self._started_at: float | None = None
        self._tick_lock = asyncio.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(self) -> ExecutionReport:
        """Tick until no further progress is possible, then report."""
        if self._started_at is None:
            await self._start()
        elif self.paused and not self._commands:
            return self._report()

        while True:
            await self.tick()
            if self._settled():
                break
            await asyncio.sleep(self.config.tick_interval_seconds)
        return await self._finish()

    async def tick(self) -> None:
        async with self._tick_lock:
            await self._apply_commands()
            await self._refresh_ready()
            await self._assign()
            await self._poll()
            await self._check_overrun()
            # Promote dependents of this tick's completions before run() checks for progress.
            await self._refresh_ready()

    def resolve_conflict(self, task_id: str, note: str = "") -> None:
        """Return a conflicted task (and what it blocked) to the ready pool on the next tick."""
        if task_id not in self.tasks:
            raise KeyError(task_id)
        self._commands.append(_Command("resolve", task_id, note))

    def cancel_task(self, task_id: str, reason: str = "cancelled") -> None:
        """Block a task and its dependents on the next tick; an active attempt finishes first."""
        if task_id not in self.tasks:
            raise KeyError(task_id)
        self._commands.append(_Command("cancel", task_id, reason))

    def status_of(self, task_id: str) -> TaskStatus:
        return self.tasks[task_id].status

    def snapshot(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan.id,
            "plan_version": self.plan.version,
            "run_id": self.run_id,
            "status": self.plan.status.value,
            "paused": self.paused,
            "tasks": {
                at.id: {
                    "status": at.status.value,
                    "agent_type": at.agent_type,
                    "slot": at.slot_id,
                    "retry_count": at.retry_count,
                    "attempts": at.attempts,
                    "blocked_reason": at.blocked_reason,
                }
                for at in self.tasks.values()
            },
            "slots": {slot.id: slot.current_task for slot in self.slots.values()},
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _start(self) -> None:
        self._started_at = self._clock()
        self.plan = replace(self.plan, status=PlanStatus.RUNNING)
        self.versions[-1] = self.plan
        if self.store is not None:
            await self.store.save_plan_version(self.plan)

        for at in self.tasks.values():
            if at.status == TaskStatus.PENDING and at.agent_type not in self._slots_by_type:
                at.status = TaskStatus.BLOCKED
                at.blocked_reason = f"no agent registered for type {at.agent_type}"
                await self._emit(EventType.TASK_BLOCKED, at.blocked_reason, at)

        if self.learning is not None:
            for signature in self._applied:
                await self.learning.record_lesson_application(signature)
            await self._apply_recommendations()

        await self._emit(
            EventType.WORKFLOW_STARTED,
            f"Running plan {self.plan.id} v{self.plan.version} with {len(self.tasks)} tasks",
            data={"strategy": self.plan.strategy, "max_parallel": self._width()},
        )

    async def _apply_recommendations(self) -> None:
        assert self.learning is not None
        for rec in self.learning.get_recommendations(self.plan.goal):
            await self._emit(
                EventType.RECOMMENDATION_AVAILABLE,
                rec.message,
                data={
                    "lesson_signature": rec.lesson_signature,
                    "target": rec.target.value,
                    "priority": rec.priority,
                    "confidence": rec.confidence,
                },
            )
            if rec.target != RecommendationTarget.ORDERING or rec.confidence < self.config.min_confidence:
                continue
            sequence = list(rec.details.get("sequence") or [])
            for index, task_type in enumerate(sequence):
                self.config.boost_task_type(task_type, ORDERING_BOOST_STEP * (len(sequence) - index))
            touched = {at.id for at in self.tasks.values() if str(at.task.task_type) in sequence}
            if touched:
                self._applied.setdefault(rec.lesson_signature, set()).update(touched)
                await self.learning.record_lesson_application(rec.lesson_signature)
                logger.info("Applied ordering lesson %s to %d tasks", rec.lesson_signature, len(touched))

    async def _finish(self) -> ExecutionReport:
        statuses = [at.status for at in self.tasks.values()]
        critical_failure = any(
            at.status == TaskStatus.FAILED and self.plan.graph.is_critical(at.id) for at in self.tasks.values()
        )
        if self.paused:
            status = PlanStatus.PAUSED
        elif critical_failure:
            status = PlanStatus.AT_RISK
        elif all(s.terminal for s in statuses):
            status = PlanStatus.COMPLETED
        else:
            status = PlanStatus.BLOCKED

        self.plan = replace(self.plan, status=status)
        self.versions[-1] = self.plan

        if status != PlanStatus.PAUSED:
            await self._report_lesson_outcomes()
        if status == PlanStatus.COMPLETED:
            await self._emit(EventType.WORKFLOW_COMPLETED, f"Plan {self.plan.id} completed")
        elif status != PlanStatus.PAUSED:
            logger.warning("Plan %s finished as %s", self.plan.id, status)
        return self._report()

    async def _report_lesson_outcomes(self) -> None:
        if self.learning is None or self._outcomes_reported:
            return
        self._outcomes_reported = True
        for signature, task_ids in self._applied.items():
            success = all(self.tasks[t].status == TaskStatus.COMPLETED for t in task_ids if t in self.tasks)
            await self.learning.record_lesson_outcome(signature, success)

    def _report(self) -> ExecutionReport:
        def ids(status: TaskStatus) -> tuple[str, ...]:
            return tuple(at.id for at in self.tasks.values() if at.status == status)

        return ExecutionReport(
            plan_id=self.plan.id,
            run_id=self.run_id,
            status=self.plan.status,
            plan_version=self.plan.version,
            completed=ids(TaskStatus.COMPLETED),
            failed=ids(TaskStatus.FAILED),
            blocked=ids(TaskStatus.BLOCKED),
            blocking=tuple(
                BlockingTask(at.id, at.status, self._blocking_reason(at))
                for at in self.tasks.values()
                if not at.status.terminal
            ),
            adaptations=tuple(self.adaptations),
            attempts=sum(at.attempts for at in self.tasks.values()),
            elapsed_seconds=self._clock() - self._started_at if self._started_at is not None else 0.0,
        )

    def _blocking_reason(self, at: AgentTask) -> str:
        if at.blocked_reason:
            return at.blocked_reason
        if at.status == TaskStatus.PENDING:
            waiting = sorted(d for d in at.task.dependencies if not self._dependency_met(at.task, d))
            return f"waiting on {', '.join(waiting)}"
        if self.breaker.is_open(at.agent_type):
            return f"circuit open for {at.agent_type} agents"
        if self.paused:
            return "workflow paused until conflicts are resolved"
        return f"no idle {at.agent_type} agent"

    def _settled(self) -> bool:
        if self._running or self._commands:
            return False
        if self.paused:
            return True
        if any(at.status == TaskStatus.RETRYING for at in self.tasks.values()):
            return False
        return not any(
            at.status == TaskStatus.READY and self._launchable(at) for at in self.tasks.values()
        )

    # =========================================================================
    # Tick steps
    # =========================================================================

    async def _apply_commands(self) -> None:
        commands, self._commands = self._commands, []
        for command in commands:
            if command.action == "resolve":
                await self._resolve(command.task_id, command.note)
            else:
                await self._cancel(command.task_id, command.note)

    def _dependency_met(self, task: Task, dep: str) -> bool:
        status = self.tasks[dep].status
        if status == TaskStatus.COMPLETED:
            return True
        return dep in task.soft_dependencies and status in (
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
            TaskStatus.BLOCKED,
        )

    async def _refresh_ready(self) -> None:
        for at in self.tasks.values():
            if at.status != TaskStatus.PENDING:
                continue
            if all(self._dependency_met(at.task, d) for d in at.task.dependencies):
                at.status = TaskStatus.READY
                logger.debug("Task %s ready", at.id)
                if not at.substitution_checked:
                    at.substitution_checked = True
                    await self._maybe_substitute(at)

    def _width(self) -> int:
        return max(1, min(self.plan.max_parallel, self.config.max_parallel))

    def _priority(self, at: AgentTask) -> int:
        return self.config.priority_for(at.task.phase, at.agent_type, str(at.task.task_type))

    def _order_key(self, at: AgentTask) -> tuple[int, float, int]:
        return (-self._priority(at), self.plan.graph.slack(at.id), self._position[at.id])

    def _idle_slot(self, agent_type: str) -> AgentSlot | None:
        return next((s for s in self._slots_by_type.get(agent_type, []) if s.idle), None)

    def _launchable(self, at: AgentTask) -> bool:
        if self.breaker.is_open(at.agent_type):
            return False
        return self._idle_slot(at.agent_type) is not None

    def _exclusive_running(self) -> bool:
        return any(not self.tasks[task_id].task.parallel_eligible for task_id in self._running)

    async def _assign(self) -> None:
        if self.paused:
            return
        now = self._clock()
        due = sorted(
            (
                at
                for at in self.tasks.values()
                if at.status == TaskStatus.RETRYING and at.retry_at is not None and at.retry_at <= now
            ),
            key=self._order_key,
        )
        ready = sorted((at for at in self.tasks.values() if at.status == TaskStatus.READY), key=self._order_key)

        for at in [*due, *ready]:
            if len(self._running) >= self._width() or self._exclusive_running():
                return
            if not at.task.parallel_eligible and self._running:
                continue
            if self.breaker.is_open(at.agent_type):
                continue
            slot = self.slots[at.slot_id] if at.slot_id else self._idle_slot(at.agent_type)
            if slot is None:
                continue
            await self._launch(at, slot)
            if not at.task.parallel_eligible:
                return

    async def _launch(self, at: AgentTask, slot: AgentSlot) -> None:
        at.status = TaskStatus.ACTIVE
        at.slot_id = slot.id
        at.retry_at = None
        at.attempts += 1
        at.started_at = self._clock()
        slot.current_task = at.id

        if self.learning is not None:
            record = await self.learning.record_execution(
                goal_hash=self.plan.parsed_goal.goal_hash if self.plan.parsed_goal else "",
                plan_id=self.plan.id,
                run_id=self.run_id,
                task_id=at.id,
                task_type=str(at.task.task_type),
                agent_type=at.agent_type,
                agent_id=slot.id,
                estimated_minutes=at.task.estimated_minutes,
                depends_on=at.task.dependencies,
                retry_count=at.retry_count,
            )
            at.record_id = record.id

        task = at.task if at.agent_type == at.task.agent_type else replace(at.task, agent_type=at.agent_type)
        self._running[at.id] = asyncio.create_task(self._execute(slot, task), name=f"goalflow:{at.id}")
        await self._emit(
            EventType.TASK_STARTED,
            f"{at.task.name} started on {slot.id}",
            at,
            data={"slot": slot.id, "attempt": at.attempts, "retry_count": at.retry_count},
        )

    async def _execute(self, slot: AgentSlot, task: Task) -> AgentResult:
        timeout = self.config.task_timeout_seconds
        try:
            return await asyncio.wait_for(slot.agent.execute(task), timeout=timeout)
        except TimeoutError:
            return AgentResult(
                success=False,
                error=AgentError("timeout", f"Task {task.id} exceeded {timeout:g}s", ErrorClass.TRANSIENT),
            )
        except Exception as exc:
            logger.debug("Agent %s raised on %s", slot.id, task.id, exc_info=True)
            return AgentResult(success=False, error=AgentError.from_exception(exc))

    async def _poll(self) -> None:
        for task_id, running in list(self._running.items()):
            if not running.done():
                continue
            del self._running[task_id]
            if running.cancelled():
                result = AgentResult.failed("cancelled", f"Execution of {task_id} was cancelled")
            else:
                result = running.result()
            await self._finish_attempt(self.tasks[task_id], result)

    async def _check_overrun(self) -> None:
        if self._overrun_adapted or self._started_at is None or self.plan.estimated_minutes <= 0:
            return
        elapsed = (self._clock() - self._started_at) / 60
        limit = self.plan.estimated_minutes * (1 + self.config.time_overrun_margin)
        if elapsed <= limit:
            return
        self._overrun_adapted = True
        await self._adapt(
            AdaptationTrigger.TIME_OVERRUN,
            ExecutionContext(statuses=self._statuses(), elapsed_minutes=elapsed),
            f"Elapsed {elapsed:.1f} min exceeds the {limit:.1f} min limit",
        )
        self.config.max_parallel = max(self.config.max_parallel, self.plan.max_parallel)

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _release(self, at: AgentTask) -> None:
        if at.slot_id is not None:
            self.slots[at.slot_id].current_task = None
        at.slot_id = None

    async def _finish_attempt(self, at: AgentTask, result: AgentResult) -> None:
        slot = self.slots[at.slot_id] if at.slot_id else None
        elapsed_minutes = (self._clock() - (at.started_at or self._clock())) / 60
        minutes = result.minutes if result.minutes is not None else elapsed_minutes
        error = result.error or (
            None if result.success else AgentError("unknown", "agent reported failure without an error")
        )

        if self.learning is not None and at.record_id is not None:
            await self.learning.complete_execution(
                at.record_id,
                success=result.success,
                actual_minutes=minutes,
                error_kind=error.kind if error else None,
                error_message=error.message if error else None,
            )
            at.record_id = None

        if at.cancel_requested:
            self._release(at)
            await self._block_subtree(at.id, at.blocked_reason or "cancelled")
            return

        if result.success:
            at.status = TaskStatus.COMPLETED
            at.output = result.output
            self._release(at)
            self.breaker.record_success(at.agent_type)
            if slot is not None:
                slot.completed += 1
            await self._emit(
                EventType.TASK_COMPLETED,
                f"{at.task.name} completed",
                at,
                data={"minutes": round(minutes, 2), "attempts": at.attempts},
            )
            return

        assert error is not None
        classification = error.classification
        self.breaker.record_failure(at.agent_type)
        if slot is not None:
            slot.failed += 1
        at.error_kind, at.error_message = error.kind, error.message

        if classification.error_class == ErrorClass.CONFLICT:
            await self._on_conflict(at, error)
            return

        if self.retry_policy.should_retry(classification, at.retry_count):
            delay = self.retry_policy.delay_for(at.retry_count)
            at.retry_count += 1
            at.status = TaskStatus.RETRYING
            at.retry_at = self._clock() + delay
            logger.warning(
                "Task %s failed with %s (%s), retry %d/%d in %.2fs",
                at.id,
                error.kind,
                classification.category,
                at.retry_count,
                self.retry_policy.max_retries,
                delay,
            )
            await self._emit(
                EventType.TASK_RETRYING,
                f"{at.task.name} failed ({error.kind}), retrying in {delay:g}s",
                at,
                data={"retry_count": at.retry_count, "delay_seconds": delay, "error_kind": error.kind},
            )
            await self._maybe_substitute(at)
            return

        message = error.message
        if classification.retryable:
            message = str(PermanentTaskFailure(at.id, at.attempts, error.message))
        at.status = TaskStatus.FAILED
        at.error_message = message
        self._release(at)
        critical = self.plan.graph.is_critical(at.id)
        logger.warning("Task %s failed permanently: %s", at.id, message)
        await self._emit(
            EventType.TASK_FAILED,
            f"{at.task.name} failed: {message}",
            at,
            data={
                "error_kind": error.kind,
                "error_class": classification.error_class.value,
                "category": classification.category,
                "attempts": at.attempts,
                "critical": critical,
            },
        )
        await self._adapt(
            AdaptationTrigger.TASK_FAILURE,
            ExecutionContext(statuses=self._statuses(), failed_tasks=(at.id,)),
            message,
        )
        if critical:
            await self._emit(
                EventType.PLAN_AT_RISK,
                f"Critical-path task {at.id} failed; plan is at risk",
                at,
                data={"blocking_tasks": [at.id]},
            )

    async def _on_conflict(self, at: AgentTask, error: AgentError) -> None:
        at.status = TaskStatus.BLOCKED
        at.blocked_reason = f"conflict: {error.message}"
        self._release(at)
        self.paused = True
        self._conflicts.add(at.id)
        logger.warning("Conflict on %s, pausing assignment: %s", at.id, error.message)
        await self._emit(
            EventType.CONFLICT_DETECTED,
            f"Conflict on {at.task.name}: {error.message}",
            at,
            data={"error_kind": error.kind, "reason": error.message},
        )
        await self._adapt(
            AdaptationTrigger.CONFLICT_DETECTED,
            ExecutionContext(statuses=self._statuses(), current_task=at.id),
            error.message,
            root=at.id,
        )
        await self._emit(
            EventType.WORKFLOW_PAUSED,
            f"Workflow paused until the conflict on {at.id} is resolved",
            data={"conflicts": sorted(self._conflicts)},
        )

    async def _maybe_substitute(self, at: AgentTask) -> None:
        if not self.config.allow_agent_substitution or self.learning is None:
            return
        selection = self.learning.get_best_agent_for_task(str(at.task.task_type))
        if (
            selection.lesson_signature is None
            or selection.confidence < self.config.min_confidence
            or selection.agent_type == at.agent_type
            or selection.agent_type not in self._slots_by_type
        ):
            return
        previous = at.agent_type
        if at.status == TaskStatus.RETRYING:
            self._release(at)
        at.agent_type = selection.agent_type
        self._applied.setdefault(selection.lesson_signature, set()).add(at.id)
        await self.learning.record_lesson_application(selection.lesson_signature)
        await self._emit(
            EventType.AGENT_SWITCHED,
            f"{at.task.name} moved from {previous} to {selection.agent_type}",
            at,
            data={
                "from": previous,
                "to": selection.agent_type,
                "lesson_signature": selection.lesson_signature,
                "confidence": selection.confidence,
            },
        )

    # =========================================================================
    # Blocking and adaptation
    # =========================================================================

    def _statuses(self) -> dict[str, TaskStatus]:
        return {at.id: at.status for at in self.tasks.values()}

    async def _adapt(
        self,
        trigger: AdaptationTrigger,
        context: ExecutionContext,
        reason: str,
        *,
        root: str | None = None,
    ) -> None:
        adapted, adaptation = self.optimizer.adapt_plan(self.plan, context, trigger, reason)
        self.plan = adapted
        self.versions.append(adapted)
        self.adaptations.append(adaptation)
        if self.store is not None:
            await self.store.save_plan_version(adapted)
            await self.store.log_adaptation(adaptation)

        origin = root or (context.failed_tasks[0] if context.failed_tasks else None)
        for task in adapted.tasks:
            at = self.tasks[task.id]
            at.task = task
            if task.status == TaskStatus.BLOCKED and at.status in (TaskStatus.PENDING, TaskStatus.READY):
                at.status = TaskStatus.BLOCKED
                at.blocked_by = origin
                at.blocked_reason = f"blocked by {origin}: {reason}" if origin else reason
                await self._emit(EventType.TASK_BLOCKED, at.blocked_reason, at)

        await self._emit(
            EventType.PLAN_ADAPTED,
            adaptation.description,
            data={"adaptation": adaptation.to_dict()},
        )

    async def _block_subtree(self, root: str, reason: str) -> None:
        before = self._statuses()
        targets = [root, *self.plan.graph.descendants(root)]
        changes: dict[str, dict[str, Any]] = {}
        for task_id in targets:
            at = self.tasks[task_id]
            if at.status.terminal or at.status == TaskStatus.ACTIVE:
                continue
            if at.status == TaskStatus.RETRYING:
                self._release(at)
            at.status = TaskStatus.BLOCKED
            at.blocked_by = None if task_id == root else root
            at.blocked_reason = reason if task_id == root else f"blocked by {root}: {reason}"
            changes[task_id] = {"status": TaskStatus.BLOCKED}
            await self._emit(EventType.TASK_BLOCKED, at.blocked_reason, at)
        if changes:
            await self._adapt(
                AdaptationTrigger.MANUAL,
                ExecutionContext(statuses=before, manual_changes=changes),
                reason,
                root=root,
            )

    async def _cancel(self, task_id: str, reason: str) -> None:
        at = self.tasks[task_id]
        if at.status.terminal:
            logger.info("Ignoring cancel for %s, already %s", task_id, at.status)
            return
        if at.status == TaskStatus.ACTIVE:
            at.cancel_requested = True
            at.blocked_reason = reason
            return
        await self._block_subtree(task_id, reason)

    async def _resolve(self, task_id: str, note: str) -> None:
        at = self.tasks[task_id]
        if at.status != TaskStatus.BLOCKED:
            logger.warning("Resolve requested for %s, which is %s", task_id, at.status)
            return
        released = [at, *(t for t in self.tasks.values() if t.blocked_by == task_id)]
        before = self._statuses()
        for item in released:
            item.status = TaskStatus.PENDING
            item.blocked_by = None
            item.blocked_reason = None
            item.cancel_requested = False
        self._conflicts.discard(task_id)

        reason = note or f"conflict on {task_id} resolved"
        await self._adapt(
            AdaptationTrigger.MANUAL,
            ExecutionContext(
                statuses=before,
                manual_changes={item.id: {"status": TaskStatus.PENDING} for item in released},
            ),
            reason,
        )
        if self.paused and not self._conflicts:
            self.paused = False
            self.plan = replace(self.plan, status=PlanStatus.RUNNING)
            self.versions[-1] = self.plan
            await self._emit(EventType.WORKFLOW_RESUMED, f"Workflow resumed: {reason}")

    async def _emit(
        self,
        event_type: EventType,
        message: str,
        at: AgentTask | None = None,
        *,
        data: dict[str, Any] | None = None,
    ) -> None:
        payload = dict(data or {})
        if at is not None:
            payload.setdefault("task_name", at.task.name)
            payload.setdefault("status", at.status.value)
        await self.events.emit(
            OrchestratorEvent(
                type=event_type,
                plan_id=self.plan.id,
                run_id=self.run_id,
                task_id=at.id if at else None,
                agent=at.agent_type if at else None,
                message=message,
                data=payload,
            )
        )
