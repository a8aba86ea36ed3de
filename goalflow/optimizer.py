"""
Execution ordering, optimization strategies and runtime plan adaptation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

from .config import Settings, settings
from .domain import (
    AgentType,
    AppliedLesson,
    ExecutionPlan,
    LessonType,
    PlanStatus,
    Recommendation,
    RecommendationTarget,
    RiskAssessment,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    new_id,
    utcnow,
)
from .errors import CircularDependencyError
from .graph import DependencyGraph
from .plan_generator import assess_risk, build_milestones, find_opportunities

logger = logging.getLogger(__name__)

BALANCED_PARALLEL = 4
WIDE_PARALLEL = 8
RISK_PARALLEL = 2
OVERRUN_PARALLEL_STEP = 2
REVIEW_MINUTES = 30.0

_EXCLUDED_FROM_ORDER = (TaskStatus.BLOCKED, TaskStatus.SKIPPED, TaskStatus.FAILED)
_SOFT_SATISFIED = (TaskStatus.SKIPPED, TaskStatus.FAILED)


def _unreachable(plan: ExecutionPlan) -> set[str]:
    """Excluded tasks plus everything that can no longer run because of them."""
    by_id = {t.id: t for t in plan.tasks}
    dropped = {t.id for t in plan.tasks if t.status in _EXCLUDED_FROM_ORDER}
    for task_id in plan.graph.topological_order:
        if task_id in dropped:
            continue
        task = by_id[task_id]
        for dep in task.dependencies:
            if dep not in dropped:
                continue
            if dep in task.soft_dependencies and by_id[dep].status in _SOFT_SATISFIED:
                continue
            dropped.add(task_id)
            break
    return dropped


class OptimizationStrategy(StrEnum):
    MINIMIZE_DURATION = "minimize_duration"
    MINIMIZE_RISK = "minimize_risk"
    MAXIMIZE_PARALLELIZATION = "maximize_parallelization"
    BALANCED = "balanced"


class AdaptationTrigger(StrEnum):
    TASK_FAILURE = "task_failure"
    CONFLICT_DETECTED = "conflict_detected"
    TIME_OVERRUN = "time_overrun"
    DEPENDENCY_CHANGE = "dependency_change"
    MANUAL = "manual"


@dataclass(frozen=True)
class ExecutionContext:
    """Runtime snapshot handed to ``adapt_plan``."""

    statuses: Mapping[str, TaskStatus] = field(default_factory=dict)
    failed_tasks: tuple[str, ...] = ()
    current_task: str | None = None
    elapsed_minutes: float = 0.0
    dependency_updates: Mapping[str, frozenset[str]] = field(default_factory=dict)
    manual_changes: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    max_parallel: int | None = None


@dataclass(frozen=True)
class TaskChange:
    task_id: str
    field: str
    before: Any
    after: Any

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "field": self.field, "before": _plain(self.before), "after": _plain(self.after)}


@dataclass(frozen=True)
class AdaptationImpact:
    minutes_change: float = 0.0
    tasks_affected: int = 0
    risk_change: str = "unchanged"


@dataclass(frozen=True)
class Adaptation:
    """Audit record of one plan adaptation."""

    id: str
    plan_id: str
    from_version: int
    to_version: int
    trigger: AdaptationTrigger
    description: str
    reason: str
    changes: tuple[TaskChange, ...] = ()
    plan_changes: tuple[tuple[str, Any, Any], ...] = ()
    impact: AdaptationImpact = field(default_factory=AdaptationImpact)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "trigger": self.trigger.value,
            "description": self.description,
            "reason": self.reason,
            "changes": [c.to_dict() for c in self.changes],
            "plan_changes": [
                {"field": name, "before": _plain(before), "after": _plain(after)}
                for name, before, after in self.plan_changes
            ],
            "impact": {
                "minutes_change": self.impact.minutes_change,
                "tasks_affected": self.impact.tasks_affected,
                "risk_change": self.impact.risk_change,
            },
            "created_at": self.created_at.isoformat(),
        }


def _plain(value: Any) -> Any:
    if isinstance(value, frozenset | set):
        return sorted(value)
    if isinstance(value, StrEnum):
        return value.value
    return value


@dataclass
class PlanScore:
    """Score breakdown for one candidate plan."""

    plan_id: str
    strategy: str
    duration_minutes: float
    duration_score: float
    risk_score: float
    parallel_score: float

    @property
    def weighted_total(self) -> float:
        return 0.4 * self.duration_score + 0.4 * self.risk_score + 0.2 * self.parallel_score

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "strategy": self.strategy,
            "duration_minutes": round(self.duration_minutes, 1),
            "duration": round(self.duration_score, 3),
            "risk": round(self.risk_score, 3),
            "parallel": round(self.parallel_score, 3),
            "weighted_total": round(self.weighted_total, 3),
        }


@dataclass(frozen=True)
class PlanComparison:
    scores: tuple[PlanScore, ...]
    recommended: ExecutionPlan
    rationale: str
    tradeoffs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "scores": [s.to_dict() for s in self.scores],
            "recommended_plan_id": self.recommended.id,
            "recommended_strategy": self.recommended.strategy,
            "rationale": self.rationale,
            "tradeoffs": list(self.tradeoffs),
        }


class RecommendationSource(Protocol):
    def get_recommendations(self, goal: str, task_type: str | None = None) -> list[Recommendation]: ...


class ExecutionOptimizer:
    """Groups plan tasks into batches and adapts plans while they run."""

    def __init__(
        self, *, advisor: RecommendationSource | None = None, config: Settings | None = None
    ) -> None:
        self._advisor = advisor
        self._config = config or settings

    # =========================================================================
    # Strategies
    # =========================================================================

    def optimize(
        self,
        plan: ExecutionPlan,
        strategy: OptimizationStrategy | str = OptimizationStrategy.BALANCED,
        *,
        max_parallel: int | None = None,
    ) -> ExecutionPlan:
        strategy = OptimizationStrategy(strategy)
        tasks, applied = self._apply_parallel_lessons(plan)
        risk_override: RiskAssessment | None = None

        if strategy == OptimizationStrategy.MINIMIZE_DURATION:
            tasks = [replace(t, parallel_eligible=True) for t in tasks]
            width = max_parallel or max(BALANCED_PARALLEL, plan.max_parallel)
            parallel = max(width, self._widest_layer(tasks))
        elif strategy == OptimizationStrategy.MINIMIZE_RISK:
            tasks = self._insert_reviews(tasks)
            tasks = [
                replace(t, parallel_eligible=False) if t.security_sensitive else t for t in tasks
            ]
            parallel = max_parallel or min(plan.max_parallel, RISK_PARALLEL)
        elif strategy == OptimizationStrategy.MAXIMIZE_PARALLELIZATION:
            tasks = [
                replace(
                    t,
                    dependencies=t.dependencies - t.soft_dependencies,
                    soft_dependencies=frozenset(),
                    parallel_eligible=True,
                )
                for t in tasks
            ]
            parallel = max(max_parallel or WIDE_PARALLEL, self._widest_layer(tasks))
        else:
            parallel = max_parallel or BALANCED_PARALLEL

        graph = DependencyGraph(tasks)
        risk = assess_risk(plan.parsed_goal, graph, timeline_minutes=self._config.timeline_risk_minutes)
        if strategy == OptimizationStrategy.MINIMIZE_RISK:
            risk_override = RiskAssessment(risk.overall.downgraded(), risk.risks)

        optimized = plan.evolve(
            tasks=tuple(tasks),
            milestones=self._rebuild_milestones(plan, tasks),
            estimated_minutes=graph.total_minutes,
            risk=risk_override or risk,
            opportunities=find_opportunities(tasks, graph),
            max_parallel=parallel,
            strategy=strategy.value,
            applied_lessons=plan.applied_lessons + applied,
        )
        logger.debug(
            "Optimized plan %s with %s: %d tasks, width %d", plan.id, strategy, len(tasks), parallel
        )
        return optimized

    def _widest_layer(self, tasks: Sequence[Task]) -> int:
        return max((len(layer) for layer in DependencyGraph(tasks).layers), default=1)

    def _insert_reviews(self, tasks: list[Task]) -> list[Task]:
        """Add a review task after each security-sensitive or critical-priority task."""
        existing = {t.id for t in tasks}
        reviewed: dict[str, str] = {}
        reviews: list[Task] = []
        for task in tasks:
            if task.task_type == TaskType.VALIDATION and task.id.endswith("_review"):
                continue
            if not (task.security_sensitive or task.priority == TaskPriority.CRITICAL):
                continue
            review_id = f"{task.id}_review"
            if review_id in existing:
                continue
            reviewed[task.id] = review_id
            reviews.append(
                Task(
                    id=review_id,
                    name=f"Review {task.name}",
                    description=f"Independent review of {task.name.lower()} before dependents start",
                    agent_type=AgentType.SECURITY if task.security_sensitive else AgentType.QUALITY,
                    task_type=TaskType.VALIDATION,
                    phase=task.phase,
                    priority=TaskPriority.HIGH,
                    estimated_minutes=REVIEW_MINUTES,
                    dependencies=frozenset({task.id}),
                    security_sensitive=task.security_sensitive,
                    acceptance_criteria=("Findings resolved or accepted",),
                )
            )

        updated: list[Task] = []
        for task in tasks:
            extra = frozenset(reviewed[d] for d in task.data_dependencies if d in reviewed)
            updated.append(replace(task, dependencies=task.dependencies | extra) if extra else task)
            if task.id in reviewed:
                updated.append(next(r for r in reviews if r.id == reviewed[task.id]))
        return updated

    def _apply_parallel_lessons(self, plan: ExecutionPlan) -> tuple[list[Task], tuple[AppliedLesson, ...]]:
        """Drop soft edges between task types that history shows run fine side by side."""
        tasks = list(plan.tasks)
        if self._advisor is None:
            return tasks, ()

        by_type: dict[str, list[Task]] = {}
        for task in tasks:
            by_type.setdefault(str(task.task_type), []).append(task)

        applied: list[AppliedLesson] = []
        for rec in self._advisor.get_recommendations(plan.goal):
            if rec.target != RecommendationTarget.PARALLELIZATION:
                continue
            if rec.confidence < self._config.min_confidence:
                continue
            pair = rec.details.get("task_types") or []
            if len(pair) != 2:
                continue
            left = {t.id for t in by_type.get(pair[0], [])}
            right = {t.id for t in by_type.get(pair[1], [])}
            touched: list[str] = []
            for index, task in enumerate(tasks):
                others = right if task.id in left else left if task.id in right else set()
                breakable = task.soft_dependencies & others
                if breakable:
                    tasks[index] = replace(
                        task,
                        dependencies=task.dependencies - breakable,
                        soft_dependencies=task.soft_dependencies - breakable,
                    )
                    touched.append(task.id)
            if touched:
                applied.append(
                    AppliedLesson(rec.lesson_signature, LessonType.PARALLEL_EXECUTION.value, tuple(touched))
                )
        return tasks, tuple(applied)

    def _rebuild_milestones(self, plan: ExecutionPlan, tasks: Sequence[Task]):
        order = [m.phase for m in plan.milestones]
        blocking = {m.phase for m in plan.milestones if m.blocking}
        return build_milestones(tasks, order, blocking)

    # =========================================================================
    # Batching
    # =========================================================================

    def get_execution_order(self, plan: ExecutionPlan, max_parallel: int | None = None) -> list[list[Task]]:
        """Group tasks into ordered batches of mutually independent tasks.

        Ready tasks are taken by ascending slack, then descending priority. A
        task that is not parallel-eligible always occupies a batch alone.
        Blocked, skipped and failed tasks are left out, and so is every task
        that transitively depends on one of them. A soft dependency on a
        skipped or failed task counts as met.
        """
        width = max(1, max_parallel or plan.max_parallel)
        graph = plan.graph
        position = {task.id: index for index, task in enumerate(plan.tasks)}

        dropped = _unreachable(plan)
        scheduled = {t.id for t in plan.tasks if t.status in _SOFT_SATISFIED}
        remaining = [t for t in plan.tasks if t.id not in dropped]
        batches: list[list[Task]] = []

        while remaining:
            ready = [t for t in remaining if t.dependencies <= scheduled]
            if not ready:
                raise CircularDependencyError([t.id for t in remaining])
            ready.sort(key=lambda t: (graph.slack(t.id), -t.priority.rank, position[t.id]))

            batch: list[Task] = []
            for task in ready:
                if len(batch) >= width:
                    break
                if not task.parallel_eligible:
                    if not batch:
                        batch.append(task)
                        break
                    continue
                batch.append(task)

            batches.append(batch)
            scheduled.update(t.id for t in batch)
            batch_ids = {t.id for t in batch}
            remaining = [t for t in remaining if t.id not in batch_ids]

        return batches

    @staticmethod
    def estimate_order_duration(batches: Sequence[Sequence[Task]]) -> float:
        return sum(max((t.estimated_minutes for t in batch), default=0.0) for batch in batches)

    def scheduled_minutes(self, plan: ExecutionPlan) -> float:
        return self.estimate_order_duration(self.get_execution_order(plan))

    # =========================================================================
    # Adaptation
    # =========================================================================

    def adapt_plan(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
        trigger: AdaptationTrigger | str,
        reason: str,
    ) -> tuple[ExecutionPlan, Adaptation]:
        trigger = AdaptationTrigger(trigger)
        base = self._with_statuses(plan, context.statuses)
        tasks = {t.id: t for t in base.tasks}
        plan_fields: dict[str, Any] = {}
        description = reason
        risk_change = "unchanged"

        if trigger == AdaptationTrigger.TASK_FAILURE:
            description, risk_change = self._on_task_failure(base, context, tasks, plan_fields)
        elif trigger == AdaptationTrigger.CONFLICT_DETECTED:
            description, risk_change = self._on_conflict(base, context, tasks, plan_fields)
        elif trigger == AdaptationTrigger.TIME_OVERRUN:
            description, risk_change = self._on_time_overrun(base, context, tasks, plan_fields)
        elif trigger == AdaptationTrigger.DEPENDENCY_CHANGE:
            for task_id, deps in context.dependency_updates.items():
                if task_id in tasks:
                    current = tasks[task_id]
                    tasks[task_id] = replace(
                        current,
                        dependencies=frozenset(deps),
                        soft_dependencies=current.soft_dependencies & frozenset(deps),
                    )
            description = f"Dependencies updated for {len(context.dependency_updates)} task(s)"
        elif trigger == AdaptationTrigger.MANUAL:
            for task_id, updates in context.manual_changes.items():
                if task_id in tasks:
                    tasks[task_id] = replace(tasks[task_id], **dict(updates))
            if context.max_parallel:
                plan_fields["max_parallel"] = context.max_parallel

        new_tasks = tuple(tasks[t.id] for t in base.tasks)
        graph = DependencyGraph(new_tasks)
        plan_fields.setdefault("estimated_minutes", graph.total_minutes)
        if trigger == AdaptationTrigger.DEPENDENCY_CHANGE:
            plan_fields["opportunities"] = find_opportunities(new_tasks, graph)

        adapted = base.evolve(tasks=new_tasks, **plan_fields)
        changes = tuple(self._diff_tasks(base, adapted))
        plan_changes = tuple(
            (name, getattr(base, name), getattr(adapted, name))
            for name in ("status", "max_parallel", "estimated_minutes")
            if getattr(base, name) != getattr(adapted, name)
        )
        minutes_change = self._remaining_minutes(adapted) - self._remaining_minutes(base)
        adaptation = Adaptation(
            id=new_id(),
            plan_id=plan.id,
            from_version=plan.version,
            to_version=adapted.version,
            trigger=trigger,
            description=description,
            reason=reason,
            changes=changes,
            plan_changes=plan_changes,
            impact=AdaptationImpact(
                minutes_change=round(minutes_change, 1),
                tasks_affected=len({c.task_id for c in changes}),
                risk_change=risk_change,
            ),
        )
        logger.info(
            "Adapted plan %s v%d -> v%d (%s): %s",
            plan.id,
            plan.version,
            adapted.version,
            trigger,
            description,
        )
        return adapted, adaptation

    def _with_statuses(self, plan: ExecutionPlan, statuses: Mapping[str, TaskStatus]) -> ExecutionPlan:
        if not statuses:
            return plan
        tasks = tuple(
            replace(t, status=statuses[t.id]) if t.id in statuses and statuses[t.id] != t.status else t
            for t in plan.tasks
        )
        return replace(plan, tasks=tasks)

    def _on_task_failure(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
        tasks: dict[str, Task],
        plan_fields: dict[str, Any],
    ) -> tuple[str, str]:
        graph = plan.graph
        notes: list[str] = []
        for task_id in context.failed_tasks:
            if task_id not in tasks:
                continue
            if graph.is_critical(task_id):
                tasks[task_id] = replace(tasks[task_id], status=TaskStatus.FAILED)
                blocked = self._block(tasks, graph.descendants(task_id))
                plan_fields["status"] = PlanStatus.AT_RISK
                notes.append(f"critical task {task_id} failed; {len(blocked)} dependent(s) blocked")
            else:
                tasks[task_id] = replace(tasks[task_id], status=TaskStatus.SKIPPED)
                blocked = self._block(tasks, graph.descendants(task_id, data_only=True))
                notes.append(f"non-critical task {task_id} skipped; {len(blocked)} dependent(s) blocked")
        return "; ".join(notes) or "No failed tasks to adapt", "increased" if notes else "unchanged"

    def _on_conflict(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
        tasks: dict[str, Task],
        plan_fields: dict[str, Any],
    ) -> tuple[str, str]:
        flagged = context.current_task
        if not flagged or flagged not in tasks:
            return "Conflict reported without a task", "unchanged"
        tasks[flagged] = replace(tasks[flagged], status=TaskStatus.BLOCKED)
        blocked = self._block(tasks, plan.graph.descendants(flagged))
        plan_fields["status"] = PlanStatus.PAUSED
        return f"Conflict on {flagged}; {len(blocked)} dependent(s) blocked until resolved", "increased"

    def _on_time_overrun(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
        tasks: dict[str, Task],
        plan_fields: dict[str, Any],
    ) -> tuple[str, str]:
        graph = plan.graph
        opened: list[str] = []
        for task_id, task in tasks.items():
            if task.status in (TaskStatus.PENDING, TaskStatus.READY) and not task.parallel_eligible:
                if not graph.is_critical(task_id):
                    tasks[task_id] = replace(task, parallel_eligible=True)
                    opened.append(task_id)
        plan_fields["max_parallel"] = plan.max_parallel + OVERRUN_PARALLEL_STEP
        return (
            f"Elapsed {context.elapsed_minutes:.0f} min exceeds estimate; width raised to "
            f"{plan_fields['max_parallel']}, {len(opened)} task(s) made parallel-eligible",
            "increased",
        )

    @staticmethod
    def _block(tasks: dict[str, Task], task_ids: Sequence[str]) -> list[str]:
        blocked: list[str] = []
        for task_id in task_ids:
            task = tasks[task_id]
            if task.status.terminal or task.status == TaskStatus.ACTIVE:
                continue
            tasks[task_id] = replace(task, status=TaskStatus.BLOCKED)
            blocked.append(task_id)
        return blocked

    @staticmethod
    def _diff_tasks(before: ExecutionPlan, after: ExecutionPlan) -> list[TaskChange]:
        changes: list[TaskChange] = []
        for old, new in zip(before.tasks, after.tasks, strict=True):
            for name in (
                "status",
                "dependencies",
                "parallel_eligible",
                "estimated_minutes",
                "agent_type",
                "priority",
            ):
                if getattr(old, name) != getattr(new, name):
                    changes.append(TaskChange(old.id, name, getattr(old, name), getattr(new, name)))
        return changes

    def _remaining_minutes(self, plan: ExecutionPlan) -> float:
        pending = [
            t
            for t in plan.tasks
            if not t.status.terminal and t.status != TaskStatus.BLOCKED
        ]
        return sum(t.estimated_minutes for t in pending)

    # =========================================================================
    # Comparison
    # =========================================================================

    def compare_plans(self, plans: Sequence[ExecutionPlan]) -> PlanComparison:
        if not plans:
            raise ValueError("compare_plans needs at least one plan")

        durations = [self.scheduled_minutes(p) for p in plans]
        fastest = min(durations)
        scores = tuple(
            PlanScore(
                plan_id=plan.id,
                strategy=plan.strategy,
                duration_minutes=duration,
                duration_score=(fastest / duration) if duration > 0 else 1.0,
                risk_score=plan.risk.overall.score,
                parallel_score=plan.parallel_fraction,
            )
            for plan, duration in zip(plans, durations, strict=True)
        )
        best_index = max(range(len(plans)), key=lambda i: (scores[i].weighted_total, -i))
        best = plans[best_index]
        best_score = scores[best_index]

        average = sum(durations) / len(durations)
        rationale = (
            f"The {best.strategy} plan offers the best balance of duration "
            f"({best_score.duration_minutes:.0f} min"
        )
        if best_score.duration_minutes < average:
            rationale += f", {(average - best_score.duration_minutes) / average:.0%} faster than average"
        rationale += (
            f"), risk level ({best.risk.overall.value}) and parallelism "
            f"({best_score.parallel_score:.0%} of tasks parallel-eligible); "
            f"weighted score {best_score.weighted_total:.2f}."
        )

        tradeoffs: list[str] = []
        fastest_index = durations.index(fastest)
        if fastest_index != best_index:
            tradeoffs.append(
                f"{best_score.duration_minutes - fastest:.0f} min longer than the {plans[fastest_index].strategy} "
                f"plan, with {best.risk.overall.value} risk vs {plans[fastest_index].risk.overall.value}"
            )
        safest_index = min(range(len(plans)), key=lambda i: plans[i].risk.overall.order)
        if plans[safest_index].risk.overall.order < best.risk.overall.order:
            tradeoffs.append(
                f"Accepting {best.risk.overall.value} risk for better duration "
                f"(safest option has {plans[safest_index].risk.overall.value} risk)"
            )

        return PlanComparison(
            scores=scores, recommended=best, rationale=rationale, tradeoffs=tuple(tradeoffs)
        )

    def candidate_plans(self, plan: ExecutionPlan) -> list[ExecutionPlan]:
        """One optimized variant per strategy, for ``compare_plans``."""
        return [self.optimize(plan, strategy) for strategy in OptimizationStrategy]
