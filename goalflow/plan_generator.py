"""
Expansion of a parsed goal into a validated, dependency-ordered execution plan.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from .config import Settings, settings
from .domain import (
    AgentType,
    AppliedLesson,
    Capability,
    Complexity,
    ExecutionPlan,
    LessonType,
    Milestone,
    ParallelOpportunity,
    ParsedGoal,
    Risk,
    RiskAssessment,
    RiskLevel,
    Task,
    ValidationIssue,
    ValidationResult,
    new_id,
    utcnow,
)
from .errors import CircularDependencyError, PlanValidationError
from .graph import DependencyGraph, find_cycle
from .phases import PhaseDefinition, PhaseProvider, TaskBlueprint, default_phase_provider

logger = logging.getLogger(__name__)

MIN_OPPORTUNITY_MINUTES = 10


@dataclass(frozen=True)
class AgentSelection:
    agent_type: str
    confidence: float
    source: str  # lesson | history | default
    lesson_signature: str | None = None
    success_rate: float | None = None
    samples: int = 0


@dataclass(frozen=True)
class DurationPrediction:
    estimate: float
    p50: float
    p95: float
    p99: float
    samples: int
    confidence: float
    lesson_signature: str | None = None


class PlanningAdvisor(Protocol):
    """Read side of the learning service used while planning."""

    def get_best_agent_for_task(self, task_type: str) -> AgentSelection: ...

    def get_predicted_duration(
        self, agent_type: str, task_type: str, default_minutes: float | None = None
    ) -> DurationPrediction: ...


# =============================================================================
# Shared plan analysis helpers
# =============================================================================


def build_milestones(
    tasks: Sequence[Task], phase_order: Sequence[str], blocking_phases: Collection[str]
) -> tuple[Milestone, ...]:
    """One milestone per phase that has tasks, with cumulative target offsets."""
    by_phase: dict[str, list[Task]] = {}
    for task in tasks:
        by_phase.setdefault(task.phase, []).append(task)

    ordered = [p for p in phase_order if p in by_phase]
    ordered += [p for p in by_phase if p not in ordered]

    milestones: list[Milestone] = []
    cumulative = 0.0
    for phase in ordered:
        phase_tasks = by_phase[phase]
        cumulative += max(t.estimated_minutes for t in phase_tasks)
        milestones.append(
            Milestone(
                id=f"milestone-{phase}",
                name=f"Complete {phase.capitalize()} Phase",
                description=f"All {phase} tasks completed and validated",
                phase=phase,
                task_ids=tuple(t.id for t in phase_tasks),
                completion_criteria=(
                    "All tasks in phase completed",
                    "Acceptance criteria verified",
                    "No blocking issues",
                ),
                target_minutes=cumulative,
                blocking=phase in blocking_phases,
            )
        )
    return tuple(milestones)


def find_opportunities(tasks: Sequence[Task], graph: DependencyGraph) -> tuple[ParallelOpportunity, ...]:
    by_id = {t.id: t for t in tasks}
    opportunities: list[ParallelOpportunity] = []
    for layer in graph.layers:
        if len(layer) < 2:
            continue
        durations = [by_id[t].estimated_minutes for t in layer]
        saved = sum(durations) - max(durations)
        if saved > MIN_OPPORTUNITY_MINUTES:
            opportunities.append(
                ParallelOpportunity(
                    task_ids=tuple(layer),
                    minutes_saved=saved,
                    reason="Tasks have no dependencies between them and can run simultaneously",
                )
            )
    return tuple(opportunities)


def assess_risk(
    goal: ParsedGoal | None, graph: DependencyGraph, *, timeline_minutes: float
) -> RiskAssessment:
    """Score complexity, security, external-dependency and timeline risk."""
    risks: list[Risk] = []
    if goal is not None:
        if goal.complexity == Complexity.VERY_COMPLEX:
            risks.append(
                Risk(
                    "complexity",
                    "Goal has very high complexity with many moving parts",
                    "Break into smaller sub-goals, increase testing, add checkpoints",
                    0.7,
                    0.8,
                )
            )
        elif goal.complexity == Complexity.COMPLEX:
            risks.append(
                Risk(
                    "complexity",
                    "Goal spans several subsystems",
                    "Add checkpoints between phases",
                    0.5,
                    0.6,
                )
            )
        if goal.has(Capability.AUTHENTICATION) or goal.has(Capability.AUTHORIZATION):
            risks.append(
                Risk(
                    "security",
                    "Authentication or authorization work is security-critical",
                    "Use established patterns, security review, penetration testing",
                    0.5,
                    0.9,
                )
            )
        if goal.has(Capability.INTEGRATION):
            risks.append(
                Risk(
                    "external_dependency",
                    "Integration depends on external system availability and behavior",
                    "Retry logic, fallback paths, thorough error handling",
                    0.6,
                    0.7,
                )
            )

    if graph.total_minutes > timeline_minutes:
        risks.append(
            Risk(
                "timeline",
                "Critical path is long, delays will cascade",
                "Parallelize where possible, add slack time, monitor closely",
                0.6,
                0.7,
            )
        )

    if not risks:
        return RiskAssessment(RiskLevel.LOW)
    mean = sum(r.score for r in risks) / len(risks)
    return RiskAssessment(RiskLevel.from_score(mean), tuple(risks))


# =============================================================================
# Generator
# =============================================================================


class PlanGenerator:
    """Builds execution plans from parsed goals."""

    def __init__(
        self,
        phase_provider: PhaseProvider | None = None,
        *,
        advisor: PlanningAdvisor | None = None,
        known_agents: Iterable[str] | None = None,
        config: Settings | None = None,
    ) -> None:
        self._phases = phase_provider or default_phase_provider()
        self._advisor = advisor
        self._config = config or settings
        self.known_agents: frozenset[str] = frozenset(
            str(a) for a in (known_agents if known_agents is not None else AgentType)
        )

    def generate(self, goal: ParsedGoal, *, plan_id: str | None = None) -> ExecutionPlan:
        phases = [p for p in self._phases.phases() if p.applies_to(goal)]
        selected: list[tuple[PhaseDefinition, TaskBlueprint]] = [
            (phase, blueprint)
            for phase in phases
            for blueprint in phase.blueprints
            if blueprint.applies_to(goal)
        ]
        included = {blueprint.key for _, blueprint in selected}

        applied: dict[str, tuple[str, list[str]]] = {}
        tasks: list[Task] = []
        for phase, blueprint in selected:
            agent_type = self._select_agent(blueprint, applied)
            minutes = self._estimate_minutes(blueprint, agent_type, applied)
            deps = frozenset(d for d in blueprint.depends_on if d in included)
            tasks.append(
                Task(
                    id=blueprint.key,
                    name=blueprint.name,
                    description=blueprint.description,
                    agent_type=agent_type,
                    task_type=blueprint.task_type,
                    phase=phase.name,
                    priority=blueprint.priority,
                    estimated_minutes=minutes,
                    dependencies=deps,
                    soft_dependencies=frozenset(blueprint.soft_depends_on) & deps,
                    security_sensitive=blueprint.security_sensitive,
                    outputs=blueprint.outputs,
                    acceptance_criteria=blueprint.acceptance_criteria,
                )
            )

        graph = DependencyGraph(tasks)
        plan = ExecutionPlan(
            id=plan_id or new_id(),
            goal=goal.original_goal,
            parsed_goal=goal,
            tasks=tuple(tasks),
            milestones=build_milestones(
                tasks, [p.name for p in phases], {p.name for p in phases if p.blocking}
            ),
            estimated_minutes=graph.total_minutes,
            risk=assess_risk(goal, graph, timeline_minutes=self._config.timeline_risk_minutes),
            opportunities=find_opportunities(tasks, graph),
            max_parallel=self._config.max_parallel,
            applied_lessons=tuple(
                AppliedLesson(signature, lesson_type, tuple(task_ids))
                for signature, (lesson_type, task_ids) in applied.items()
            ),
        )
        logger.info(
            "Generated plan %s: %d tasks, %.0f min critical path, %s risk",
            plan.id,
            len(tasks),
            plan.estimated_minutes,
            plan.risk.overall,
        )
        return plan

    def _select_agent(self, blueprint: TaskBlueprint, applied: dict[str, tuple[str, list[str]]]) -> str:
        if self._advisor is None:
            return blueprint.agent_type
        selection = self._advisor.get_best_agent_for_task(blueprint.task_type)
        if (
            selection.lesson_signature
            and selection.confidence >= self._config.min_confidence
            and selection.agent_type in self.known_agents
        ):
            if selection.agent_type != blueprint.agent_type:
                logger.info(
                    "Lesson %s assigns %s to %s instead of %s",
                    selection.lesson_signature,
                    selection.agent_type,
                    blueprint.key,
                    blueprint.agent_type,
                )
            _, task_ids = applied.setdefault(
                selection.lesson_signature, (LessonType.AGENT_SELECTION.value, [])
            )
            task_ids.append(blueprint.key)
            return selection.agent_type
        return blueprint.agent_type

    def _estimate_minutes(
        self, blueprint: TaskBlueprint, agent_type: str, applied: dict[str, tuple[str, list[str]]]
    ) -> float:
        if self._advisor is None:
            return blueprint.estimated_minutes
        prediction = self._advisor.get_predicted_duration(
            agent_type, blueprint.task_type, blueprint.estimated_minutes
        )
        if prediction.lesson_signature and prediction.confidence >= self._config.min_confidence:
            _, task_ids = applied.setdefault(
                prediction.lesson_signature, (LessonType.TIME_ESTIMATION.value, [])
            )
            task_ids.append(blueprint.key)
            return round(prediction.estimate, 1)
        return blueprint.estimated_minutes

    def validate(self, plan: ExecutionPlan) -> ValidationResult:
        errors: list[ValidationIssue] = []
        warnings: list[str] = []
        suggestions: list[str] = []

        seen: set[str] = set()
        for task in plan.tasks:
            if task.id in seen:
                errors.append(ValidationIssue("duplicate_task", f"Task id {task.id} is duplicated", task.id))
            seen.add(task.id)

        for task in plan.tasks:
            if task.id in task.dependencies:
                errors.append(
                    ValidationIssue("self_dependency", f'Task "{task.name}" depends on itself', task.id)
                )
            for dep in sorted(task.dependencies - seen):
                errors.append(
                    ValidationIssue(
                        "missing_dependency",
                        f'Task "{task.name}" depends on non-existent task {dep}',
                        task.id,
                    )
                )
            if str(task.agent_type) not in self.known_agents:
                errors.append(
                    ValidationIssue(
                        "invalid_agent",
                        f'Task "{task.name}" has invalid agent type: {task.agent_type}',
                        task.id,
                    )
                )
            if task.estimated_minutes <= 0:
                errors.append(
                    ValidationIssue(
                        "invalid_duration", f'Task "{task.name}" has no positive estimate', task.id
                    )
                )

        cycle = find_cycle(list(plan.tasks))
        if cycle:
            errors.insert(
                0,
                ValidationIssue(
                    "circular_dependency", f"Circular dependency detected: {' -> '.join(cycle)}", cycle[0]
                ),
            )

        if plan.estimated_minutes > self._config.max_plan_minutes:
            hours = self._config.max_plan_minutes / 60
            warnings.append(f"Plan duration exceeds {hours:g} hours, consider breaking into sub-goals")

        constraints = plan.parsed_goal.constraints if plan.parsed_goal else None
        if constraints:
            if constraints.max_minutes and plan.estimated_minutes > constraints.max_minutes:
                warnings.append(
                    f"Plan needs {plan.estimated_minutes:.0f} min, over the {constraints.max_minutes} min limit"
                )
            if constraints.deadline and utcnow() + timedelta(minutes=plan.estimated_minutes) > constraints.deadline:
                warnings.append("Plan is not expected to finish before the deadline")

        if plan.opportunities:
            suggestions.append(
                f"{len(plan.opportunities)} parallelization opportunities identified that could save time"
            )

        return ValidationResult(
            is_valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            suggestions=tuple(suggestions),
        )

    def ensure_valid(self, plan: ExecutionPlan) -> ValidationResult:
        """Validate and raise ``PlanValidationError`` when the plan cannot run."""
        result = self.validate(plan)
        if result.is_valid:
            return result
        first = result.errors[0]
        if first.kind == "circular_dependency":
            exc: PlanValidationError = CircularDependencyError(find_cycle(list(plan.tasks)))
            exc.issues = list(result.errors)
            raise exc
        raise PlanValidationError(first.message, list(result.errors))
