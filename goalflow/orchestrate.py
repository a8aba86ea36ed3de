"""Goal pipeline: parse, plan, optimize and execute."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from rich.console import Console

from . import db
from .agents import Agent, SimulatedAgent, default_slots
from .config import EngineConfig
from .domain import ExecutionPlan, GoalConstraints, ParsedGoal, ValidationResult
from .engine import ExecutionReport, OrchestratorEngine
from .events import EventStream, EventType, OrchestratorEvent, install_handlers
from .goal_parser import GoalParser
from .learning import LearningService
from .optimizer import ExecutionOptimizer, OptimizationStrategy, PlanComparison
from .phases import PhaseProvider, resolve_phase_provider
from .plan_generator import PlanGenerator
from .store import InMemoryLearningStore, SqlLearningStore

console = Console()

EVENT_STYLES: dict[EventType, str] = {
    EventType.TASK_STARTED: "cyan",
    EventType.TASK_COMPLETED: "green",
    EventType.TASK_FAILED: "red",
    EventType.TASK_RETRYING: "yellow",
    EventType.TASK_BLOCKED: "magenta",
    EventType.CONFLICT_DETECTED: "bold red",
    EventType.WORKFLOW_PAUSED: "bold yellow",
    EventType.PLAN_AT_RISK: "bold red",
    EventType.WORKFLOW_COMPLETED: "bold green",
}


@dataclass
class PlanningResult:
    """Everything produced before execution starts."""

    parsed: ParsedGoal
    draft: ExecutionPlan
    plan: ExecutionPlan
    validation: ValidationResult
    comparison: PlanComparison | None = None


async def load_learning(*, use_db: bool = False) -> LearningService:
    store = SqlLearningStore() if use_db else InMemoryLearningStore()
    service = LearningService(store)
    await service.refresh()
    return service


async def load_engine_config(*, use_db: bool = False) -> EngineConfig:
    config = EngineConfig.from_settings()
    if use_db:
        async with db.get_session() as session:
            config = config.with_overrides(await db.get_engine_overrides(session))
    return config


async def load_phase_provider(*, use_db: bool = False) -> PhaseProvider:
    if use_db:
        async with db.get_session() as session:
            return await resolve_phase_provider(session)
    return await resolve_phase_provider()


def plan_goal(
    goal: str,
    *,
    learning: LearningService | None = None,
    phase_provider: PhaseProvider | None = None,
    strategy: OptimizationStrategy | str | None = None,
    constraints: GoalConstraints | None = None,
    parser: GoalParser | None = None,
) -> PlanningResult:
    """Parse and plan a goal.

    With a ``strategy`` the draft is optimized once; without one every
    strategy is tried and the comparison's recommendation wins.
    """
    parser = parser or GoalParser()
    generator = PlanGenerator(phase_provider, advisor=learning)
    optimizer = ExecutionOptimizer(advisor=learning)

    parsed = parser.parse(goal, constraints)
    draft = generator.generate(parsed)
    validation = generator.ensure_valid(draft)

    if strategy is not None:
        return PlanningResult(parsed, draft, optimizer.optimize(draft, strategy), validation)

    comparison = optimizer.compare_plans(optimizer.candidate_plans(draft))
    return PlanningResult(parsed, draft, comparison.recommended, validation, comparison)


def print_event(event: OrchestratorEvent) -> None:
    style = EVENT_STYLES.get(event.type, "dim")
    console.print(f"[{style}]{event.type.value:<24}[/{style}] {event.message}")


async def execute_plan(
    plan: ExecutionPlan,
    *,
    agent: Agent | None = None,
    agent_types: Iterable[str] | None = None,
    per_type: int = 1,
    learning: LearningService | None = None,
    config: EngineConfig | None = None,
    events: EventStream | None = None,
) -> tuple[OrchestratorEngine, ExecutionReport]:
    """Run a plan with one slot pool per agent type the plan uses."""
    agent = agent or SimulatedAgent()
    types = agent_types if agent_types is not None else [t.agent_type for t in plan.tasks]
    engine = OrchestratorEngine(
        plan,
        default_slots(types, agent, per_type=per_type),
        config=config,
        learning=learning,
        events=events,
    )
    report = await engine.run()
    return engine, report


async def orchestrate(
    goal: str,
    *,
    strategy: OptimizationStrategy | str | None = None,
    use_db: bool = False,
    publish: bool = False,
    agent: Agent | None = None,
    per_type: int = 1,
    quiet: bool = False,
) -> tuple[PlanningResult, ExecutionReport]:
    """Plan a goal and execute it, printing progress."""
    learning = await load_learning(use_db=use_db)
    config = await load_engine_config(use_db=use_db)
    provider = await load_phase_provider(use_db=use_db)

    if not quiet:
        console.print("\n[bold]Phase 1: Goal Analysis & Planning[/bold]")
    planning = plan_goal(goal, learning=learning, phase_provider=provider, strategy=strategy)
    plan = planning.plan
    if not quiet:
        console.print(f"  Intent: {planning.parsed.intent.value} ({planning.parsed.complexity.value})")
        console.print(f"  Tasks: {len(plan.tasks)}, strategy: {plan.strategy}, width: {plan.max_parallel}")
        console.print(f"  Estimate: {plan.estimated_minutes:.0f} min, risk: {plan.risk.overall.value}")
        if planning.comparison:
            console.print(f"  [dim]{planning.comparison.rationale}[/dim]")
        for warning in planning.validation.warnings:
            console.print(f"  [yellow]Warning:[/yellow] {warning}")

    events = EventStream()
    install_handlers(events, persist=use_db, publish=publish)
    if not quiet:
        events.on_event(print_event)
        console.print("\n[bold]Phase 2: Execution[/bold]")

    _, report = await execute_plan(
        plan,
        agent=agent,
        per_type=per_type,
        learning=learning,
        config=config,
        events=events,
    )

    new_lessons = await learning.analyze_patterns()
    if not quiet:
        console.print("\n[bold]Phase 3: Learning[/bold]")
        console.print(f"  Run finished as [cyan]{report.status.value}[/cyan] after {report.attempts} attempts")
        console.print(f"  Lessons updated: {len(new_lessons)}")
    return planning, report
