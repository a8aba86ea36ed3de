"""Main CLI entry point for goalflow."""

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .agents import SimulatedAgent
from .config import EngineConfig, settings
from .domain import ExecutionPlan, LessonType
from .goal_parser import GoalParser
from .learning import LearningService
from .optimizer import ExecutionOptimizer, OptimizationStrategy
from .orchestrate import execute_plan, load_learning, orchestrate, plan_goal
from .queue import RedisQueueAgent
from .store import SqlLearningStore

console = Console()

STRATEGIES = [s.value for s in OptimizationStrategy]
REQUIRED_TABLES = {
    "plans",
    "plan_versions",
    "plan_adaptations",
    "event_log",
    "execution_history",
    "lessons",
    "guardrails",
}


def _plan_table(plan: ExecutionPlan) -> Table:
    graph = plan.graph
    table = Table(title=f"Plan {plan.id[:8]} v{plan.version} ({plan.strategy})")
    table.add_column("Task", style="cyan")
    table.add_column("Agent")
    table.add_column("Phase")
    table.add_column("Priority")
    table.add_column("Minutes", justify="right")
    table.add_column("Depends on")
    table.add_column("Slack", justify="right")
    for task_id in graph.topological_order:
        task = plan.task(task_id)
        slack = graph.slack(task_id)
        table.add_row(
            task.id,
            task.agent_type,
            task.phase,
            task.priority.value,
            f"{task.estimated_minutes:.0f}",
            ", ".join(sorted(task.dependencies)) or "-",
            "[red]critical[/red]" if slack == 0 else f"{slack:.0f}",
        )
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Goal-based orchestration CLI.

    Turn a natural-language goal into a dependency-aware plan, run it on agents
    and learn from the execution history.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@main.command()
@click.argument("goal")
@click.option("--as-json", "as_json", is_flag=True, help="Print the parsed goal as JSON")
def parse(goal: str, as_json: bool) -> None:
    """Parse a goal into intent, entities and capabilities.

    GOAL: Natural-language description of what you want to build
    """
    parsed = GoalParser().parse(goal)
    if as_json:
        console.print_json(json.dumps(parsed.to_dict()))
        return

    console.print(
        Panel(
            f"Intent: [cyan]{parsed.intent.value}[/cyan]\n"
            f"Complexity: {parsed.complexity.value}\n"
            f"Template: {parsed.template_id or 'keyword analysis'}\n"
            f"Confidence: {parsed.confidence:.2f}\n"
            f"Capabilities: {', '.join(c.value for c in parsed.capabilities) or '-'}\n"
            f"Agents: {', '.join(a.value for a in parsed.suggested_agents) or '-'}\n"
            f"Entities: {', '.join(e.name for e in parsed.entities) or '-'}",
            title=parsed.normalized_goal,
        )
    )


@main.command()
@click.argument("goal")
@click.option("--strategy", "-s", type=click.Choice(STRATEGIES), default=None, help="Optimization strategy")
@click.option("--as-json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(goal: str, strategy: str | None, as_json: bool) -> None:
    """Generate an execution plan for a goal.

    GOAL: Natural-language description of what you want to build
    """
    result = plan_goal(goal, strategy=strategy or OptimizationStrategy.BALANCED)
    if as_json:
        console.print_json(json.dumps(result.plan.to_dict(), default=str))
        return

    plan_ = result.plan
    console.print(_plan_table(plan_))
    console.print(
        f"Critical path: {' -> '.join(plan_.graph.critical_path)} "
        f"({plan_.estimated_minutes:.0f} min)"
    )
    console.print(f"Risk: {plan_.risk.overall.value}, width: {plan_.max_parallel}")
    for milestone in plan_.milestones:
        console.print(f"  [bold]{milestone.name}[/bold]: {len(milestone.task_ids)} tasks")
    for opportunity in plan_.opportunities:
        console.print(f"  [green]Parallel:[/green] {opportunity.reason}")
    for warning in result.validation.warnings:
        console.print(f"  [yellow]Warning:[/yellow] {warning}")


@main.command()
@click.argument("goal")
def compare(goal: str) -> None:
    """Compare every optimization strategy for a goal.

    GOAL: Natural-language description of what you want to build
    """
    result = plan_goal(goal)
    assert result.comparison is not None
    optimizer = ExecutionOptimizer()

    table = Table(title="Strategy Comparison")
    table.add_column("Strategy", style="cyan")
    table.add_column("Scheduled min", justify="right")
    table.add_column("Risk")
    table.add_column("Parallel", justify="right")
    table.add_column("Score", justify="right")
    for score in result.comparison.scores:
        marker = " *" if score.plan_id == result.comparison.recommended.id else ""
        table.add_row(
            score.strategy + marker,
            f"{score.duration_minutes:.0f}",
            f"{score.risk_score:.2f}",
            f"{score.parallel_score:.0%}",
            f"{score.weighted_total:.3f}",
        )
    console.print(table)
    console.print(f"\n[bold]Recommended:[/bold] {result.comparison.recommended.strategy}")
    console.print(result.comparison.rationale)
    for tradeoff in result.comparison.tradeoffs:
        console.print(f"  - {tradeoff}")

    batches = optimizer.get_execution_order(result.plan)
    console.print(f"\nExecution order ({len(batches)} batches):")
    for index, batch in enumerate(batches, start=1):
        console.print(f"  {index}. {', '.join(t.id for t in batch)}")


@main.command()
@click.argument("goal")
@click.option("--strategy", "-s", type=click.Choice(STRATEGIES), default=None, help="Optimization strategy")
@click.option("--db/--no-db", "use_db", default=False, help="Persist history and lessons in Postgres")
@click.option("--publish", is_flag=True, help="Publish lifecycle events to Redis")
@click.option("--remote", is_flag=True, help="Dispatch tasks to Redis workers instead of local agents")
@click.option("--failure-rate", default=0.0, show_default=True, help="Simulated agent failure rate")
@click.option("--per-type", default=1, show_default=True, help="Agent slots per agent type")
@click.option("--seconds-per-minute", default=0.01, show_default=True, help="Simulated seconds per minute")
def run(
    goal: str,
    strategy: str | None,
    use_db: bool,
    publish: bool,
    remote: bool,
    failure_rate: float,
    per_type: int,
    seconds_per_minute: float,
) -> None:
    """Plan and execute a goal.

    GOAL: Natural-language description of what you want to build
    """
    if remote:
        agent = RedisQueueAgent()
    else:
        agent = SimulatedAgent(failure_rate=failure_rate, seconds_per_minute=seconds_per_minute)

    _, report = asyncio.run(
        orchestrate(goal, strategy=strategy, use_db=use_db, publish=publish, agent=agent, per_type=per_type)
    )
    if report.blocking:
        table = Table(title="Unfinished Tasks")
        table.add_column("Task", style="cyan")
        table.add_column("Status")
        table.add_column("Reason")
        for item in report.blocking:
            table.add_row(item.task_id, item.status.value, item.reason)
        console.print(table)
    if report.status.value != "completed":
        raise SystemExit(1)


async def _sql_learning() -> LearningService:
    service = LearningService(SqlLearningStore())
    await service.refresh()
    return service


@main.command()
@click.option(
    "--type",
    "lesson_type",
    type=click.Choice([t.value for t in LessonType]),
    default=None,
    help="Only show one lesson type",
)
@click.option("--limit", "-l", default=20, help="Maximum lessons to show")
def lessons(lesson_type: str | None, limit: int) -> None:
    """List learned lessons."""

    async def show() -> None:
        async with db.get_session() as session:
            found = await db.list_lessons(session, lesson_type=lesson_type)

        if not found:
            console.print("[dim]No lessons learned yet[/dim]")
            return

        table = Table(title="Lessons")
        table.add_column("Type", style="cyan")
        table.add_column("Recommendation")
        table.add_column("Confidence", justify="right")
        table.add_column("Samples", justify="right")
        table.add_column("Applied", justify="right")
        table.add_column("Effective", justify="right")
        for lesson in found[:limit]:
            effectiveness = lesson.effectiveness
            table.add_row(
                lesson.lesson_type.value,
                lesson.recommendation,
                f"{lesson.confidence:.2f}",
                str(lesson.sample_size),
                str(lesson.times_applied),
                f"{effectiveness:.0%}" if effectiveness is not None else "-",
            )
        console.print(table)

    asyncio.run(show())


@main.command()
def analyze() -> None:
    """Mine the execution history for new or updated lessons."""

    async def do_analyze() -> None:
        service = await _sql_learning()
        updated = await service.analyze_patterns()
        console.print(f"[green]Analyzed {len(service.records)} records, {len(updated)} lessons updated[/green]")
        for lesson in updated:
            console.print(f"  \\[{lesson.lesson_type.value}] {lesson.recommendation} ({lesson.confidence:.2f})")

    asyncio.run(do_analyze())


@main.command()
@click.argument("goal")
@click.option("--task-type", default=None, help="Restrict to one task type")
def recommend(goal: str, task_type: str | None) -> None:
    """Show lesson-backed recommendations for a goal.

    GOAL: Natural-language description of what you want to build
    """

    async def show() -> None:
        service = await _sql_learning()
        found = service.get_recommendations(goal, task_type)
        if not found:
            console.print("[dim]No recommendations above the confidence threshold[/dim]")
            return
        for rec in found:
            console.print(f"\\[{rec.priority}] [cyan]{rec.target.value}[/cyan] {rec.message} ({rec.confidence:.2f})")

    asyncio.run(show())


@main.command(name="best-agent")
@click.argument("task_type")
def best_agent(task_type: str) -> None:
    """Show the best agent and predicted duration for a task type.

    TASK_TYPE: Task type such as implementation or testing
    """

    async def show() -> None:
        service = await _sql_learning()
        selection = service.get_best_agent_for_task(task_type)
        prediction = service.get_predicted_duration(selection.agent_type, task_type)
        console.print(
            Panel(
                f"Agent: [cyan]{selection.agent_type}[/cyan] ({selection.source})\n"
                f"Confidence: {selection.confidence:.2f}\n"
                f"Estimate: {prediction.estimate:.0f} min "
                f"(p50 {prediction.p50:.0f}, p95 {prediction.p95:.0f}, p99 {prediction.p99:.0f})\n"
                f"Samples: {prediction.samples}",
                title=f"Task type: {task_type}",
            )
        )

    asyncio.run(show())


@main.command()
def stats() -> None:
    """Show learning statistics."""

    async def show() -> None:
        service = await _sql_learning()
        console.print_json(json.dumps(service.learning_stats(), default=str))

    asyncio.run(show())


@main.command(name="engine-config")
@click.option("--set", "assignments", multiple=True, help="Store an override as key=value (JSON value)")
def engine_config(assignments: tuple[str, ...]) -> None:
    """Show or update the engine configuration overrides."""

    async def do_config() -> None:
        async with db.get_session() as session:
            overrides = await db.get_engine_overrides(session)
            for assignment in assignments:
                key, _, raw = assignment.partition("=")
                try:
                    overrides[key] = json.loads(raw)
                except json.JSONDecodeError:
                    overrides[key] = raw
            if assignments:
                await db.set_guardrail(session, db.ENGINE_CONFIG_KEY, overrides, "Engine configuration overrides")

        config = EngineConfig.from_settings().with_overrides(overrides)
        console.print_json(json.dumps(config.to_dict()))

    asyncio.run(do_config())


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development only; use alembic in production)."""
    asyncio.run(db.init_db())
    console.print("[green]Tables created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import text

        async with db.get_session() as session:
            result = await session.execute(
                text("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'")
            )
            tables = {row[0] for row in result}

        missing = REQUIRED_TABLES - tables
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def db_info() -> None:
    """Show database connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}\n"
            f"Redis: {settings.redis_url}",
            title="Database Configuration",
        )
    )


@main.command(name="simulate-history")
@click.argument("goal")
@click.option("--runs", default=5, show_default=True, help="Number of simulated runs")
@click.option("--failure-rate", default=0.1, show_default=True, help="Simulated agent failure rate")
def simulate_history(goal: str, runs: int, failure_rate: float) -> None:
    """Run a goal several times in memory and show what would be learned.

    GOAL: Natural-language description of what you want to build
    """

    async def simulate() -> None:
        learning = await load_learning()
        agent = SimulatedAgent(failure_rate=failure_rate, seconds_per_minute=0.0)
        config = EngineConfig.from_settings().with_overrides({"tick_interval_seconds": 0.0})
        for _ in range(runs):
            result = plan_goal(goal, learning=learning, strategy=OptimizationStrategy.BALANCED)
            _, report = await execute_plan(result.plan, agent=agent, learning=learning, config=config)
            console.print(f"  run {report.run_id[:8]}: {report.status.value}, {report.attempts} attempts")
        updated = await learning.analyze_patterns()
        for lesson in updated:
            console.print(f"  \\[{lesson.lesson_type.value}] {lesson.recommendation} ({lesson.confidence:.2f})")

    asyncio.run(simulate())


if __name__ == "__main__":
    main()
