"""
Basic Goal Example

Plans a goal, runs it several times on simulated agents and shows what the
learning service picked up from the history. Everything stays in memory.

Usage:
    python examples/basic_goal.py
    python examples/basic_goal.py "Add authentication to the admin portal"
"""

import asyncio
import sys

from rich.console import Console
from rich.table import Table

from goalflow.agents import SimulatedAgent
from goalflow.config import EngineConfig
from goalflow.events import EventStream
from goalflow.learning import LearningService
from goalflow.optimizer import ExecutionOptimizer, OptimizationStrategy
from goalflow.orchestrate import execute_plan, plan_goal, print_event
from goalflow.store import InMemoryLearningStore

console = Console()

RUNS = 5


def show_plan(goal: str, learning: LearningService) -> None:
    result = plan_goal(goal, learning=learning)
    plan = result.plan

    table = Table(title=f"{goal} ({plan.strategy})")
    table.add_column("Batch", justify="right")
    table.add_column("Tasks", style="cyan")
    for index, batch in enumerate(ExecutionOptimizer().get_execution_order(plan), 1):
        table.add_row(str(index), ", ".join(task.id for task in batch))
    console.print(table)
    console.print(f"Estimate: {plan.estimated_minutes:.0f} min, risk: {plan.risk.overall.value}")


async def main(goal: str) -> None:
    learning = LearningService(InMemoryLearningStore())
    agent = SimulatedAgent(failure_rate=0.15, seconds_per_minute=0.0, seed=7)
    config = EngineConfig(tick_interval_seconds=0.0)

    console.print("\n[bold blue]Initial plan[/bold blue]")
    show_plan(goal, learning)

    for run in range(1, RUNS + 1):
        events = EventStream()
        if run == 1:
            events.on_event(print_event)
        plan = plan_goal(goal, learning=learning, strategy=OptimizationStrategy.BALANCED).plan
        _, report = await execute_plan(plan, agent=agent, learning=learning, config=config, events=events)
        console.print(
            f"Run {run}: [green]{report.status.value}[/green], "
            f"{len(report.completed)} completed, {report.attempts} attempts"
        )

    lessons = await learning.analyze_patterns()
    console.print(f"\n[bold blue]{len(lessons)} lessons learned[/bold blue]")
    for lesson in lessons:
        console.print(f"  \\[{lesson.lesson_type.value}] {lesson.recommendation} ({lesson.confidence:.2f})")

    for rec in learning.get_recommendations(goal):
        console.print(f"  [yellow]{rec.target.value}[/yellow] {rec.message}")

    console.print("\n[bold blue]Plan after learning[/bold blue]")
    show_plan(goal, learning)


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "Build a RESTful API for user management"))
