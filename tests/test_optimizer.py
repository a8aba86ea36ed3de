import pytest

from goalflow.config import Settings
from goalflow.domain import (
    LessonType,
    PlanStatus,
    Recommendation,
    RecommendationTarget,
    RiskLevel,
    TaskStatus,
)
from goalflow.goal_parser import GoalParser
from goalflow.optimizer import (
    AdaptationTrigger,
    ExecutionContext,
    ExecutionOptimizer,
    OptimizationStrategy,
)
from goalflow.plan_generator import PlanGenerator


@pytest.fixture
def user_api_plan():
    parsed = GoalParser().parse("Build a RESTful API for user management")
    return PlanGenerator(config=Settings(max_parallel=4)).generate(parsed)


@pytest.fixture
def optimizer():
    return ExecutionOptimizer(config=Settings())


def batch_ids(batches):
    return [[t.id for t in batch] for batch in batches]


# =============================================================================
# Batching
# =============================================================================


def test_balanced_batches_for_user_api(user_api_plan, optimizer) -> None:
    plan = optimizer.optimize(user_api_plan, OptimizationStrategy.BALANCED)
    batches = optimizer.get_execution_order(plan)

    assert batch_ids(batches) == [
        ["define_models"],
        ["create_schema", "api_controllers"],
        ["service_layer", "input_validation"],
        ["unit_tests"],
        ["integration_tests"],
    ]
    assert optimizer.estimate_order_duration(batches) == 270
    assert optimizer.scheduled_minutes(plan) < plan.sequential_minutes


def test_independent_tasks_share_one_batch(make_task, make_plan, optimizer) -> None:
    plan = make_plan([make_task("a", 60), make_task("b", 45), make_task("c", 30)])

    batches = optimizer.get_execution_order(plan)

    assert len(batches) == 1
    assert optimizer.estimate_order_duration(batches) == 60


def test_width_splits_wide_layers(make_task, make_plan, optimizer) -> None:
    plan = make_plan([make_task(f"t{i}", 10) for i in range(5)], max_parallel=2)

    batches = optimizer.get_execution_order(plan)

    assert [len(b) for b in batches] == [2, 2, 1]


def test_non_parallel_task_gets_its_own_batch(make_task, make_plan, optimizer) -> None:
    plan = make_plan(
        [make_task("a", 10), make_task("solo", 10, parallel_eligible=False), make_task("c", 10)]
    )

    batches = batch_ids(optimizer.get_execution_order(plan))

    assert ["solo"] in batches
    assert all(len(b) == 1 or "solo" not in b for b in batches)


def test_excluded_statuses_are_left_out(make_task, make_plan, optimizer) -> None:
    plan = make_plan(
        [
            make_task("a", 10, status=TaskStatus.FAILED),
            make_task("b", 10, status=TaskStatus.BLOCKED),
            make_task("c", 10),
        ]
    )

    assert batch_ids(optimizer.get_execution_order(plan)) == [["c"]]


def test_dependents_of_blocked_tasks_are_left_out(make_task, make_plan, optimizer) -> None:
    plan = make_plan([make_task("a", 10), make_task("b", 10, deps=["a"]), make_task("c", 10, deps=["b"])])

    blocked, _ = optimizer.adapt_plan(
        plan,
        ExecutionContext(manual_changes={"a": {"status": TaskStatus.BLOCKED}}),
        AdaptationTrigger.MANUAL,
        "held for review",
    )

    assert optimizer.get_execution_order(blocked) == []


def test_soft_dependency_on_skipped_task_is_met(make_task, make_plan, optimizer) -> None:
    plan = make_plan(
        [
            make_task("lint", 10, status=TaskStatus.SKIPPED),
            make_task("fix_lint", 10, deps=["lint"]),
            make_task("report", 10, soft=["lint"]),
            make_task("waits_on_blocked", 10, soft=["held"]),
            make_task("held", 10, status=TaskStatus.BLOCKED),
        ]
    )

    assert batch_ids(optimizer.get_execution_order(plan)) == [["report"]]


# =============================================================================
# Strategies
# =============================================================================


def test_minimize_risk_adds_reviews_and_narrows(user_api_plan, optimizer) -> None:
    plan = optimizer.optimize(user_api_plan, OptimizationStrategy.MINIMIZE_RISK)

    assert "define_models_review" in plan.task_ids
    assert "create_schema_review" in plan.task_ids
    assert "define_models_review" in plan.task("create_schema").dependencies
    assert plan.max_parallel == 2
    assert plan.risk.overall == RiskLevel.LOW
    assert plan.version == user_api_plan.version + 1


def test_maximize_parallelization_drops_soft_edges(user_api_plan, optimizer) -> None:
    plan = optimizer.optimize(user_api_plan, OptimizationStrategy.MAXIMIZE_PARALLELIZATION)

    assert plan.task("integration_tests").dependencies == {"api_controllers"}
    assert plan.max_parallel >= 8
    assert plan.estimated_minutes < user_api_plan.estimated_minutes


def test_minimize_duration_makes_everything_parallel(make_task, make_plan, optimizer) -> None:
    plan = make_plan([make_task("a", parallel_eligible=False), make_task("b")])

    optimized = optimizer.optimize(plan, "minimize_duration")

    assert optimized.parallel_fraction == 1.0
    assert optimized.strategy == "minimize_duration"


def test_compare_plans_recommends_a_candidate(user_api_plan, optimizer) -> None:
    candidates = optimizer.candidate_plans(user_api_plan)

    comparison = optimizer.compare_plans(candidates)

    assert len(comparison.scores) == len(OptimizationStrategy)
    assert comparison.recommended in candidates
    best = max(comparison.scores, key=lambda s: s.weighted_total)
    assert comparison.recommended.id == best.plan_id
    assert comparison.recommended.strategy in comparison.rationale
    assert all(0 < s.duration_score <= 1 for s in comparison.scores)


def test_compare_plans_needs_input(optimizer) -> None:
    with pytest.raises(ValueError):
        optimizer.compare_plans([])


class ParallelAdvisor:
    def get_recommendations(self, goal, task_type=None):
        return [
            Recommendation(
                lesson_signature="sig-parallel",
                lesson_type=LessonType.PARALLEL_EXECUTION,
                target=RecommendationTarget.PARALLELIZATION,
                priority="high",
                confidence=0.9,
                message="api_implementation and testing tasks can run in parallel",
                details={"task_types": ["api_implementation", "testing"]},
            )
        ]


def test_parallel_lesson_breaks_soft_edges(make_task, make_plan) -> None:
    plan = make_plan(
        [
            make_task("api", 30),
            make_task("tests", 30, deps=["api"], soft=["api"], task_type="testing"),
        ]
    )
    optimizer = ExecutionOptimizer(advisor=ParallelAdvisor(), config=Settings())

    optimized = optimizer.optimize(plan)

    assert optimized.task("tests").dependencies == frozenset()
    assert optimized.applied_lessons[0].signature == "sig-parallel"
    assert optimized.estimated_minutes == 30


# =============================================================================
# Adaptation
# =============================================================================


def test_critical_failure_blocks_descendants(user_api_plan, optimizer) -> None:
    adapted, adaptation = optimizer.adapt_plan(
        user_api_plan,
        ExecutionContext(failed_tasks=("create_schema",)),
        AdaptationTrigger.TASK_FAILURE,
        "migration failed",
    )

    assert adapted.status == PlanStatus.AT_RISK
    assert adapted.version == user_api_plan.version + 1
    assert adapted.task("create_schema").status == TaskStatus.FAILED
    blocked = {t.id for t in adapted.tasks if t.status == TaskStatus.BLOCKED}
    assert blocked == {"service_layer", "unit_tests", "integration_tests"}
    assert adaptation.impact.risk_change == "increased"
    assert adaptation.from_version == user_api_plan.version
    assert user_api_plan.task("create_schema").status == TaskStatus.PENDING


def test_non_critical_failure_is_skipped(user_api_plan, optimizer) -> None:
    adapted, adaptation = optimizer.adapt_plan(
        user_api_plan,
        ExecutionContext(failed_tasks=("input_validation",)),
        AdaptationTrigger.TASK_FAILURE,
        "validator crashed",
    )

    assert adapted.task("input_validation").status == TaskStatus.SKIPPED
    assert adapted.status == user_api_plan.status
    assert adaptation.impact.tasks_affected == 1


def test_conflict_pauses_plan(user_api_plan, optimizer) -> None:
    adapted, _ = optimizer.adapt_plan(
        user_api_plan,
        ExecutionContext(current_task="api_controllers"),
        AdaptationTrigger.CONFLICT_DETECTED,
        "security finding",
    )

    assert adapted.status == PlanStatus.PAUSED
    blocked = {t.id for t in adapted.tasks if t.status == TaskStatus.BLOCKED}
    assert blocked == {"api_controllers", "input_validation", "integration_tests"}


def test_time_overrun_raises_width(make_task, make_plan, optimizer) -> None:
    plan = make_plan(
        [
            make_task("long", 60),
            make_task("short", 10, parallel_eligible=False),
        ],
        max_parallel=2,
    )

    adapted, adaptation = optimizer.adapt_plan(
        plan, ExecutionContext(elapsed_minutes=90), AdaptationTrigger.TIME_OVERRUN, "slow"
    )

    assert adapted.max_parallel == 4
    assert adapted.task("short").parallel_eligible
    assert ("max_parallel", 2, 4) in adaptation.plan_changes


def test_dependency_change_rewires_tasks(make_task, make_plan, optimizer) -> None:
    plan = make_plan([make_task("a", 10), make_task("b", 10), make_task("c", 10, deps=["a"])])

    adapted, adaptation = optimizer.adapt_plan(
        plan,
        ExecutionContext(dependency_updates={"c": frozenset({"b"})}),
        AdaptationTrigger.DEPENDENCY_CHANGE,
        "c now needs b",
    )

    assert adapted.task("c").dependencies == {"b"}
    assert adaptation.changes[0].field == "dependencies"
    assert adaptation.to_dict()["changes"][0]["after"] == ["b"]


def test_manual_changes_apply(make_task, make_plan, optimizer) -> None:
    plan = make_plan([make_task("a", 10)])

    adapted, adaptation = optimizer.adapt_plan(
        plan,
        ExecutionContext(manual_changes={"a": {"estimated_minutes": 25.0}}, max_parallel=1),
        AdaptationTrigger.MANUAL,
        "re-estimated",
    )

    assert adapted.task("a").estimated_minutes == 25.0
    assert adapted.estimated_minutes == 25.0
    assert adapted.max_parallel == 1
    assert adaptation.impact.minutes_change == 15.0
