import pytest

from goalflow.config import Settings
from goalflow.domain import (
    ExecutionPlan,
    GoalConstraints,
    LessonType,
    RiskLevel,
    TaskPriority,
    new_id,
)
from goalflow.errors import CircularDependencyError, PlanValidationError
from goalflow.goal_parser import GoalParser
from goalflow.phases import StaticPhaseProvider, phases_from_config
from goalflow.plan_generator import AgentSelection, DurationPrediction, PlanGenerator

USER_API_GOAL = "Build a RESTful API for user management"


@pytest.fixture
def user_api_plan():
    parsed = GoalParser().parse(USER_API_GOAL)
    return PlanGenerator(config=Settings(max_parallel=4)).generate(parsed)


def test_user_api_plan_has_expected_tasks(user_api_plan) -> None:
    assert user_api_plan.task_ids == [
        "define_models",
        "create_schema",
        "api_controllers",
        "service_layer",
        "input_validation",
        "unit_tests",
        "integration_tests",
    ]
    assert [m.phase for m in user_api_plan.milestones] == ["models", "database", "api", "quality", "testing"]
    assert user_api_plan.task("service_layer").dependencies == {"define_models", "create_schema"}
    assert user_api_plan.task("integration_tests").soft_dependencies == {"unit_tests"}


def test_user_api_plan_timing_and_risk(user_api_plan) -> None:
    assert user_api_plan.estimated_minutes == 255
    assert user_api_plan.sequential_minutes == 360
    assert user_api_plan.graph.critical_path == [
        "define_models",
        "create_schema",
        "service_layer",
        "unit_tests",
        "integration_tests",
    ]
    # Only the timeline risk applies: 0.6 * 0.7
    assert user_api_plan.risk.overall == RiskLevel.MEDIUM
    assert [r.category for r in user_api_plan.risk.risks] == ["timeline"]


def test_generated_plan_validates(user_api_plan) -> None:
    result = PlanGenerator().validate(user_api_plan)

    assert result.is_valid
    assert result.errors == ()
    assert result.suggestions


def test_milestones_are_cumulative(user_api_plan) -> None:
    targets = [m.target_minutes for m in user_api_plan.milestones]

    assert targets == sorted(targets)
    assert user_api_plan.milestones[0].blocking
    assert not user_api_plan.milestones[2].blocking


def test_authentication_goal_adds_security_phase() -> None:
    parsed = GoalParser().parse("Add authentication")
    plan = PlanGenerator().generate(parsed)

    auth = plan.task("authentication")
    assert auth.security_sensitive
    assert auth.priority == TaskPriority.CRITICAL
    assert "rbac" not in plan.task_ids
    assert {r.category for r in plan.risk.risks} >= {"complexity", "security"}


def test_validate_reports_structural_errors(make_task) -> None:
    tasks = (
        make_task("a", deps=["missing"]),
        make_task("b", agent_type="wizard"),
        make_task("c", minutes=0),
    )
    plan = ExecutionPlan(id=new_id(), goal="broken", parsed_goal=None, tasks=tasks)

    result = PlanGenerator().validate(plan)

    assert not result.is_valid
    assert {e.kind for e in result.errors} == {"missing_dependency", "invalid_agent", "invalid_duration"}
    with pytest.raises(PlanValidationError) as excinfo:
        PlanGenerator().ensure_valid(plan)
    assert len(excinfo.value.issues) == 3


def test_ensure_valid_raises_on_cycle(make_task) -> None:
    tasks = (make_task("a", deps=["b"]), make_task("b", deps=["a"]))
    plan = ExecutionPlan(id=new_id(), goal="cyclic", parsed_goal=None, tasks=tasks)

    with pytest.raises(CircularDependencyError):
        PlanGenerator().ensure_valid(plan)


def test_constraint_and_length_warnings() -> None:
    parsed = GoalParser().parse(USER_API_GOAL, GoalConstraints(max_minutes=120))
    generator = PlanGenerator(config=Settings(max_plan_minutes=200))
    plan = generator.generate(parsed)

    warnings = generator.validate(plan).warnings

    assert any("over the 120 min limit" in w for w in warnings)
    assert any("exceeds" in w for w in warnings)


def test_phases_come_from_configuration() -> None:
    provider = StaticPhaseProvider(
        phases_from_config(
            [
                {
                    "name": "spike",
                    "triggers": ["api"],
                    "tasks": [
                        {"key": "research", "agent_type": "api", "task_type": "api_implementation", "estimated_minutes": 20},
                        {
                            "key": "prototype",
                            "agent_type": "api",
                            "task_type": "api_implementation",
                            "estimated_minutes": 40,
                            "depends_on": ["research", "not_included"],
                        },
                    ],
                }
            ]
        )
    )
    plan = PlanGenerator(provider).generate(GoalParser().parse("Create API for orders"))

    assert plan.task_ids == ["research", "prototype"]
    assert plan.task("prototype").dependencies == {"research"}
    assert plan.estimated_minutes == 60


def test_phase_config_requires_tasks() -> None:
    with pytest.raises(ValueError):
        phases_from_config([{"name": "empty", "tasks": []}])


class StubAdvisor:
    def get_best_agent_for_task(self, task_type):
        if task_type == "testing":
            return AgentSelection("quality", 0.9, "lesson", lesson_signature="sig-agent")
        return AgentSelection("api", 0.5, "default")

    def get_predicted_duration(self, agent_type, task_type, default_minutes=None):
        if task_type == "model_definition":
            return DurationPrediction(50.0, 50.0, 60.0, 70.0, 8, 0.8, lesson_signature="sig-time")
        return DurationPrediction(default_minutes, default_minutes, default_minutes, default_minutes, 0, 0.1)


def test_lessons_adjust_agents_and_estimates() -> None:
    plan = PlanGenerator(advisor=StubAdvisor()).generate(GoalParser().parse(USER_API_GOAL))

    assert plan.task("unit_tests").agent_type == "quality"
    assert plan.task("define_models").estimated_minutes == 50.0
    applied = {a.signature: a for a in plan.applied_lessons}
    assert applied["sig-agent"].lesson_type == LessonType.AGENT_SELECTION.value
    assert set(applied["sig-agent"].task_ids) == {"unit_tests", "integration_tests"}
    assert applied["sig-time"].task_ids == ("define_models",)
