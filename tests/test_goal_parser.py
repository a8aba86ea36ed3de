import re

from goalflow.domain import (
    AgentType,
    Capability,
    Complexity,
    EntityType,
    GoalConstraints,
    Intent,
    goal_hash,
)
from goalflow.goal_parser import GoalParser, GoalTemplate


def test_restful_api_goal_matches_resource_template() -> None:
    parsed = GoalParser().parse("Build a RESTful API for user management")

    assert parsed.intent == Intent.BUILD
    assert parsed.template_id == "api-for-resource"
    assert parsed.complexity == Complexity.MODERATE
    assert [(e.type, e.name) for e in parsed.entities] == [(EntityType.RESOURCE, "user")]
    assert Capability.API in parsed.capabilities
    assert Capability.DATABASE in parsed.capabilities
    assert AgentType.MODELS in parsed.suggested_agents
    assert parsed.metadata.requires_database
    assert parsed.confidence == 0.9


def test_template_accepts_plain_api_wording() -> None:
    parsed = GoalParser().parse("Create API for products")

    assert parsed.template_id == "api-for-resource"
    assert parsed.entities[0].name == "products"


def test_keyword_fallback_infers_capabilities_and_entities() -> None:
    parsed = GoalParser().parse("Improve dashboard performance with caching")

    assert parsed.template_id is None
    assert parsed.intent == Intent.IMPROVE
    assert parsed.capabilities == (Capability.UI, Capability.PERFORMANCE, Capability.CACHING)
    assert {e.type for e in parsed.entities} == {EntityType.FEATURE, EntityType.PERFORMANCE}
    assert parsed.complexity == Complexity.MODERATE
    assert parsed.confidence == 0.6


def test_empty_goal_never_raises() -> None:
    parsed = GoalParser().parse("")

    assert parsed.intent == Intent.BUILD
    assert parsed.capabilities == (Capability.API, Capability.CRUD)
    assert parsed.entities == ()


def test_authentication_goal_is_complex_and_security_flagged() -> None:
    parsed = GoalParser().parse("Add authentication to the admin portal")

    assert parsed.template_id == "add-authentication"
    assert parsed.intent == Intent.ADD
    assert parsed.complexity == Complexity.COMPLEX
    assert parsed.metadata.requires_auth
    assert AgentType.SECURITY in parsed.suggested_agents


def test_custom_template_can_take_precedence() -> None:
    parser = GoalParser()
    parser.add_template(
        GoalTemplate(
            id="billing",
            name="Billing API",
            pattern=re.compile(r"api\s+for\s+billing"),
            description="Billing endpoints",
            capabilities=(Capability.API, Capability.SECURITY),
            suggested_agents=(AgentType.API, AgentType.SECURITY),
            estimated_minutes=120,
            complexity=Complexity.COMPLEX,
        ),
        first=True,
    )

    assert parser.parse("Build an API for billing").template_id == "billing"
    assert parser.remove_template("billing")
    assert parser.parse("Build an API for billing").template_id == "api-for-resource"


def test_constraints_are_carried_through() -> None:
    constraints = GoalConstraints(max_minutes=90)
    parsed = GoalParser().parse("Document the billing service", constraints)

    assert parsed.constraints.max_minutes == 90
    assert parsed.intent == Intent.DOCUMENT


def test_goal_hash_ignores_case_and_spacing() -> None:
    parser = GoalParser()
    first = parser.parse("Build a RESTful API for user management")
    second = parser.parse("  build a restful   API for USER management ")

    assert first.goal_hash == second.goal_hash == goal_hash("build a restful api for user management")
