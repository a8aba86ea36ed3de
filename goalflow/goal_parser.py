"""
Template and keyword based interpretation of free-text goals.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from .domain import (
    AgentType,
    Capability,
    Complexity,
    EntityType,
    GoalConstraints,
    GoalEntity,
    GoalMetadata,
    Intent,
    ParsedGoal,
    normalize_goal,
)

logger = logging.getLogger(__name__)

TEMPLATE_CONFIDENCE = 0.9
GENERIC_CONFIDENCE = 0.6


@dataclass(frozen=True)
class GoalTemplate:
    """A known goal shape with pre-baked capabilities and agent suggestions."""

    id: str
    name: str
    pattern: re.Pattern[str]
    description: str
    capabilities: tuple[Capability, ...]
    suggested_agents: tuple[AgentType, ...]
    estimated_minutes: int
    complexity: Complexity
    examples: tuple[str, ...] = ()


DEFAULT_TEMPLATES: tuple[GoalTemplate, ...] = (
    GoalTemplate(
        id="api-for-resource",
        name="Build API for Resource",
        pattern=re.compile(
            r"(?:build|create|implement)\s+(?:an?\s+)?(?:rest(?:ful)?\s+)?api\s+for\s+(?P<resource>\w+)",
            re.I,
        ),
        description="RESTful API for a resource with CRUD operations",
        capabilities=(
            Capability.API,
            Capability.CRUD,
            Capability.VALIDATION,
            Capability.DATABASE,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.MODELS, AgentType.API, AgentType.DATABASE, AgentType.TEST),
        estimated_minutes=180,
        complexity=Complexity.MODERATE,
        examples=("Build a RESTful API for user management", "Create API for products"),
    ),
    GoalTemplate(
        id="add-authentication",
        name="Add Authentication",
        pattern=re.compile(r"(?:add|implement|create)\s+(?:user\s+)?authentication", re.I),
        description="Token-based authentication system",
        capabilities=(
            Capability.AUTHENTICATION,
            Capability.SECURITY,
            Capability.API,
            Capability.DATABASE,
            Capability.TESTING,
        ),
        suggested_agents=(
            AgentType.AUTH,
            AgentType.SECURITY,
            AgentType.API,
            AgentType.DATABASE,
            AgentType.TEST,
        ),
        estimated_minutes=240,
        complexity=Complexity.COMPLEX,
        examples=("Add authentication", "Implement user authentication"),
    ),
    GoalTemplate(
        id="add-rbac",
        name="Add Role-Based Access Control",
        pattern=re.compile(
            r"(?:add|implement|create)\s+(?:rbac|role.based|permission|authorization)", re.I
        ),
        description="Role-based access control",
        capabilities=(
            Capability.AUTHORIZATION,
            Capability.SECURITY,
            Capability.DATABASE,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.RBAC, AgentType.SECURITY, AgentType.DATABASE, AgentType.TEST),
        estimated_minutes=180,
        complexity=Complexity.COMPLEX,
        examples=("Add RBAC", "Create permission system"),
    ),
    GoalTemplate(
        id="integrate-with-system",
        name="Integrate with External System",
        pattern=re.compile(r"integrate\s+with\s+(?P<system>\w+)", re.I),
        description="Integration with an external system",
        capabilities=(
            Capability.INTEGRATION,
            Capability.API,
            Capability.VALIDATION,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.INTEGRATION, AgentType.API, AgentType.TEST),
        estimated_minutes=240,
        complexity=Complexity.COMPLEX,
        examples=("Integrate with Slack", "Integrate with GitHub"),
    ),
    GoalTemplate(
        id="add-realtime",
        name="Add Real-time Feature",
        pattern=re.compile(r"(?:add|implement|create)\s+(?:realtime|real.time|websocket|live)", re.I),
        description="Real-time feature over WebSocket",
        capabilities=(Capability.REAL_TIME, Capability.WEBSOCKET, Capability.API, Capability.TESTING),
        suggested_agents=(AgentType.REALTIME, AgentType.API, AgentType.TEST),
        estimated_minutes=180,
        complexity=Complexity.MODERATE,
        examples=("Add real-time notifications", "Implement live updates"),
    ),
    GoalTemplate(
        id="build-ui",
        name="Build User Interface",
        pattern=re.compile(
            r"(?:build|create|implement)\s+(?:an?\s+)?(?:ui|interface|dashboard|form|page)\s+for\s+(?P<feature>\w+)",
            re.I,
        ),
        description="User interface component",
        capabilities=(Capability.UI, Capability.API, Capability.TESTING),
        suggested_agents=(AgentType.UI, AgentType.API, AgentType.TEST),
        estimated_minutes=240,
        complexity=Complexity.MODERATE,
        examples=("Build UI for user management", "Create dashboard for analytics"),
    ),
)


INTENT_PATTERNS: list[tuple[re.Pattern[str], Intent]] = [
    (re.compile(r"\b(build|create|develop|implement)\b"), Intent.BUILD),
    (re.compile(r"\b(add|include|integrate|attach)\b"), Intent.ADD),
    (re.compile(r"\b(improve|enhance|optimi[sz]e|upgrade)\b"), Intent.IMPROVE),
    (re.compile(r"\b(fix|repair|resolve|debug)\b"), Intent.FIX),
    (re.compile(r"\b(refactor|restructure|reorgani[sz]e)\b"), Intent.REFACTOR),
    (re.compile(r"\b(test|verify|validate)\b"), Intent.TEST),
    (re.compile(r"\b(document|describe|explain)\b"), Intent.DOCUMENT),
    (re.compile(r"\b(deploy|release|publish)\b"), Intent.DEPLOY),
]

CAPABILITY_KEYWORDS: list[tuple[re.Pattern[str], tuple[Capability, ...]]] = [
    (
        re.compile(r"\b(api|apis|endpoints?|rest|restful|graphql)\b"),
        (Capability.API, Capability.CRUD, Capability.VALIDATION),
    ),
    (
        re.compile(r"\b(auth|authentication|authenticate|login|sign ?in|sign ?up|register|jwt|tokens?)\b"),
        (Capability.AUTHENTICATION, Capability.SECURITY),
    ),
    (
        re.compile(r"\b(authorization|rbac|permissions?|roles?|access control)\b"),
        (Capability.AUTHORIZATION, Capability.SECURITY),
    ),
    (
        re.compile(r"\b(realtime|real-time|real time|websockets?|sockets?|live|push)\b"),
        (Capability.REAL_TIME, Capability.WEBSOCKET),
    ),
    (re.compile(r"\b(database|db|postgres\w*|mysql|migrations?|schema)\b"), (Capability.DATABASE,)),
    (re.compile(r"\b(ui|interface|dashboard|frontend|pages?|forms?)\b"), (Capability.UI,)),
    (re.compile(r"\b(tests?|testing|specs?|unittest)\b"), (Capability.TESTING,)),
    (re.compile(r"\b(integrate|integration|connect|sync)\b"), (Capability.INTEGRATION,)),
    (re.compile(r"\b(document\w*|docs?|readme|guide)\b"), (Capability.DOCUMENTATION,)),
    (
        re.compile(r"\b(performance|optimi[sz]e|latency|faster|cach\w*)\b"),
        (Capability.PERFORMANCE, Capability.CACHING),
    ),
    (re.compile(r"\b(logging|logs?|monitoring)\b"), (Capability.LOGGING,)),
]

CAPABILITY_AGENTS: dict[Capability, tuple[AgentType, ...]] = {
    Capability.CRUD: (AgentType.API, AgentType.MODELS),
    Capability.AUTHENTICATION: (AgentType.AUTH, AgentType.SECURITY),
    Capability.AUTHORIZATION: (AgentType.RBAC, AgentType.SECURITY),
    Capability.VALIDATION: (AgentType.QUALITY,),
    Capability.REAL_TIME: (AgentType.REALTIME,),
    Capability.WEBSOCKET: (AgentType.REALTIME,),
    Capability.TESTING: (AgentType.TEST,),
    Capability.INTEGRATION: (AgentType.INTEGRATION,),
    Capability.SECURITY: (AgentType.SECURITY,),
    Capability.DATABASE: (AgentType.DATABASE, AgentType.MODELS),
    Capability.UI: (AgentType.UI,),
    Capability.DOCUMENTATION: (AgentType.DOCUMENTATION,),
    Capability.API: (AgentType.API,),
    Capability.CACHING: (AgentType.API,),
    Capability.LOGGING: (AgentType.QUALITY,),
    Capability.PERFORMANCE: (AgentType.API, AgentType.QUALITY),
}

COMPLEXITY_BONUS: dict[Capability, int] = {
    Capability.AUTHENTICATION: 20,
    Capability.AUTHORIZATION: 20,
    Capability.REAL_TIME: 15,
    Capability.INTEGRATION: 15,
    Capability.SECURITY: 10,
}

_RESOURCE_RE = re.compile(r"\bapi\s+for\s+(\w+)")
_INTEGRATION_RE = re.compile(r"\bintegrate\s+with\s+(\w+)")
_SECURITY_RE = re.compile(r"\b(authentication|auth|login|sign ?in)\b")
_UI_RE = re.compile(r"\b(ui|interface|dashboard|form|page)\b")
_PERFORMANCE_RE = re.compile(r"\b(performance|latency|slow|faster|optimi[sz]e\w*)\b")


class GoalParser:
    """Converts free-text goals into ``ParsedGoal`` records. Never raises on input text."""

    def __init__(self, templates: Iterable[GoalTemplate] | None = None) -> None:
        self._templates: list[GoalTemplate] = list(
            DEFAULT_TEMPLATES if templates is None else templates
        )

    @property
    def templates(self) -> list[GoalTemplate]:
        return list(self._templates)

    def add_template(self, template: GoalTemplate, *, first: bool = False) -> None:
        """Register a template; ``first`` gives it precedence over existing ones."""
        self.remove_template(template.id)
        if first:
            self._templates.insert(0, template)
        else:
            self._templates.append(template)

    def remove_template(self, template_id: str) -> bool:
        before = len(self._templates)
        self._templates = [t for t in self._templates if t.id != template_id]
        return len(self._templates) != before

    def parse(self, goal_text: str, constraints: GoalConstraints | None = None) -> ParsedGoal:
        normalized = normalize_goal(goal_text or "")
        constraints = constraints or GoalConstraints()

        for template in self._templates:
            match = template.pattern.search(normalized)
            if match:
                logger.debug("Goal matched template %s", template.id)
                return self._from_template(goal_text, normalized, template, match, constraints)

        return self._from_keywords(goal_text, normalized, constraints)

    def _from_template(
        self,
        goal_text: str,
        normalized: str,
        template: GoalTemplate,
        match: re.Match[str],
        constraints: GoalConstraints,
    ) -> ParsedGoal:
        groups = match.groupdict()
        entities: list[GoalEntity] = []
        if groups.get("resource"):
            name = groups["resource"]
            entities.append(GoalEntity(EntityType.RESOURCE, name, f"{name} resource", 0.95))
        if groups.get("feature"):
            name = groups["feature"]
            entities.append(GoalEntity(EntityType.FEATURE, name, f"{name} feature", 0.9))
        if groups.get("system"):
            name = groups["system"]
            entities.append(GoalEntity(EntityType.INTEGRATION, name, f"Integration with {name}", 0.9))

        capabilities = template.capabilities
        return ParsedGoal(
            original_goal=goal_text,
            normalized_goal=normalized,
            intent=self._extract_intent(normalized),
            entities=tuple(entities),
            capabilities=capabilities,
            suggested_agents=template.suggested_agents,
            complexity=template.complexity,
            confidence=TEMPLATE_CONFIDENCE,
            metadata=self._build_metadata(capabilities),
            template_id=template.id,
            constraints=constraints,
        )

    def _from_keywords(
        self, goal_text: str, normalized: str, constraints: GoalConstraints
    ) -> ParsedGoal:
        capabilities = self._infer_capabilities(normalized)
        complexity = self._estimate_complexity(normalized, capabilities)
        return ParsedGoal(
            original_goal=goal_text,
            normalized_goal=normalized,
            intent=self._extract_intent(normalized),
            entities=tuple(self._extract_entities(normalized)),
            capabilities=capabilities,
            suggested_agents=self._suggest_agents(capabilities, complexity),
            complexity=complexity,
            confidence=GENERIC_CONFIDENCE,
            metadata=self._build_metadata(capabilities),
            constraints=constraints,
        )

    def _extract_intent(self, text: str) -> Intent:
        earliest: tuple[int, Intent] | None = None
        for pattern, intent in INTENT_PATTERNS:
            match = pattern.search(text)
            if match and (earliest is None or match.start() < earliest[0]):
                earliest = (match.start(), intent)
        return earliest[1] if earliest else Intent.BUILD

    def _extract_entities(self, text: str) -> list[GoalEntity]:
        entities: list[GoalEntity] = []
        if match := _RESOURCE_RE.search(text):
            name = match.group(1)
            entities.append(GoalEntity(EntityType.RESOURCE, name, f"{name} API resource", 0.85))
        if _SECURITY_RE.search(text):
            entities.append(
                GoalEntity(EntityType.SECURITY, "authentication", "Authentication system", 0.9)
            )
        if match := _INTEGRATION_RE.search(text):
            name = match.group(1)
            entities.append(
                GoalEntity(EntityType.INTEGRATION, name, f"Integration with {name}", 0.85)
            )
        if _UI_RE.search(text):
            entities.append(
                GoalEntity(EntityType.FEATURE, "user-interface", "User interface component", 0.8)
            )
        if _PERFORMANCE_RE.search(text):
            entities.append(
                GoalEntity(EntityType.PERFORMANCE, "performance", "Performance improvement", 0.75)
            )
        return entities

    def _infer_capabilities(self, text: str) -> tuple[Capability, ...]:
        found: dict[Capability, None] = {}
        for pattern, capabilities in CAPABILITY_KEYWORDS:
            if pattern.search(text):
                for capability in capabilities:
                    found.setdefault(capability)
        if not found:
            return (Capability.API, Capability.CRUD)
        return tuple(found)

    def _suggest_agents(
        self, capabilities: tuple[Capability, ...], complexity: Complexity
    ) -> tuple[AgentType, ...]:
        agents: dict[AgentType, None] = {}
        for capability in capabilities:
            for agent in CAPABILITY_AGENTS.get(capability, ()):
                agents.setdefault(agent)
        if len(agents) > 1 or complexity != Complexity.SIMPLE:
            agents.setdefault(AgentType.TEST)
        return tuple(agents)

    def _estimate_complexity(self, text: str, capabilities: tuple[Capability, ...]) -> Complexity:
        score = len(capabilities) * 10
        score += sum(COMPLEXITY_BONUS.get(c, 0) for c in capabilities)
        score += len(text.split()) * 2

        if score < 30:
            return Complexity.SIMPLE
        if score < 60:
            return Complexity.MODERATE
        if score < 100:
            return Complexity.COMPLEX
        return Complexity.VERY_COMPLEX

    def _build_metadata(self, capabilities: tuple[Capability, ...]) -> GoalMetadata:
        caps = set(capabilities)
        return GoalMetadata(
            requires_auth=Capability.AUTHENTICATION in caps,
            requires_database=bool(caps & {Capability.DATABASE, Capability.CRUD}),
            requires_ui=Capability.UI in caps,
            requires_testing=Capability.TESTING in caps,
            requires_documentation=Capability.DOCUMENTATION in caps,
            is_integration=Capability.INTEGRATION in caps,
            affects_existing_code=len(caps) > 2,
        )
