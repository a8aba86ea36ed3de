"""Phase definitions consumed by the plan generator.

Phases are plain data: the built-in table below, a JSON file named by
``GOALFLOW_PHASES_FILE``, or the ``phase_definitions`` guardrail row. A
``PhaseProvider`` hands the active set to ``PlanGenerator``.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, TypedDict

from sqlalchemy import select

from .domain import Capability, Complexity, ParsedGoal, TaskPriority
from .models import Guardrail

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class BlueprintConfig(TypedDict, total=False):
    key: str
    name: str
    description: str
    agent_type: str
    task_type: str
    priority: str
    estimated_minutes: float
    depends_on: list[str]
    soft_depends_on: list[str]
    requires: list[str]
    security_sensitive: bool
    outputs: list[str]
    acceptance_criteria: list[str]


class PhaseConfig(TypedDict, total=False):
    name: str
    triggers: list[str]
    include_above_simple: bool
    blocking: bool
    tasks: list[BlueprintConfig]


@dataclass(frozen=True)
class TaskBlueprint:
    key: str
    name: str
    description: str
    agent_type: str
    task_type: str
    priority: TaskPriority
    estimated_minutes: float
    depends_on: tuple[str, ...] = ()
    soft_depends_on: tuple[str, ...] = ()
    requires: frozenset[str] = frozenset()
    security_sensitive: bool = False
    outputs: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()

    def applies_to(self, goal: ParsedGoal) -> bool:
        return not self.requires or bool(self.requires & set(goal.capabilities))


@dataclass(frozen=True)
class PhaseDefinition:
    name: str
    order: int
    triggers: frozenset[str]
    blueprints: tuple[TaskBlueprint, ...]
    include_above_simple: bool = False
    blocking: bool = False

    def applies_to(self, goal: ParsedGoal) -> bool:
        if self.triggers & set(goal.capabilities):
            return True
        return self.include_above_simple and goal.complexity != Complexity.SIMPLE


class PhaseProvider(Protocol):
    def phases(self) -> Sequence[PhaseDefinition]: ...


class StaticPhaseProvider:
    """Serves a fixed, ordered list of phase definitions."""

    def __init__(self, definitions: Iterable[PhaseDefinition]) -> None:
        self._definitions = sorted(definitions, key=lambda phase: phase.order)

    def phases(self) -> Sequence[PhaseDefinition]:
        return list(self._definitions)


DEFAULT_PHASE_CONFIG: list[PhaseConfig] = [
    {
        "name": "models",
        "triggers": [Capability.DATABASE, Capability.CRUD],
        "blocking": True,
        "tasks": [
            {
                "key": "define_models",
                "name": "Define Data Models",
                "description": "Define domain entities, fields and relationships",
                "agent_type": "models",
                "task_type": "model_definition",
                "priority": "critical",
                "estimated_minutes": 30,
                "outputs": ["models/"],
                "acceptance_criteria": [
                    "All entities have typed fields",
                    "Relationships are documented",
                ],
            }
        ],
    },
    {
        "name": "database",
        "triggers": [Capability.DATABASE, Capability.CRUD],
        "blocking": True,
        "tasks": [
            {
                "key": "create_schema",
                "name": "Create Database Schema",
                "description": "Design and implement database migrations",
                "agent_type": "database",
                "task_type": "database_migration",
                "priority": "critical",
                "estimated_minutes": 45,
                "depends_on": ["define_models"],
                "outputs": ["migrations/"],
                "acceptance_criteria": [
                    "Migrations apply and roll back cleanly",
                    "Indexes cover lookup columns",
                ],
            }
        ],
    },
    {
        "name": "api",
        "triggers": [Capability.API],
        "tasks": [
            {
                "key": "api_controllers",
                "name": "Implement API Controllers",
                "description": "Expose endpoints with request routing and serialization",
                "agent_type": "api",
                "task_type": "api_implementation",
                "priority": "high",
                "estimated_minutes": 60,
                "depends_on": ["define_models"],
                "outputs": ["controllers/", "routes/"],
                "acceptance_criteria": ["Every operation has an endpoint", "Errors map to status codes"],
            },
            {
                "key": "service_layer",
                "name": "Implement Service Layer",
                "description": "Business logic between controllers and storage",
                "agent_type": "api",
                "task_type": "api_implementation",
                "priority": "high",
                "estimated_minutes": 45,
                "depends_on": ["define_models", "create_schema"],
                "outputs": ["services/"],
                "acceptance_criteria": ["Business rules enforced", "Storage access isolated"],
            },
        ],
    },
    {
        "name": "security",
        "triggers": [Capability.AUTHENTICATION, Capability.AUTHORIZATION],
        "blocking": True,
        "tasks": [
            {
                "key": "authentication",
                "name": "Implement Authentication",
                "description": "Token-based authentication with credential storage",
                "agent_type": "auth",
                "task_type": "security_implementation",
                "priority": "critical",
                "estimated_minutes": 90,
                "depends_on": ["define_models"],
                "requires": [Capability.AUTHENTICATION],
                "security_sensitive": True,
                "outputs": ["auth/"],
                "acceptance_criteria": ["Passwords are hashed", "Tokens expire and can be refreshed"],
            },
            {
                "key": "rbac",
                "name": "Implement RBAC",
                "description": "Role and permission checks on protected operations",
                "agent_type": "rbac",
                "task_type": "security_implementation",
                "priority": "high",
                "estimated_minutes": 75,
                "depends_on": ["authentication"],
                "requires": [Capability.AUTHORIZATION],
                "security_sensitive": True,
                "outputs": ["auth/permissions/"],
                "acceptance_criteria": ["Roles are enforced server-side", "Denied access is audited"],
            },
        ],
    },
    {
        "name": "realtime",
        "triggers": [Capability.REAL_TIME, Capability.WEBSOCKET],
        "tasks": [
            {
                "key": "websocket_server",
                "name": "Implement WebSocket Server",
                "description": "Push updates to connected clients",
                "agent_type": "realtime",
                "task_type": "websocket_feature",
                "priority": "medium",
                "estimated_minutes": 60,
                "depends_on": ["api_controllers"],
                "soft_depends_on": ["api_controllers"],
                "outputs": ["realtime/"],
                "acceptance_criteria": ["Clients reconnect after drop", "Messages are authorized"],
            }
        ],
    },
    {
        "name": "ui",
        "triggers": [Capability.UI],
        "tasks": [
            {
                "key": "user_interface",
                "name": "Build User Interface",
                "description": "Screens and forms backed by the API",
                "agent_type": "ui",
                "task_type": "ui_implementation",
                "priority": "medium",
                "estimated_minutes": 120,
                "depends_on": ["api_controllers"],
                "outputs": ["ui/"],
                "acceptance_criteria": ["Forms validate input", "Loading and error states handled"],
            }
        ],
    },
    {
        "name": "integration",
        "triggers": [Capability.INTEGRATION],
        "tasks": [
            {
                "key": "external_integration",
                "name": "Implement External Integration",
                "description": "Client for the external system with retries and mapping",
                "agent_type": "integration",
                "task_type": "integration",
                "priority": "medium",
                "estimated_minutes": 90,
                "depends_on": ["service_layer"],
                "outputs": ["integrations/"],
                "acceptance_criteria": ["Failures are retried", "Payloads are mapped to domain types"],
            }
        ],
    },
    {
        "name": "quality",
        "triggers": [Capability.VALIDATION],
        "tasks": [
            {
                "key": "input_validation",
                "name": "Add Input Validation",
                "description": "Validate and sanitize all external input",
                "agent_type": "quality",
                "task_type": "validation",
                "priority": "high",
                "estimated_minutes": 45,
                "depends_on": ["api_controllers"],
                "outputs": ["validators/"],
                "acceptance_criteria": ["Invalid payloads are rejected with details"],
            }
        ],
    },
    {
        "name": "testing",
        "triggers": [Capability.TESTING],
        "include_above_simple": True,
        "tasks": [
            {
                "key": "unit_tests",
                "name": "Write Unit Tests",
                "description": "Unit tests for services and models",
                "agent_type": "test",
                "task_type": "testing",
                "priority": "high",
                "estimated_minutes": 60,
                "depends_on": ["service_layer"],
                "outputs": ["tests/unit/"],
                "acceptance_criteria": ["Core paths covered", "Tests run in isolation"],
            },
            {
                "key": "integration_tests",
                "name": "Write Integration Tests",
                "description": "End-to-end tests across the API",
                "agent_type": "test",
                "task_type": "testing",
                "priority": "high",
                "estimated_minutes": 75,
                "depends_on": ["api_controllers", "unit_tests"],
                "soft_depends_on": ["unit_tests"],
                "outputs": ["tests/integration/"],
                "acceptance_criteria": ["Happy path and error responses exercised"],
            },
        ],
    },
    {
        "name": "documentation",
        "triggers": [Capability.DOCUMENTATION],
        "tasks": [
            {
                "key": "documentation",
                "name": "Write Documentation",
                "description": "Usage and reference documentation",
                "agent_type": "documentation",
                "task_type": "documentation",
                "priority": "low",
                "estimated_minutes": 45,
                "outputs": ["docs/"],
                "acceptance_criteria": ["Setup steps verified", "Every endpoint described"],
            }
        ],
    },
]

GUARDRAIL_KEY = "phase_definitions"
PHASES_FILE_ENV = "GOALFLOW_PHASES_FILE"


def _blueprint_from_config(raw: BlueprintConfig) -> TaskBlueprint:
    return TaskBlueprint(
        key=raw["key"],
        name=raw.get("name", raw["key"].replace("_", " ").title()),
        description=raw.get("description", ""),
        agent_type=str(raw["agent_type"]),
        task_type=str(raw["task_type"]),
        priority=TaskPriority(raw.get("priority", "medium")),
        estimated_minutes=float(raw.get("estimated_minutes", 60)),
        depends_on=tuple(raw.get("depends_on", [])),
        soft_depends_on=tuple(raw.get("soft_depends_on", [])),
        requires=frozenset(str(c) for c in raw.get("requires", [])),
        security_sensitive=bool(raw.get("security_sensitive", False)),
        outputs=tuple(raw.get("outputs", [])),
        acceptance_criteria=tuple(raw.get("acceptance_criteria", [])),
    )


def phases_from_config(config: Sequence[PhaseConfig | dict[str, Any]]) -> list[PhaseDefinition]:
    """Build phase definitions from plain mappings, keeping list order as phase order."""
    phases: list[PhaseDefinition] = []
    for order, raw in enumerate(config):
        if not raw.get("name") or not raw.get("tasks"):
            raise ValueError(f"Phase entry {order} needs a name and at least one task")
        phases.append(
            PhaseDefinition(
                name=str(raw["name"]),
                order=order,
                triggers=frozenset(str(c) for c in raw.get("triggers", [])),
                blueprints=tuple(_blueprint_from_config(t) for t in raw["tasks"]),
                include_above_simple=bool(raw.get("include_above_simple", False)),
                blocking=bool(raw.get("blocking", False)),
            )
        )
    return phases


def default_phase_provider() -> StaticPhaseProvider:
    return StaticPhaseProvider(phases_from_config(DEFAULT_PHASE_CONFIG))


def get_phases_from_env() -> list[PhaseDefinition] | None:
    path = os.getenv(PHASES_FILE_ENV)
    if not path:
        return None
    data = json.loads(Path(path).read_text())
    return phases_from_config(data)


async def get_db_phase_config(session: AsyncSession) -> list[dict[str, Any]]:
    result = await session.execute(select(Guardrail).where(Guardrail.key == GUARDRAIL_KEY))
    guardrail = result.scalar_one_or_none()

    if guardrail and isinstance(guardrail.value, dict):
        phases = guardrail.value.get("phases")
        if isinstance(phases, list):
            return [p for p in phases if isinstance(p, dict)]
    return []


async def resolve_phase_provider(session: AsyncSession | None = None) -> StaticPhaseProvider:
    """Pick the active phase set: guardrail row, then env file, then the built-in table."""
    if session:
        db_config = await get_db_phase_config(session)
        if db_config:
            return StaticPhaseProvider(phases_from_config(db_config))

    env_phases = get_phases_from_env()
    if env_phases:
        return StaticPhaseProvider(env_phases)

    return default_phase_provider()
