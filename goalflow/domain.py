"""
Shared types for goals, plans, tasks and execution history.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from functools import cached_property
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .errors import RecordSealedError

if TYPE_CHECKING:
    from .graph import DependencyGraph


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enumerations
# =============================================================================


class Intent(StrEnum):
    BUILD = "build"
    ADD = "add"
    IMPROVE = "improve"
    FIX = "fix"
    REFACTOR = "refactor"
    TEST = "test"
    DOCUMENT = "document"
    DEPLOY = "deploy"


class EntityType(StrEnum):
    RESOURCE = "resource"
    FEATURE = "feature"
    INTEGRATION = "integration"
    SECURITY = "security"
    PERFORMANCE = "performance"


class Capability(StrEnum):
    API = "api"
    CRUD = "crud"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    REAL_TIME = "real_time"
    WEBSOCKET = "websocket"
    TESTING = "testing"
    INTEGRATION = "integration"
    SECURITY = "security"
    DATABASE = "database"
    UI = "ui"
    DOCUMENTATION = "documentation"
    CACHING = "caching"
    LOGGING = "logging"
    PERFORMANCE = "performance"


class AgentType(StrEnum):
    MODELS = "models"
    DATABASE = "database"
    API = "api"
    AUTH = "auth"
    RBAC = "rbac"
    SECURITY = "security"
    REALTIME = "realtime"
    UI = "ui"
    INTEGRATION = "integration"
    QUALITY = "quality"
    TEST = "test"
    DOCUMENTATION = "documentation"


class TaskType(StrEnum):
    MODEL_DEFINITION = "model_definition"
    DATABASE_MIGRATION = "database_migration"
    API_IMPLEMENTATION = "api_implementation"
    SECURITY_IMPLEMENTATION = "security_implementation"
    WEBSOCKET_FEATURE = "websocket_feature"
    UI_IMPLEMENTATION = "ui_implementation"
    INTEGRATION = "integration"
    VALIDATION = "validation"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    BUG_FIX = "bug_fix"
    OPTIMIZATION = "optimization"
    REFACTORING = "refactoring"


class Complexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class TaskPriority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 1,
}


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class PlanStatus(StrEnum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    AT_RISK = "at_risk"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def score(self) -> float:
        return RISK_SCORES[self]

    @property
    def order(self) -> int:
        return list(RiskLevel).index(self)

    @classmethod
    def from_score(cls, value: float) -> RiskLevel:
        if value < 0.3:
            return cls.LOW
        if value < 0.5:
            return cls.MEDIUM
        if value < 0.7:
            return cls.HIGH
        return cls.CRITICAL

    def downgraded(self) -> RiskLevel:
        return list(RiskLevel)[max(0, self.order - 1)]


RISK_SCORES = {
    RiskLevel.LOW: 1.0,
    RiskLevel.MEDIUM: 0.7,
    RiskLevel.HIGH: 0.4,
    RiskLevel.CRITICAL: 0.1,
}


# =============================================================================
# Goals
# =============================================================================


@dataclass(frozen=True)
class GoalEntity:
    type: EntityType
    name: str
    description: str
    confidence: float


@dataclass(frozen=True)
class GoalConstraints:
    """Optional structured limits supplied alongside a goal."""

    deadline: datetime | None = None
    budget: float | None = None
    max_minutes: int | None = None


@dataclass(frozen=True)
class GoalMetadata:
    requires_auth: bool = False
    requires_database: bool = False
    requires_ui: bool = False
    requires_testing: bool = False
    requires_documentation: bool = False
    is_integration: bool = False
    affects_existing_code: bool = False


@dataclass(frozen=True)
class ParsedGoal:
    """Structured interpretation of a free-text goal."""

    original_goal: str
    normalized_goal: str
    intent: Intent
    entities: tuple[GoalEntity, ...]
    capabilities: tuple[Capability, ...]
    suggested_agents: tuple[AgentType, ...]
    complexity: Complexity
    confidence: float
    metadata: GoalMetadata = field(default_factory=GoalMetadata)
    template_id: str | None = None
    constraints: GoalConstraints = field(default_factory=GoalConstraints)

    @property
    def goal_hash(self) -> str:
        return goal_hash(self.normalized_goal)

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_goal": self.original_goal,
            "normalized_goal": self.normalized_goal,
            "goal_hash": self.goal_hash,
            "intent": self.intent.value,
            "entities": [
                {"type": e.type.value, "name": e.name, "description": e.description, "confidence": e.confidence}
                for e in self.entities
            ],
            "capabilities": [c.value for c in self.capabilities],
            "suggested_agents": [a.value for a in self.suggested_agents],
            "complexity": self.complexity.value,
            "confidence": self.confidence,
            "template_id": self.template_id,
            "metadata": asdict(self.metadata),
        }


def normalize_goal(text: str) -> str:
    return " ".join(text.lower().split())


def goal_hash(text: str) -> str:
    return hashlib.md5(normalize_goal(text).encode(), usedforsecurity=False).hexdigest()


# =============================================================================
# Plans
# =============================================================================


@dataclass(frozen=True)
class Task:
    """A unit of work inside one plan.

    ``soft_dependencies`` is the subset of ``dependencies`` that only expresses an
    ordering preference; the dependent does not consume the prerequisite's output.
    """

    id: str
    name: str
    description: str
    agent_type: str
    task_type: str
    phase: str
    priority: TaskPriority
    estimated_minutes: float
    dependencies: frozenset[str] = frozenset()
    soft_dependencies: frozenset[str] = frozenset()
    status: TaskStatus = TaskStatus.PENDING
    parallel_eligible: bool = True
    security_sensitive: bool = False
    outputs: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()

    @property
    def data_dependencies(self) -> frozenset[str]:
        return self.dependencies - self.soft_dependencies

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "agent_type": str(self.agent_type),
            "task_type": str(self.task_type),
            "phase": self.phase,
            "priority": self.priority.value,
            "estimated_minutes": self.estimated_minutes,
            "dependencies": sorted(self.dependencies),
            "soft_dependencies": sorted(self.soft_dependencies),
            "status": self.status.value,
            "parallel_eligible": self.parallel_eligible,
            "security_sensitive": self.security_sensitive,
            "outputs": list(self.outputs),
            "acceptance_criteria": list(self.acceptance_criteria),
        }


@dataclass(frozen=True)
class Milestone:
    id: str
    name: str
    description: str
    phase: str
    task_ids: tuple[str, ...]
    completion_criteria: tuple[str, ...]
    target_minutes: float
    blocking: bool

    def progress(self, statuses: Mapping[str, TaskStatus]) -> float:
        """Fraction of constituent tasks that are completed."""
        if not self.task_ids:
            return 1.0
        done = sum(1 for task_id in self.task_ids if statuses.get(task_id) == TaskStatus.COMPLETED)
        return done / len(self.task_ids)

    def is_complete(self, statuses: Mapping[str, TaskStatus]) -> bool:
        return self.progress(statuses) >= 1.0


@dataclass(frozen=True)
class Risk:
    category: str
    description: str
    mitigation: str
    probability: float
    impact: float

    @property
    def score(self) -> float:
        return self.probability * self.impact


@dataclass(frozen=True)
class RiskAssessment:
    overall: RiskLevel
    risks: tuple[Risk, ...] = ()

    @property
    def mean_score(self) -> float:
        if not self.risks:
            return 0.0
        return sum(r.score for r in self.risks) / len(self.risks)


@dataclass(frozen=True)
class ParallelOpportunity:
    task_ids: tuple[str, ...]
    minutes_saved: float
    reason: str
    risk_level: RiskLevel = RiskLevel.LOW


@dataclass(frozen=True)
class AppliedLesson:
    """A lesson that influenced a plan, and the tasks whose outcome judges it."""

    signature: str
    lesson_type: str
    task_ids: tuple[str, ...]


@dataclass(frozen=True)
class ValidationIssue:
    kind: str
    message: str
    task_id: str | None = None
    severity: str = "error"


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecutionPlan:
    """A generated workflow. Adaptation produces a new version instead of mutating."""

    id: str
    goal: str
    parsed_goal: ParsedGoal | None
    tasks: tuple[Task, ...]
    milestones: tuple[Milestone, ...] = ()
    estimated_minutes: float = 0.0
    risk: RiskAssessment = field(default_factory=lambda: RiskAssessment(RiskLevel.LOW))
    opportunities: tuple[ParallelOpportunity, ...] = ()
    max_parallel: int = 4
    strategy: str = "none"
    version: int = 1
    status: PlanStatus = PlanStatus.DRAFT
    applied_lessons: tuple[AppliedLesson, ...] = ()
    created_at: datetime = field(default_factory=utcnow)

    @cached_property
    def graph(self) -> DependencyGraph:
        from .graph import DependencyGraph

        return DependencyGraph(self.tasks)

    @cached_property
    def _by_id(self) -> dict[str, Task]:
        return {task.id: task for task in self.tasks}

    def task(self, task_id: str) -> Task:
        return self._by_id[task_id]

    def get(self, task_id: str) -> Task | None:
        return self._by_id.get(task_id)

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    @property
    def sequential_minutes(self) -> float:
        return sum(task.estimated_minutes for task in self.tasks)

    @property
    def parallel_fraction(self) -> float:
        if not self.tasks:
            return 0.0
        return sum(1 for task in self.tasks if task.parallel_eligible) / len(self.tasks)

    def evolve(self, **changes: Any) -> ExecutionPlan:
        """Return the next version of this plan with ``changes`` applied."""
        changes.setdefault("version", self.version + 1)
        changes.setdefault("created_at", utcnow())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "goal": self.goal,
            "strategy": self.strategy,
            "status": self.status.value,
            "estimated_minutes": self.estimated_minutes,
            "max_parallel": self.max_parallel,
            "risk": {
                "overall": self.risk.overall.value,
                "risks": [
                    {
                        "category": r.category,
                        "description": r.description,
                        "mitigation": r.mitigation,
                        "probability": r.probability,
                        "impact": r.impact,
                    }
                    for r in self.risk.risks
                ],
            },
            "tasks": [task.to_dict() for task in self.tasks],
            "milestones": [
                {
                    "id": m.id,
                    "name": m.name,
                    "phase": m.phase,
                    "task_ids": list(m.task_ids),
                    "target_minutes": m.target_minutes,
                    "blocking": m.blocking,
                }
                for m in self.milestones
            ],
            "opportunities": [
                {"task_ids": list(o.task_ids), "minutes_saved": o.minutes_saved, "reason": o.reason}
                for o in self.opportunities
            ],
            "applied_lessons": [
                {"signature": a.signature, "lesson_type": a.lesson_type, "task_ids": list(a.task_ids)}
                for a in self.applied_lessons
            ],
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# Execution history and learning
# =============================================================================


class RecordStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRecord:
    """Append-only log entry for one task attempt."""

    id: str
    goal_hash: str
    plan_id: str
    run_id: str
    task_id: str
    task_type: str
    agent_type: str
    agent_id: str
    estimated_minutes: float
    started_at: datetime
    depends_on: tuple[str, ...] = ()
    retry_count: int = 0
    status: RecordStatus = RecordStatus.RUNNING
    actual_minutes: float | None = None
    error_kind: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None

    @property
    def sealed(self) -> bool:
        return self.completed_at is not None

    @property
    def succeeded(self) -> bool:
        return self.status == RecordStatus.SUCCESS

    def seal(
        self,
        *,
        success: bool,
        completed_at: datetime | None = None,
        actual_minutes: float | None = None,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> ExecutionRecord:
        if self.sealed:
            raise RecordSealedError(f"Execution record {self.id} is already sealed")
        completed_at = completed_at or utcnow()
        if actual_minutes is None:
            actual_minutes = (completed_at - self.started_at).total_seconds() / 60
        return replace(
            self,
            status=RecordStatus.SUCCESS if success else RecordStatus.FAILED,
            actual_minutes=actual_minutes,
            error_kind=error_kind,
            error_message=error_message,
            completed_at=completed_at,
        )


class LessonType(StrEnum):
    AGENT_SELECTION = "agent_selection"
    TASK_ORDERING = "task_ordering"
    TIME_ESTIMATION = "time_estimation"
    ERROR_PREVENTION = "error_prevention"
    PARALLEL_EXECUTION = "parallel_execution"


def lesson_signature(lesson_type: LessonType | str, pattern: Mapping[str, Any]) -> str:
    """Stable hash identifying a pattern, independent of its statistics."""
    body = json.dumps({"type": str(lesson_type), "pattern": pattern}, sort_keys=True, default=str)
    return hashlib.sha256(body.encode()).hexdigest()[:32]


@dataclass(frozen=True)
class Lesson:
    signature: str
    lesson_type: LessonType
    pattern: dict[str, Any]
    recommendation: str
    confidence: float
    sample_size: int
    details: dict[str, Any] = field(default_factory=dict)
    times_applied: int = 0
    times_successful: int = 0
    times_failed: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_applied_at: datetime | None = None

    @property
    def effectiveness(self) -> float | None:
        judged = self.times_successful + self.times_failed
        if judged == 0:
            return None
        return self.times_successful / judged


class RecommendationTarget(StrEnum):
    AGENT_SUBSTITUTION = "agent_substitution"
    ORDERING = "ordering"
    DURATION_ADJUSTMENT = "duration_adjustment"
    ERROR_PREVENTION = "error_prevention"
    PARALLELIZATION = "parallelization"


@dataclass(frozen=True)
class Recommendation:
    """A lesson projected onto one planning or scheduling decision."""

    lesson_signature: str
    lesson_type: LessonType
    target: RecommendationTarget
    priority: str
    confidence: float
    message: str
    details: dict[str, Any] = field(default_factory=dict)
