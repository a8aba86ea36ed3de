"""Error types and helpers for goal orchestration."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from .domain import ValidationIssue


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


# =============================================================================
# Plan construction
# =============================================================================


class PlanValidationError(ValueError):
    """A plan is malformed and must not be executed."""

    def __init__(self, message: str, issues: list[ValidationIssue] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class CircularDependencyError(PlanValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownDependencyError(PlanValidationError):
    def __init__(self, task_id: str, missing: str) -> None:
        super().__init__(f"Task {task_id} depends on unknown task {missing}")
        self.task_id = task_id
        self.missing = missing


class DuplicateTaskError(PlanValidationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task id {task_id} appears more than once")
        self.task_id = task_id


# =============================================================================
# Task execution
# =============================================================================


class TaskExecutionError(Exception):
    """Base class for errors raised by agents while working on a task."""

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind


class TransientTaskError(TaskExecutionError):
    """Network, timeout or resource failure; expected to succeed on retry."""


class PermanentTaskError(TaskExecutionError):
    """Logic or validation failure inside the agent's work; never retried."""


class PermanentTaskFailure(TaskExecutionError):
    """A transient error that kept failing until the retry budget ran out."""

    def __init__(self, task_id: str, attempts: int, last_error: str) -> None:
        super().__init__(f"Task {task_id} failed after {attempts} attempts: {last_error}")
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class ConflictSignal(TaskExecutionError):
    """Policy-level pause request raised by an agent, e.g. a security finding."""


# =============================================================================
# Classification
# =============================================================================


class ErrorClass(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ErrorClassification:
    error_class: ErrorClass
    category: str
    severity: str

    @property
    def retryable(self) -> bool:
        return self.error_class == ErrorClass.TRANSIENT


# Ordered: first match wins. Conflicts are checked before permanent errors so a
# "security constraint" message pauses the workflow instead of failing the task.
CLASSIFICATION_MATRIX: list[tuple[re.Pattern[str], ErrorClass, str, str]] = [
    (re.compile(r"timeout|timed out|etimedout|econnreset", re.I), ErrorClass.TRANSIENT, "network_timeout", "low"),
    (re.compile(r"rate limit|too many requests|\b429\b", re.I), ErrorClass.TRANSIENT, "rate_limit", "medium"),
    (re.compile(r"connection reset|connection refused|econnrefused|enotfound", re.I), ErrorClass.TRANSIENT, "connection_reset", "medium"),
    (re.compile(r"service unavailable|\b50[234]\b", re.I), ErrorClass.TRANSIENT, "service_unavailable", "medium"),
    (re.compile(r"locked|ebusy|resource busy", re.I), ErrorClass.TRANSIENT, "resource_locked", "medium"),
    (re.compile(r"temporary failure|try again", re.I), ErrorClass.TRANSIENT, "temporary_failure", "low"),
    (re.compile(r"out of memory|enomem|memory limit|resource exhausted|quota", re.I), ErrorClass.TRANSIENT, "resource_exhausted", "high"),
    (re.compile(r"security|vulnerability|\bcve\b|exploit", re.I), ErrorClass.CONFLICT, "security_vulnerability", "critical"),
    (re.compile(r"business rule|policy|compliance", re.I), ErrorClass.CONFLICT, "business_rule_violation", "high"),
    (re.compile(r"integrity|constraint|conflict", re.I), ErrorClass.CONFLICT, "data_integrity", "high"),
    (re.compile(r"permission denied|eacces|unauthorized|forbidden|\b40[13]\b", re.I), ErrorClass.PERMANENT, "permission_denied", "critical"),
    (re.compile(r"invalid config|configuration error|einval", re.I), ErrorClass.PERMANENT, "invalid_configuration", "critical"),
    (re.compile(r"not found|enoent|\b404\b", re.I), ErrorClass.PERMANENT, "resource_not_found", "high"),
    (re.compile(r"syntax error|parse error|malformed", re.I), ErrorClass.PERMANENT, "syntax_error", "high"),
    (re.compile(r"validation failed|invalid input|assertion|logic error", re.I), ErrorClass.PERMANENT, "validation_error", "medium"),
]

# Agents that report a structured error kind skip the regex matrix.
KNOWN_KINDS: dict[str, ErrorClassification] = {
    "timeout": ErrorClassification(ErrorClass.TRANSIENT, "network_timeout", "low"),
    "network": ErrorClassification(ErrorClass.TRANSIENT, "connection_reset", "medium"),
    "rate_limit": ErrorClassification(ErrorClass.TRANSIENT, "rate_limit", "medium"),
    "resource_exhausted": ErrorClassification(ErrorClass.TRANSIENT, "resource_exhausted", "high"),
    "unavailable": ErrorClassification(ErrorClass.TRANSIENT, "service_unavailable", "medium"),
    "validation": ErrorClassification(ErrorClass.PERMANENT, "validation_error", "medium"),
    "logic": ErrorClassification(ErrorClass.PERMANENT, "logic_error", "high"),
    "permission": ErrorClassification(ErrorClass.PERMANENT, "permission_denied", "critical"),
    "configuration": ErrorClassification(ErrorClass.PERMANENT, "invalid_configuration", "critical"),
    "security": ErrorClassification(ErrorClass.CONFLICT, "security_vulnerability", "critical"),
    "conflict": ErrorClassification(ErrorClass.CONFLICT, "data_integrity", "high"),
    "policy": ErrorClassification(ErrorClass.CONFLICT, "business_rule_violation", "high"),
}

UNKNOWN_ERROR = ErrorClassification(ErrorClass.TRANSIENT, "unknown", "medium")


def classify_error(kind: str | None, message: str = "") -> ErrorClassification:
    """Map an agent error to transient/permanent/conflict."""
    if kind:
        known = KNOWN_KINDS.get(kind.lower())
        if known:
            return known
    text = f"{kind or ''} {message}"
    for pattern, error_class, category, severity in CLASSIFICATION_MATRIX:
        if pattern.search(text):
            return ErrorClassification(error_class, category, severity)
    return UNKNOWN_ERROR


_FORCED_CLASSES: dict[type[TaskExecutionError], ErrorClass] = {
    ConflictSignal: ErrorClass.CONFLICT,
    PermanentTaskError: ErrorClass.PERMANENT,
    TransientTaskError: ErrorClass.TRANSIENT,
}


def classify_exception(exc: BaseException) -> tuple[str, ErrorClassification]:
    """Classify an exception raised from an agent, returning (kind, classification)."""
    forced = next(
        (error_class for exc_type, error_class in _FORCED_CLASSES.items() if isinstance(exc, exc_type)),
        None,
    )
    if forced is not None:
        kind = getattr(exc, "kind", None) or forced.value
        known = KNOWN_KINDS.get(kind)
        category = known.category if known else forced.value
        return kind, ErrorClassification(forced, category, known.severity if known else "medium")
    if isinstance(exc, TimeoutError):
        return "timeout", KNOWN_KINDS["timeout"]
    if isinstance(exc, (ConnectionError, OSError)):
        return "network", KNOWN_KINDS["network"]
    kind = type(exc).__name__
    return kind, classify_error(None, str(exc))


# =============================================================================
# Database schema helpers
# =============================================================================

_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    if missing_table_name(exc):
        return True
    return any("undefinedtableerror" in str(e).lower() for e in _unwrap_exception_chain(exc))


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Database schema is not initialized{table_hint}.",
            "Run: `alembic upgrade head`",
            "Or validate with: `goalflow schema-check`",
        ]
    )


class RecordSealedError(RuntimeError):
    """Raised when code attempts to modify an execution record after completion."""
