"""Async database connection and operations for plans, execution history and lessons."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .domain import ExecutionPlan, ExecutionRecord, Lesson, LessonType, RecordStatus, new_id
from .errors import (
    RecordSealedError,
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    Base,
    EventLog,
    ExecutionHistory,
    Guardrail,
    LessonRecord,
    Plan,
    PlanAdaptation,
    PlanVersion,
)

# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)

ENGINE_CONFIG_KEY = "engine_config"


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


# =============================================================================
# Execution History
# =============================================================================


def _record_from_row(row: ExecutionHistory) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        goal_hash=row.goal_hash,
        plan_id=row.plan_id,
        run_id=row.run_id,
        task_id=row.task_id,
        task_type=row.task_type,
        agent_type=row.agent_type,
        agent_id=row.agent_id,
        estimated_minutes=row.estimated_minutes,
        started_at=row.started_at,
        depends_on=tuple(row.depends_on or ()),
        retry_count=row.retry_count,
        status=RecordStatus(row.status),
        actual_minutes=row.actual_minutes,
        error_kind=row.error_kind,
        error_message=row.error_message,
        completed_at=row.completed_at,
    )


async def append_execution(session: AsyncSession, record: ExecutionRecord) -> ExecutionHistory:
    """Insert a new attempt. Rows are never rewritten except for the single seal."""
    row = ExecutionHistory(
        id=record.id,
        goal_hash=record.goal_hash,
        plan_id=record.plan_id,
        run_id=record.run_id,
        task_id=record.task_id,
        task_type=record.task_type,
        agent_type=record.agent_type,
        agent_id=record.agent_id,
        estimated_minutes=record.estimated_minutes,
        depends_on=list(record.depends_on),
        retry_count=record.retry_count,
        status=record.status.value,
        started_at=record.started_at,
    )
    session.add(row)
    await session.flush()
    return row


async def seal_execution(session: AsyncSession, record: ExecutionRecord) -> None:
    """Write the outcome of an attempt; refuses to touch an already sealed row."""
    result = await session.execute(
        update(ExecutionHistory)
        .where(ExecutionHistory.id == record.id, ExecutionHistory.completed_at.is_(None))
        .values(
            status=record.status.value,
            actual_minutes=record.actual_minutes,
            error_kind=record.error_kind,
            error_message=record.error_message,
            completed_at=record.completed_at,
        )
    )
    if result.rowcount == 0:
        raise RecordSealedError(f"Execution record {record.id} is missing or already sealed")


async def list_executions(
    session: AsyncSession,
    *,
    since: datetime | None = None,
    agent_type: str | None = None,
    task_type: str | None = None,
    sealed_only: bool = True,
) -> list[ExecutionRecord]:
    query = select(ExecutionHistory)
    if since is not None:
        query = query.where(ExecutionHistory.started_at >= since)
    if agent_type:
        query = query.where(ExecutionHistory.agent_type == agent_type)
    if task_type:
        query = query.where(ExecutionHistory.task_type == task_type)
    if sealed_only:
        query = query.where(ExecutionHistory.completed_at.is_not(None))
    result = await session.execute(query.order_by(ExecutionHistory.started_at))
    return [_record_from_row(row) for row in result.scalars().all()]


# =============================================================================
# Lessons
# =============================================================================


def _lesson_from_row(row: LessonRecord) -> Lesson:
    return Lesson(
        signature=row.signature,
        lesson_type=LessonType(row.lesson_type),
        pattern=dict(row.pattern or {}),
        recommendation=row.recommendation,
        confidence=row.confidence,
        sample_size=row.sample_size,
        details=dict(row.details or {}),
        times_applied=row.times_applied,
        times_successful=row.times_successful,
        times_failed=row.times_failed,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_applied_at=row.last_applied_at,
    )


async def upsert_lesson(session: AsyncSession, lesson: Lesson) -> None:
    """Insert or refresh a lesson by signature, leaving application counters to their own writes."""
    values = {
        "signature": lesson.signature,
        "lesson_type": lesson.lesson_type.value,
        "pattern": lesson.pattern,
        "recommendation": lesson.recommendation,
        "details": lesson.details,
        "confidence": lesson.confidence,
        "sample_size": lesson.sample_size,
        "times_applied": lesson.times_applied,
        "times_successful": lesson.times_successful,
        "times_failed": lesson.times_failed,
        "last_applied_at": lesson.last_applied_at,
    }
    stmt = insert(LessonRecord).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[LessonRecord.signature],
        set_={
            "recommendation": stmt.excluded.recommendation,
            "details": stmt.excluded.details,
            "confidence": stmt.excluded.confidence,
            "sample_size": stmt.excluded.sample_size,
            "updated_at": lesson.updated_at,
        },
    )
    await session.execute(stmt)


async def record_lesson_counters(session: AsyncSession, lesson: Lesson) -> None:
    await session.execute(
        update(LessonRecord)
        .where(LessonRecord.signature == lesson.signature)
        .values(
            times_applied=lesson.times_applied,
            times_successful=lesson.times_successful,
            times_failed=lesson.times_failed,
            last_applied_at=lesson.last_applied_at,
        )
    )


async def list_lessons(session: AsyncSession, *, lesson_type: str | None = None) -> list[Lesson]:
    query = select(LessonRecord)
    if lesson_type:
        query = query.where(LessonRecord.lesson_type == lesson_type)
    result = await session.execute(query.order_by(LessonRecord.confidence.desc()))
    return [_lesson_from_row(row) for row in result.scalars().all()]


async def get_lesson(session: AsyncSession, signature: str) -> Lesson | None:
    row = await session.get(LessonRecord, signature)
    return _lesson_from_row(row) if row else None


# =============================================================================
# Plans
# =============================================================================


async def save_plan_version(session: AsyncSession, plan: ExecutionPlan) -> PlanVersion:
    """Store a plan version, creating the plan row on first sight."""
    row = await session.get(Plan, plan.id)
    if row is None:
        row = Plan(
            id=plan.id,
            goal=plan.goal,
            goal_hash=plan.parsed_goal.goal_hash if plan.parsed_goal else "",
        )
        session.add(row)
    row.status = plan.status.value
    row.strategy = plan.strategy
    row.current_version = max(row.current_version or 0, plan.version)

    existing = await session.execute(
        select(PlanVersion).where(PlanVersion.plan_id == plan.id, PlanVersion.version == plan.version)
    )
    version = existing.scalar_one_or_none()
    if version is None:
        version = PlanVersion(
            plan_id=plan.id,
            version=plan.version,
            strategy=plan.strategy,
            estimated_minutes=plan.estimated_minutes,
            risk_level=plan.risk.overall.value,
            payload=plan.to_dict(),
        )
        session.add(version)
    await session.flush()
    return version


async def log_adaptation(session: AsyncSession, adaptation: dict[str, Any]) -> PlanAdaptation:
    row = PlanAdaptation(
        id=adaptation["id"],
        plan_id=adaptation["plan_id"],
        from_version=adaptation["from_version"],
        to_version=adaptation["to_version"],
        trigger=adaptation["trigger"],
        description=adaptation["description"],
        reason=adaptation.get("reason"),
        changes={"tasks": adaptation.get("changes", []), "plan": adaptation.get("plan_changes", [])},
        impact=adaptation.get("impact", {}),
    )
    session.add(row)
    await session.flush()
    return row


async def list_plan_versions(session: AsyncSession, plan_id: str) -> list[PlanVersion]:
    result = await session.execute(
        select(PlanVersion).where(PlanVersion.plan_id == plan_id).order_by(PlanVersion.version)
    )
    return list(result.scalars().all())


# =============================================================================
# Event Log
# =============================================================================


async def log_event(
    session: AsyncSession,
    *,
    plan_id: str,
    event: str,
    task_id: str | None = None,
    agent: str | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    event_id: str | None = None,
) -> EventLog:
    """Log a lifecycle event."""
    if not plan_id or not event:
        raise ValueError("log_event requires plan_id and event.")

    log = EventLog(
        id=event_id or new_id(),
        plan_id=plan_id,
        event=event,
        task_id=task_id,
        agent=agent,
        message=message,
        details=details,
    )
    session.add(log)
    await session.flush()
    return log


# =============================================================================
# Guardrails
# =============================================================================


async def get_guardrail(session: AsyncSession, key: str) -> dict[str, Any] | None:
    result = await session.execute(select(Guardrail).where(Guardrail.key == key))
    guardrail = result.scalar_one_or_none()
    if guardrail and isinstance(guardrail.value, dict):
        return dict(guardrail.value)
    return None


async def set_guardrail(
    session: AsyncSession, key: str, value: dict[str, Any], description: str | None = None
) -> Guardrail:
    result = await session.execute(select(Guardrail).where(Guardrail.key == key))
    guardrail = result.scalar_one_or_none()
    if guardrail is None:
        guardrail = Guardrail(key=key, value=value, description=description)
        session.add(guardrail)
    else:
        guardrail.value = value
        if description is not None:
            guardrail.description = description
    await session.flush()
    return guardrail


async def get_engine_overrides(session: AsyncSession) -> dict[str, Any]:
    """Per-deployment ``EngineConfig`` overrides stored under the ``engine_config`` guardrail."""
    return await get_guardrail(session, ENGINE_CONFIG_KEY) or {}
