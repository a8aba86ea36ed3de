"""
Persistence interface for execution history, lessons and plan versions.

``LearningService`` keeps only a read cache; a store is the source of truth.
``InMemoryLearningStore`` backs tests and one-shot CLI runs,
``SqlLearningStore`` writes through to PostgreSQL.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from . import db
from .domain import ExecutionPlan, ExecutionRecord, Lesson
from .errors import RecordSealedError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .optimizer import Adaptation


class LearningStore(Protocol):
    async def append_record(self, record: ExecutionRecord) -> None: ...

    async def seal_record(self, record: ExecutionRecord) -> None: ...

    async def list_records(
        self,
        *,
        since: datetime | None = None,
        agent_type: str | None = None,
        task_type: str | None = None,
    ) -> list[ExecutionRecord]: ...

    async def upsert_lesson(self, lesson: Lesson) -> None: ...

    async def update_lesson_counters(self, lesson: Lesson) -> None: ...

    async def list_lessons(self) -> list[Lesson]: ...

    async def save_plan_version(self, plan: ExecutionPlan) -> None: ...

    async def log_adaptation(self, adaptation: Adaptation) -> None: ...


class InMemoryLearningStore:
    """Process-local store with the same append-only and seal-once rules as the database."""

    def __init__(self) -> None:
        self.records: dict[str, ExecutionRecord] = {}
        self.lessons: dict[str, Lesson] = {}
        self.plan_versions: dict[str, dict[int, ExecutionPlan]] = {}
        self.adaptations: list[Adaptation] = []

    async def append_record(self, record: ExecutionRecord) -> None:
        if record.id in self.records:
            raise ValueError(f"Execution record {record.id} already exists")
        self.records[record.id] = record

    async def seal_record(self, record: ExecutionRecord) -> None:
        current = self.records.get(record.id)
        if current is None or current.sealed:
            raise RecordSealedError(f"Execution record {record.id} is missing or already sealed")
        self.records[record.id] = record

    async def list_records(
        self,
        *,
        since: datetime | None = None,
        agent_type: str | None = None,
        task_type: str | None = None,
    ) -> list[ExecutionRecord]:
        found = [
            r
            for r in self.records.values()
            if r.sealed
            and (since is None or r.started_at >= since)
            and (agent_type is None or r.agent_type == agent_type)
            and (task_type is None or r.task_type == task_type)
        ]
        return sorted(found, key=lambda r: r.started_at)

    async def upsert_lesson(self, lesson: Lesson) -> None:
        existing = self.lessons.get(lesson.signature)
        if existing is not None:
            lesson = replace(
                lesson,
                created_at=existing.created_at,
                times_applied=existing.times_applied,
                times_successful=existing.times_successful,
                times_failed=existing.times_failed,
                last_applied_at=existing.last_applied_at,
            )
        self.lessons[lesson.signature] = lesson

    async def update_lesson_counters(self, lesson: Lesson) -> None:
        if lesson.signature in self.lessons:
            self.lessons[lesson.signature] = replace(
                self.lessons[lesson.signature],
                times_applied=lesson.times_applied,
                times_successful=lesson.times_successful,
                times_failed=lesson.times_failed,
                last_applied_at=lesson.last_applied_at,
            )

    async def list_lessons(self) -> list[Lesson]:
        return sorted(self.lessons.values(), key=lambda lesson: -lesson.confidence)

    async def save_plan_version(self, plan: ExecutionPlan) -> None:
        self.plan_versions.setdefault(plan.id, {}).setdefault(plan.version, plan)

    async def log_adaptation(self, adaptation: Adaptation) -> None:
        self.adaptations.append(adaptation)


SessionFactory = Callable[[], AbstractAsyncContextManager["AsyncSession"]]


class SqlLearningStore:
    """Store backed by the SQLAlchemy tables in ``goalflow.models``."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session = session_factory or db.get_session

    async def append_record(self, record: ExecutionRecord) -> None:
        async with self._session() as session:
            await db.append_execution(session, record)

    async def seal_record(self, record: ExecutionRecord) -> None:
        async with self._session() as session:
            await db.seal_execution(session, record)

    async def list_records(
        self,
        *,
        since: datetime | None = None,
        agent_type: str | None = None,
        task_type: str | None = None,
    ) -> list[ExecutionRecord]:
        async with self._session() as session:
            return await db.list_executions(session, since=since, agent_type=agent_type, task_type=task_type)

    async def upsert_lesson(self, lesson: Lesson) -> None:
        async with self._session() as session:
            await db.upsert_lesson(session, lesson)

    async def update_lesson_counters(self, lesson: Lesson) -> None:
        async with self._session() as session:
            await db.record_lesson_counters(session, lesson)

    async def list_lessons(self) -> list[Lesson]:
        async with self._session() as session:
            return await db.list_lessons(session)

    async def save_plan_version(self, plan: ExecutionPlan) -> None:
        async with self._session() as session:
            await db.save_plan_version(session, plan)

    async def log_adaptation(self, adaptation: Adaptation) -> None:
        async with self._session() as session:
            await db.log_adaptation(session, adaptation.to_dict())
