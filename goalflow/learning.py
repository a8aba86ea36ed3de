"""
Learning from execution history.

Sealed execution records are mined for five kinds of patterns. A pattern that
clears its thresholds becomes a ``Lesson`` keyed by a stable signature.
Planning and scheduling consult lessons through the synchronous query methods,
which read a local cache. Writes go through the configured ``LearningStore``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import statistics
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from .config import Settings, settings
from .domain import (
    AgentType,
    ExecutionRecord,
    Lesson,
    LessonType,
    Recommendation,
    RecommendationTarget,
    RecordStatus,
    TaskType,
    goal_hash,
    lesson_signature,
    new_id,
    utcnow,
)
from .errors import RecordSealedError
from .plan_generator import AgentSelection, DurationPrediction
from .store import InMemoryLearningStore, LearningStore

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.01
MAX_CONFIDENCE = 0.99

DEFAULT_AGENT_FOR_TASK: dict[str, str] = {
    TaskType.MODEL_DEFINITION: AgentType.MODELS,
    TaskType.DATABASE_MIGRATION: AgentType.DATABASE,
    TaskType.API_IMPLEMENTATION: AgentType.API,
    TaskType.SECURITY_IMPLEMENTATION: AgentType.AUTH,
    TaskType.WEBSOCKET_FEATURE: AgentType.REALTIME,
    TaskType.UI_IMPLEMENTATION: AgentType.UI,
    TaskType.INTEGRATION: AgentType.INTEGRATION,
    TaskType.VALIDATION: AgentType.QUALITY,
    TaskType.TESTING: AgentType.TEST,
    TaskType.DOCUMENTATION: AgentType.DOCUMENTATION,
    TaskType.BUG_FIX: AgentType.API,
    TaskType.OPTIMIZATION: AgentType.QUALITY,
    TaskType.REFACTORING: AgentType.QUALITY,
}

ERROR_MITIGATIONS: dict[str, str] = {
    "timeout": "Raise the task timeout or split the task into smaller steps",
    "network": "Wrap external calls in retries with backoff",
    "rate_limit": "Throttle requests and spread the work over a longer window",
    "resource_exhausted": "Reduce batch sizes or give the agent more resources",
    "unavailable": "Check the health of dependent services before starting",
    "validation": "Validate inputs against the acceptance criteria before execution",
    "logic": "Add a review step before the task is marked complete",
    "permission": "Verify credentials and access rights before the task starts",
    "configuration": "Validate configuration when the plan is generated",
    "security": "Schedule a security review ahead of this task",
    "conflict": "Serialize this task with the work it conflicts with",
    "policy": "Confirm the business rule with the owner before starting",
}

FALLBACK_MINUTES = 60.0
FALLBACK_CONFIDENCE = 0.1


def clamp_confidence(value: float) -> float:
    return min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, value))


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


@dataclass(frozen=True)
class LessonCandidate:
    """A mined pattern and its statistics, whether or not it clears the thresholds."""

    lesson_type: LessonType
    pattern: dict[str, Any]
    recommendation: str
    confidence: float
    sample_size: int
    qualifies: bool
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> str:
        return lesson_signature(self.lesson_type, self.pattern)


@dataclass
class _AgentStats:
    agent_type: str
    samples: int = 0
    successes: int = 0
    minutes: list[float] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.successes / self.samples if self.samples else 0.0

    @property
    def mean_minutes(self) -> float:
        return statistics.fmean(self.minutes) if self.minutes else math.inf


def _final_attempts(records: Iterable[ExecutionRecord]) -> dict[tuple[str, str], ExecutionRecord]:
    """Last attempt per (run, task)."""
    final: dict[tuple[str, str], ExecutionRecord] = {}
    for record in sorted(records, key=lambda r: r.started_at):
        final[(record.run_id, record.task_id)] = record
    return final


def _first_attempts(records: Iterable[ExecutionRecord]) -> dict[tuple[str, str], ExecutionRecord]:
    first: dict[tuple[str, str], ExecutionRecord] = {}
    for record in sorted(records, key=lambda r: r.started_at):
        first.setdefault((record.run_id, record.task_id), record)
    return first


# =============================================================================
# Pattern miners
# =============================================================================


class PatternMiner:
    """Pure functions from sealed records to lesson candidates."""

    def __init__(self, config: Settings) -> None:
        self.config = config

    def mine(self, records: Sequence[ExecutionRecord]) -> list[LessonCandidate]:
        sealed = [r for r in records if r.sealed]
        return [
            *self.agent_selection(sealed),
            *self.task_ordering(sealed),
            *self.duration(sealed),
            *self.errors(sealed),
            *self.parallel(sealed),
        ]

    def rank_agents(self, records: Iterable[ExecutionRecord], task_type: str) -> list[_AgentStats]:
        """Agents for a task type by success rate, then mean duration."""
        stats: dict[str, _AgentStats] = {}
        for record in records:
            if record.task_type != task_type:
                continue
            entry = stats.setdefault(record.agent_type, _AgentStats(record.agent_type))
            entry.samples += 1
            if record.succeeded:
                entry.successes += 1
                if record.actual_minutes is not None:
                    entry.minutes.append(record.actual_minutes)
        return sorted(stats.values(), key=lambda s: (-s.success_rate, s.mean_minutes))

    def agent_selection(self, records: Sequence[ExecutionRecord]) -> list[LessonCandidate]:
        candidates: list[LessonCandidate] = []
        for task_type in sorted({r.task_type for r in records}):
            ranked = self.rank_agents(records, task_type)
            top = next((s for s in ranked if s.samples >= self.config.min_sample_size), None)
            if top is None:
                continue
            # Any agent with samples can be the runner-up.
            runner_up = next((s for s in ranked if s is not top), None)
            margin = top.success_rate - runner_up.success_rate if runner_up else top.success_rate
            qualifies = top.success_rate > self.config.agent_success_threshold and (
                runner_up is None or margin > self.config.agent_margin
            )
            confidence = clamp_confidence(top.success_rate * top.samples / (top.samples + 1))
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.AGENT_SELECTION,
                    pattern={"task_type": task_type},
                    recommendation=(
                        f"Use {top.agent_type} for {task_type} tasks "
                        f"({top.success_rate:.0%} success over {top.samples} runs)"
                    ),
                    confidence=confidence,
                    sample_size=top.samples,
                    qualifies=qualifies,
                    details={
                        "agent_type": top.agent_type,
                        "success_rate": round(top.success_rate, 4),
                        "mean_minutes": round(top.mean_minutes, 2) if top.minutes else None,
                        "runner_up": runner_up.agent_type if runner_up else None,
                        "runner_up_success_rate": round(runner_up.success_rate, 4) if runner_up else None,
                    },
                )
            )
        return candidates

    def task_ordering(self, records: Sequence[ExecutionRecord]) -> list[LessonCandidate]:
        by_goal: dict[str, dict[str, list[ExecutionRecord]]] = defaultdict(lambda: defaultdict(list))
        for record in records:
            by_goal[record.goal_hash][record.run_id].append(record)

        candidates: list[LessonCandidate] = []
        for hash_, runs in sorted(by_goal.items()):
            if len(runs) < self.config.min_sample_size:
                continue
            outcomes: list[tuple[datetime, bool, list[ExecutionRecord]]] = []
            for run_records in runs.values():
                final = _final_attempts(run_records)
                succeeded = all(r.succeeded for r in final.values())
                started = min(r.started_at for r in run_records)
                outcomes.append((started, succeeded, run_records))

            successes = [o for o in outcomes if o[1]]
            rate = len(successes) / len(outcomes)
            if not successes:
                continue
            _, _, latest = max(successes, key=lambda o: o[0])
            first = _first_attempts(latest)
            ordered = sorted(first.values(), key=lambda r: r.started_at)
            sequence = list(dict.fromkeys(r.task_type for r in ordered))
            confidence = clamp_confidence(rate * len(outcomes) / (len(outcomes) + 1))
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.TASK_ORDERING,
                    pattern={"goal_hash": hash_},
                    recommendation="Run task types in the order " + " -> ".join(sequence),
                    confidence=confidence,
                    sample_size=len(outcomes),
                    qualifies=rate >= self.config.ordering_success_threshold,
                    details={
                        "sequence": sequence,
                        "task_sequence": [r.task_id for r in ordered],
                        "success_rate": round(rate, 4),
                    },
                )
            )
        return candidates

    def duration(self, records: Sequence[ExecutionRecord]) -> list[LessonCandidate]:
        groups: dict[tuple[str, str], list[ExecutionRecord]] = defaultdict(list)
        for record in records:
            if record.succeeded and record.actual_minutes is not None and record.estimated_minutes > 0:
                groups[(record.agent_type, record.task_type)].append(record)

        candidates: list[LessonCandidate] = []
        for (agent_type, task_type), group in sorted(groups.items()):
            if len(group) < self.config.min_sample_size:
                continue
            stats = duration_stats([r.actual_minutes for r in group if r.actual_minutes is not None])
            errors = [abs(r.actual_minutes - r.estimated_minutes) / r.estimated_minutes for r in group]
            mean_error = statistics.fmean(errors)
            n = len(group)
            confidence = clamp_confidence(n / (n + 1) * 1 / (1 + stats["cv"]))
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.TIME_ESTIMATION,
                    pattern={"agent_type": agent_type, "task_type": task_type},
                    recommendation=(
                        f"Estimate {task_type} by {agent_type} at {stats['mean']:.0f} min "
                        f"(estimates were off by {mean_error:.0%})"
                    ),
                    confidence=confidence,
                    sample_size=n,
                    qualifies=mean_error > self.config.duration_error_threshold,
                    details={
                        "agent_type": agent_type,
                        "task_type": task_type,
                        "mean_minutes": round(stats["mean"], 2),
                        "p50": round(stats["p50"], 2),
                        "p95": round(stats["p95"], 2),
                        "p99": round(stats["p99"], 2),
                        "mean_relative_error": round(mean_error, 4),
                    },
                )
            )
        return candidates

    def errors(self, records: Sequence[ExecutionRecord]) -> list[LessonCandidate]:
        attempts: dict[tuple[str, str], int] = defaultdict(int)
        failures: dict[tuple[str, str], int] = defaultdict(int)
        kinds: dict[tuple[str, str, str], int] = defaultdict(int)
        for record in records:
            key = (record.agent_type, record.task_type)
            attempts[key] += 1
            if record.status == RecordStatus.FAILED:
                failures[key] += 1
                kinds[(*key, record.error_kind or "unknown")] += 1

        candidates: list[LessonCandidate] = []
        for (agent_type, task_type, kind), count in sorted(kinds.items()):
            total = attempts[(agent_type, task_type)]
            if total < self.config.min_sample_size:
                continue
            confidence = clamp_confidence(count / (count + 1) * count / failures[(agent_type, task_type)])
            mitigation = ERROR_MITIGATIONS.get(kind, f"Investigate recurring {kind} errors and add a guard")
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.ERROR_PREVENTION,
                    pattern={"agent_type": agent_type, "task_type": task_type, "error_kind": kind},
                    recommendation=mitigation,
                    confidence=confidence,
                    sample_size=total,
                    qualifies=count >= self.config.error_min_occurrences,
                    details={
                        "agent_type": agent_type,
                        "task_type": task_type,
                        "error_kind": kind,
                        "occurrences": count,
                        "failure_rate": round(failures[(agent_type, task_type)] / total, 4),
                    },
                )
            )
        return candidates

    def parallel(self, records: Sequence[ExecutionRecord]) -> list[LessonCandidate]:
        window = self.config.parallel_window_seconds
        first = _first_attempts(records)
        final = _final_attempts(records)

        by_run: dict[str, list[ExecutionRecord]] = defaultdict(list)
        for (run_id, _), record in first.items():
            by_run[run_id].append(record)

        seen: dict[tuple[str, str], int] = defaultdict(int)
        succeeded: dict[tuple[str, str], int] = defaultdict(int)
        linked: set[tuple[str, str]] = set()
        for run_id, run_records in by_run.items():
            pairs_in_run: dict[tuple[str, str], bool] = {}
            for i, left in enumerate(run_records):
                for right in run_records[i + 1 :]:
                    if left.task_type == right.task_type:
                        continue
                    if abs((left.started_at - right.started_at).total_seconds()) > window:
                        continue
                    key = tuple(sorted((left.task_type, right.task_type)))
                    if left.task_id in right.depends_on or right.task_id in left.depends_on:
                        linked.add(key)
                    ok = final[(run_id, left.task_id)].succeeded and final[(run_id, right.task_id)].succeeded
                    pairs_in_run[key] = pairs_in_run.get(key, True) and ok
            for key, ok in pairs_in_run.items():
                seen[key] += 1
                if ok:
                    succeeded[key] += 1

        candidates: list[LessonCandidate] = []
        for key, count in sorted(seen.items()):
            if count < self.config.min_sample_size:
                continue
            rate = succeeded[key] / count
            candidates.append(
                LessonCandidate(
                    lesson_type=LessonType.PARALLEL_EXECUTION,
                    pattern={"task_types": list(key)},
                    recommendation=f"{key[0]} and {key[1]} tasks can run in parallel",
                    confidence=clamp_confidence(count / (count + 1) * rate),
                    sample_size=count,
                    qualifies=key not in linked,
                    details={"task_types": list(key), "co_occurrences": count, "success_rate": round(rate, 4)},
                )
            )
        return candidates


def duration_stats(minutes: Sequence[float]) -> dict[str, float]:
    mean = statistics.fmean(minutes)
    spread = statistics.pstdev(minutes) if len(minutes) > 1 else 0.0
    return {
        "mean": mean,
        "p50": percentile(minutes, 50),
        "p95": percentile(minutes, 95),
        "p99": percentile(minutes, 99),
        "cv": spread / mean if mean > 0 else 0.0,
    }


# =============================================================================
# Service
# =============================================================================

_TARGETS = {
    LessonType.AGENT_SELECTION: RecommendationTarget.AGENT_SUBSTITUTION,
    LessonType.TASK_ORDERING: RecommendationTarget.ORDERING,
    LessonType.TIME_ESTIMATION: RecommendationTarget.DURATION_ADJUSTMENT,
    LessonType.ERROR_PREVENTION: RecommendationTarget.ERROR_PREVENTION,
    LessonType.PARALLEL_EXECUTION: RecommendationTarget.PARALLELIZATION,
}

_PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}


def recommendation_priority(lesson: Lesson) -> str:
    score = lesson.effectiveness if lesson.effectiveness is not None else lesson.confidence
    if score > 0.8:
        return "high"
    if score > 0.6:
        return "medium"
    return "low"


class LearningService:
    """Records task attempts, mines lessons and answers planning queries."""

    def __init__(
        self,
        store: LearningStore | None = None,
        *,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: LearningStore = store or InMemoryLearningStore()
        self.config = config or settings
        self.miner = PatternMiner(self.config)
        self._clock = clock
        self._open: dict[str, ExecutionRecord] = {}
        self._records: dict[str, ExecutionRecord] = {}
        self._lessons: dict[str, Lesson] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    async def refresh(self) -> None:
        """Reload the read cache from the store."""
        since = self._clock() - timedelta(days=self.config.lookback_days)
        records = await self.store.list_records(since=since)
        lessons = await self.store.list_lessons()
        self._records = {r.id: r for r in records}
        self._lessons = {lesson.signature: lesson for lesson in lessons}
        logger.debug("Learning cache loaded: %d records, %d lessons", len(records), len(lessons))

    @property
    def lessons(self) -> list[Lesson]:
        return sorted(self._lessons.values(), key=lambda lesson: -lesson.confidence)

    @property
    def records(self) -> list[ExecutionRecord]:
        return sorted(self._records.values(), key=lambda r: r.started_at)

    # -------------------------------------------------------------------------
    # Execution history
    # -------------------------------------------------------------------------

    async def record_execution(
        self,
        *,
        goal_hash: str,
        plan_id: str,
        run_id: str,
        task_id: str,
        task_type: str,
        agent_type: str,
        agent_id: str,
        estimated_minutes: float,
        depends_on: Iterable[str] = (),
        retry_count: int = 0,
        started_at: datetime | None = None,
    ) -> ExecutionRecord:
        """Append the start of an attempt."""
        record = ExecutionRecord(
            id=new_id(),
            goal_hash=goal_hash,
            plan_id=plan_id,
            run_id=run_id,
            task_id=task_id,
            task_type=str(task_type),
            agent_type=str(agent_type),
            agent_id=agent_id,
            estimated_minutes=estimated_minutes,
            started_at=started_at or self._clock(),
            depends_on=tuple(sorted(depends_on)),
            retry_count=retry_count,
        )
        await self.store.append_record(record)
        self._open[record.id] = record
        return record

    async def complete_execution(
        self,
        record_id: str,
        *,
        success: bool,
        actual_minutes: float | None = None,
        error_kind: str | None = None,
        error_message: str | None = None,
        completed_at: datetime | None = None,
    ) -> ExecutionRecord:
        """Seal an attempt and refresh confidence of the lessons it bears on."""
        record = self._open.pop(record_id, None)
        if record is None:
            if record_id in self._records:
                raise RecordSealedError(f"Execution record {record_id} is already sealed")
            raise KeyError(record_id)

        sealed = record.seal(
            success=success,
            completed_at=completed_at or self._clock(),
            actual_minutes=actual_minutes,
            error_kind=error_kind,
            error_message=error_message,
        )
        await self.store.seal_record(sealed)
        self._records[sealed.id] = sealed
        await self._recompute_matching(sealed)
        return sealed

    async def _recompute_matching(self, record: ExecutionRecord) -> None:
        affected = [lesson for lesson in self._lessons.values() if _lesson_matches(lesson, record)]
        if not affected:
            return
        candidates = {c.signature: c for c in self.miner.mine(list(self._records.values()))}
        async with self._lock:
            for lesson in affected:
                candidate = candidates.get(lesson.signature)
                if candidate is None:
                    continue
                updated = replace(
                    lesson,
                    confidence=candidate.confidence,
                    sample_size=candidate.sample_size,
                    recommendation=candidate.recommendation,
                    details=candidate.details,
                    updated_at=self._clock(),
                )
                self._lessons[lesson.signature] = updated
                await self.store.upsert_lesson(updated)

    # -------------------------------------------------------------------------
    # Mining
    # -------------------------------------------------------------------------

    async def analyze_patterns(self) -> list[Lesson]:
        """Mine the lookback window and upsert every pattern that clears its thresholds."""
        since = self._clock() - timedelta(days=self.config.lookback_days)
        records = await self.store.list_records(since=since)
        self._records = {r.id: r for r in records}

        produced: list[Lesson] = []
        async with self._lock:
            for candidate in self.miner.mine(records):
                existing = self._lessons.get(candidate.signature)
                if not candidate.qualifies and existing is None:
                    continue
                now = self._clock()
                lesson = Lesson(
                    signature=candidate.signature,
                    lesson_type=candidate.lesson_type,
                    pattern=candidate.pattern,
                    recommendation=candidate.recommendation,
                    confidence=candidate.confidence,
                    sample_size=candidate.sample_size,
                    details=candidate.details,
                    created_at=existing.created_at if existing else now,
                    updated_at=now,
                )
                if existing is not None:
                    lesson = replace(
                        lesson,
                        times_applied=existing.times_applied,
                        times_successful=existing.times_successful,
                        times_failed=existing.times_failed,
                        last_applied_at=existing.last_applied_at,
                    )
                await self.store.upsert_lesson(lesson)
                self._lessons[lesson.signature] = lesson
                if candidate.qualifies:
                    produced.append(lesson)

        logger.info("Pattern analysis over %d records produced %d lessons", len(records), len(produced))
        return produced

    # -------------------------------------------------------------------------
    # Lesson application bookkeeping
    # -------------------------------------------------------------------------

    async def record_lesson_application(self, signature: str) -> Lesson | None:
        lesson = self._lessons.get(signature)
        if lesson is None:
            return None
        updated = replace(lesson, times_applied=lesson.times_applied + 1, last_applied_at=self._clock())
        self._lessons[signature] = updated
        await self.store.update_lesson_counters(updated)
        return updated

    async def record_lesson_outcome(self, signature: str, success: bool) -> Lesson | None:
        lesson = self._lessons.get(signature)
        if lesson is None:
            return None
        if success:
            updated = replace(lesson, times_successful=lesson.times_successful + 1)
        else:
            updated = replace(lesson, times_failed=lesson.times_failed + 1)
        self._lessons[signature] = updated
        await self.store.update_lesson_counters(updated)
        return updated

    # -------------------------------------------------------------------------
    # Queries (cache only)
    # -------------------------------------------------------------------------

    def _lesson_for(self, lesson_type: LessonType, pattern: dict[str, Any]) -> Lesson | None:
        return self._lessons.get(lesson_signature(lesson_type, pattern))

    def get_recommendations(self, goal: str, task_type: str | None = None) -> list[Recommendation]:
        hash_ = goal_hash(goal)
        found: list[Recommendation] = []
        for lesson in self._lessons.values():
            if lesson.confidence < self.config.min_confidence:
                continue
            pattern = lesson.pattern
            if lesson.lesson_type == LessonType.TASK_ORDERING:
                if pattern.get("goal_hash") != hash_:
                    continue
            elif task_type is not None:
                types = pattern.get("task_types") or [pattern.get("task_type")]
                if task_type not in types:
                    continue
            found.append(
                Recommendation(
                    lesson_signature=lesson.signature,
                    lesson_type=lesson.lesson_type,
                    target=_TARGETS[lesson.lesson_type],
                    priority=recommendation_priority(lesson),
                    confidence=lesson.confidence,
                    message=lesson.recommendation,
                    details=dict(lesson.details),
                )
            )
        found.sort(key=lambda r: (-_PRIORITY_RANK[r.priority], -r.confidence))
        return found

    def get_best_agent_for_task(self, task_type: str) -> AgentSelection:
        task_type = str(task_type)
        lesson = self._lesson_for(LessonType.AGENT_SELECTION, {"task_type": task_type})
        if lesson is not None and lesson.confidence >= self.config.min_confidence:
            return AgentSelection(
                agent_type=lesson.details["agent_type"],
                confidence=lesson.confidence,
                source="lesson",
                lesson_signature=lesson.signature,
                success_rate=lesson.details.get("success_rate"),
                samples=lesson.sample_size,
            )

        ranked = [
            s
            for s in self.miner.rank_agents(self._records.values(), task_type)
            if s.samples >= self.config.min_sample_size
        ]
        if ranked:
            top = ranked[0]
            return AgentSelection(
                agent_type=top.agent_type,
                confidence=clamp_confidence(top.success_rate * top.samples / (top.samples + 1)),
                source="history",
                success_rate=top.success_rate,
                samples=top.samples,
            )

        return AgentSelection(
            agent_type=str(DEFAULT_AGENT_FOR_TASK.get(task_type, AgentType.API)),
            confidence=0.5,
            source="default",
        )

    def get_predicted_duration(
        self, agent_type: str, task_type: str, default_minutes: float | None = None
    ) -> DurationPrediction:
        agent_type, task_type = str(agent_type), str(task_type)
        lesson = self._lesson_for(LessonType.TIME_ESTIMATION, {"agent_type": agent_type, "task_type": task_type})
        if lesson is not None:
            details = lesson.details
            return DurationPrediction(
                estimate=details["mean_minutes"],
                p50=details["p50"],
                p95=details["p95"],
                p99=details["p99"],
                samples=lesson.sample_size,
                confidence=lesson.confidence,
                lesson_signature=lesson.signature,
            )

        minutes = [
            r.actual_minutes
            for r in self._records.values()
            if r.succeeded
            and r.actual_minutes is not None
            and r.agent_type == agent_type
            and r.task_type == task_type
        ]
        if len(minutes) >= self.config.min_sample_size:
            stats = duration_stats(minutes)
            n = len(minutes)
            return DurationPrediction(
                estimate=stats["mean"],
                p50=stats["p50"],
                p95=stats["p95"],
                p99=stats["p99"],
                samples=n,
                confidence=clamp_confidence(n / (n + 1) / (1 + stats["cv"])),
            )

        base = default_minutes if default_minutes is not None else FALLBACK_MINUTES
        return DurationPrediction(
            estimate=base,
            p50=base,
            p95=base * 1.5,
            p99=base * 2,
            samples=len(minutes),
            confidence=FALLBACK_CONFIDENCE,
        )

    def learning_stats(self) -> dict[str, Any]:
        records = list(self._records.values())
        successes = sum(1 for r in records if r.succeeded)
        by_type: dict[str, int] = defaultdict(int)
        for lesson in self._lessons.values():
            by_type[lesson.lesson_type.value] += 1
        judged = [lesson for lesson in self._lessons.values() if lesson.effectiveness is not None]
        return {
            "records": len(records),
            "open_records": len(self._open),
            "success_rate": round(successes / len(records), 4) if records else None,
            "lessons": len(self._lessons),
            "lessons_by_type": dict(by_type),
            "average_confidence": (
                round(statistics.fmean(lesson.confidence for lesson in self._lessons.values()), 4)
                if self._lessons
                else None
            ),
            "times_applied": sum(lesson.times_applied for lesson in self._lessons.values()),
            "most_effective": [
                {
                    "signature": lesson.signature,
                    "recommendation": lesson.recommendation,
                    "effectiveness": round(lesson.effectiveness or 0.0, 4),
                }
                for lesson in sorted(judged, key=lambda lesson: -(lesson.effectiveness or 0.0))[:5]
            ],
        }


def _lesson_matches(lesson: Lesson, record: ExecutionRecord) -> bool:
    pattern = lesson.pattern
    if lesson.lesson_type == LessonType.TASK_ORDERING:
        return pattern.get("goal_hash") == record.goal_hash
    if lesson.lesson_type == LessonType.PARALLEL_EXECUTION:
        return record.task_type in (pattern.get("task_types") or ())
    if pattern.get("task_type") != record.task_type:
        return False
    return "agent_type" not in pattern or pattern["agent_type"] == record.agent_type
