"""Configuration settings for goal orchestration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "goalflow"
    db_user: str = "agent"
    db_password: str = "agent"

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_queue_max_depth: int = 100
    task_result_ttl_seconds: int = 3600

    # Engine
    tick_interval_seconds: float = 1.0
    task_timeout_seconds: int = 1800  # 30 minutes
    max_parallel: int = 4
    time_overrun_margin: float = 0.25
    allow_agent_substitution: bool = False

    # Retry
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 16.0
    circuit_breaker_threshold: int = 10
    circuit_breaker_reset_seconds: int = 300  # 5 minutes

    # Planning thresholds (minutes)
    max_plan_minutes: int = 480
    timeline_risk_minutes: int = 240

    # Learning
    min_confidence: float = 0.6
    min_sample_size: int = 5
    error_min_occurrences: int = 3
    lookback_days: int = 30
    parallel_window_seconds: int = 60
    agent_success_threshold: float = 0.8
    agent_margin: float = 0.1
    ordering_success_threshold: float = 0.85
    duration_error_threshold: float = 0.2

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "GOALFLOW_"
        env_file = ".env"


# Global settings instance
settings = Settings()


DEFAULT_PHASE_WEIGHTS: dict[str, int] = {
    "models": 100,
    "database": 90,
    "api": 80,
    "security": 75,
    "realtime": 60,
    "ui": 50,
    "integration": 50,
    "quality": 40,
    "testing": 30,
    "documentation": 10,
}

DEFAULT_AGENT_WEIGHTS: dict[str, int] = {
    "models": 20,
    "database": 18,
    "auth": 16,
    "rbac": 15,
    "security": 15,
    "api": 12,
    "realtime": 8,
    "integration": 8,
    "ui": 6,
    "quality": 5,
    "test": 4,
    "documentation": 1,
}


@dataclass
class EngineConfig:
    """Scheduling knobs handed to an OrchestratorEngine.

    Priority of a ready task is ``phase weight + agent weight + task type boost``.
    Boosts start empty and are raised at runtime when ordering lessons are applied.
    """

    phase_weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PHASE_WEIGHTS))
    agent_weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_AGENT_WEIGHTS))
    task_type_boosts: dict[str, int] = field(default_factory=dict)
    max_parallel: int = 4
    tick_interval_seconds: float = 1.0
    task_timeout_seconds: float = 1800.0
    time_overrun_margin: float = 0.25
    min_confidence: float = 0.6
    allow_agent_substitution: bool = False

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> EngineConfig:
        source = source or settings
        return cls(
            max_parallel=source.max_parallel,
            tick_interval_seconds=source.tick_interval_seconds,
            task_timeout_seconds=float(source.task_timeout_seconds),
            time_overrun_margin=source.time_overrun_margin,
            min_confidence=source.min_confidence,
            allow_agent_substitution=source.allow_agent_substitution,
        )

    def with_overrides(self, overrides: Mapping[str, Any]) -> EngineConfig:
        """Return a copy with known keys replaced; weight tables are merged, not swapped."""
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                continue
            current = getattr(self, key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                merged = dict(current)
                merged.update({str(k): int(v) for k, v in value.items()})
                changes[key] = merged
            else:
                changes[key] = value
        return replace(self, **changes)

    def priority_for(self, phase: str, agent_type: str, task_type: str) -> int:
        return (
            self.phase_weights.get(phase, 0)
            + self.agent_weights.get(agent_type, 0)
            + self.task_type_boosts.get(task_type, 0)
        )

    def boost_task_type(self, task_type: str, amount: int) -> None:
        self.task_type_boosts[task_type] = self.task_type_boosts.get(task_type, 0) + amount

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
