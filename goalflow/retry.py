"""Retry backoff and per-agent circuit breaking."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import Settings, settings
from .errors import ErrorClassification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff without jitter: delays never shrink between attempts."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 16.0

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> RetryPolicy:
        source = source or settings
        return cls(
            max_retries=source.max_retries,
            base_delay_seconds=source.retry_base_delay_seconds,
            max_delay_seconds=source.retry_max_delay_seconds,
        )

    def delay_for(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (0-based)."""
        return min(self.base_delay_seconds * (2 ** max(retry_count, 0)), self.max_delay_seconds)

    def should_retry(self, classification: ErrorClassification, retry_count: int) -> bool:
        return classification.retryable and retry_count < self.max_retries


@dataclass
class _BreakerState:
    failures: int = 0
    opened_at: float | None = None


@dataclass
class CircuitBreaker:
    """Opens for an agent type after too many failures, and closes again after a cool-down.

    Each success takes one failure off the count.
    """

    threshold: int = 10
    reset_seconds: float = 300.0
    clock: Callable[[], float] = time.monotonic
    _states: dict[str, _BreakerState] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> CircuitBreaker:
        source = source or settings
        return cls(
            threshold=source.circuit_breaker_threshold,
            reset_seconds=float(source.circuit_breaker_reset_seconds),
        )

    def is_open(self, agent_type: str) -> bool:
        state = self._states.get(agent_type)
        if state is None or state.opened_at is None:
            return False
        if self.clock() - state.opened_at >= self.reset_seconds:
            logger.info("Circuit for %s closed after cool-down", agent_type)
            self._states[agent_type] = _BreakerState()
            return False
        return True

    def record_failure(self, agent_type: str) -> None:
        state = self._states.setdefault(agent_type, _BreakerState())
        state.failures += 1
        if state.failures >= self.threshold and state.opened_at is None:
            state.opened_at = self.clock()
            logger.warning("Circuit for %s opened after %d failures", agent_type, state.failures)

    def record_success(self, agent_type: str) -> None:
        state = self._states.get(agent_type)
        if state is not None and state.failures > 0:
            state.failures -= 1

    def failures(self, agent_type: str) -> int:
        state = self._states.get(agent_type)
        return state.failures if state else 0
