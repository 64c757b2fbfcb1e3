from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Literal

logger = logging.getLogger(__name__)

CircuitState = Literal["CLOSED", "OPEN", "HALF_OPEN"]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class CircuitBreakerState:
    state: CircuitState = "CLOSED"
    failure_count: int = 0
    last_failure_time: float = 0.0
    next_retry_time: float = 0.0


@dataclass(frozen=True)
class CircuitDecision:
    allowed: bool
    wait_ms: int | None = None
    reason: str | None = None


class CircuitBreaker:
    """Per-dependency breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

    HALF_OPEN admits exactly one in-flight probe. Times are milliseconds on the
    injected ``clock`` (monotonic by default).
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self._failure_threshold = failure_threshold
        self._reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._state = CircuitBreakerState()
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    def snapshot(self) -> CircuitBreakerState:
        return replace(self._state)

    def can_proceed(self) -> CircuitDecision:
        now = self._clock()
        current = self._state

        if current.state == "CLOSED":
            return CircuitDecision(allowed=True)

        if current.state == "OPEN":
            if now >= current.next_retry_time:
                self._state = replace(current, state="HALF_OPEN")
                self._probe_in_flight = True
                logger.warning("[%s circuit breaker] HALF_OPEN - testing with single request", self.name)
                return CircuitDecision(allowed=True)
            return CircuitDecision(
                allowed=False,
                wait_ms=int(current.next_retry_time - now),
                reason="Circuit breaker is OPEN due to repeated failures",
            )

        if self._probe_in_flight:
            return CircuitDecision(
                allowed=False,
                wait_ms=0,
                reason="Circuit breaker is HALF_OPEN with a probe in flight",
            )
        self._probe_in_flight = True
        return CircuitDecision(allowed=True)

    def record_success(self) -> None:
        if self._state.state != "CLOSED":
            logger.warning("[%s circuit breaker] CLOSED - dependency recovered", self.name)
        self._state = CircuitBreakerState()
        self._probe_in_flight = False

    def record_failure(self) -> None:
        now = self._clock()
        failure_count = self._state.failure_count + 1
        updated = replace(self._state, failure_count=failure_count, last_failure_time=now)
        if failure_count >= self._failure_threshold:
            updated = replace(updated, state="OPEN", next_retry_time=now + self._reset_timeout_ms)
            logger.warning(
                "[%s circuit breaker] OPEN after %d failures; next probe in %.1fs",
                self.name,
                failure_count,
                self._reset_timeout_ms / 1000,
            )
        self._state = updated
        self._probe_in_flight = False

    def release_probe(self) -> None:
        """Free the HALF_OPEN probe slot after a failure that does not count against the breaker."""
        self._probe_in_flight = False

    def reset(self) -> None:
        self._state = CircuitBreakerState()
        self._probe_in_flight = False
        logger.warning("[%s circuit breaker] manually reset to CLOSED", self.name)

    def next_retry_at(self) -> datetime | None:
        if self._state.state != "OPEN":
            return None
        remaining_ms = max(0.0, self._state.next_retry_time - self._clock())
        return datetime.fromtimestamp(time.time() + remaining_ms / 1000, tz=timezone.utc)
