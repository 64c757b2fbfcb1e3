"""Rate-limited execution for calls to an external dependency.

``RateLimitedExecutor`` wraps one call with breaker gating, minimum spacing
between call starts, a per-attempt timeout and bounded retries.
``RequestQueue`` is the deferred path: it serializes non-urgent calls through
the same breaker and spacing, invoking each request once.

One executor guards exactly one dependency. Breaker and spacing state live on
the instance, so separate processes do not share them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .backoff import BackoffCalculator
from .circuit_breaker import CircuitBreaker, CircuitState, _monotonic_ms
from .classifier import ErrorClassification, classify_error
from .errors import (
    PermanentError,
    QueueTimeoutError,
    RetriesExhaustedError,
    ServiceUnavailableError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class LimiterStatus:
    dependency: str
    circuit_state: CircuitState
    failures: int
    queue_length: int
    last_call_time: datetime | None
    next_retry_at: datetime | None


class RateLimitedExecutor:
    def __init__(
        self,
        name: str,
        *,
        breaker: CircuitBreaker,
        backoff: BackoffCalculator | None = None,
        classifier: Callable[[BaseException], ErrorClassification] = classify_error,
        min_interval_ms: int = 1000,
        request_timeout_ms: int = 60000,
        max_retries: int = 3,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.name = name
        self.breaker = breaker
        self._backoff = backoff or BackoffCalculator()
        self._classify = classifier
        self._min_interval_ms = min_interval_ms
        self._request_timeout_ms = request_timeout_ms
        self._max_retries = max_retries
        self._sleep = sleep
        self._clock = clock
        self._spacing_lock: asyncio.Lock | None = None
        self._spacing_loop: asyncio.AbstractEventLoop | None = None
        self._last_call_ms: float | None = None
        self._last_call_at: datetime | None = None

    async def execute(self, fn: Callable[[], Awaitable[T]], max_retries: int | None = None) -> T:
        attempts_allowed = self._max_retries if max_retries is None else max_retries
        if attempts_allowed < 1:
            raise ValueError("max_retries must be at least 1")

        last_error: BaseException | None = None
        for attempt in range(attempts_allowed):
            decision = self.breaker.can_proceed()
            if not decision.allowed:
                raise ServiceUnavailableError(self.name, decision.wait_ms or 0, decision.reason)

            try:
                await self._await_spacing()
                result = await self._invoke_once(fn)
            except Exception as exc:
                last_error = exc
                classification = self._note_failure(exc)
                logger.warning(
                    "[%s] attempt %d/%d failed: %s (rate_limit=%s transient=%s retry=%s)",
                    self.name,
                    attempt + 1,
                    attempts_allowed,
                    exc,
                    classification.is_rate_limit,
                    classification.is_transient,
                    classification.should_retry,
                )
                if not classification.should_retry:
                    if classification.is_permanent:
                        raise PermanentError(str(exc)) from exc
                    raise
                if attempt >= attempts_allowed - 1:
                    break

                delay_ms = self._backoff.delay_ms(attempt, classification.retry_after_seconds)
                logger.warning(
                    "[%s] waiting %.1fs before retry %d/%d",
                    self.name,
                    delay_ms / 1000,
                    attempt + 2,
                    attempts_allowed,
                )
                await self._sleep(delay_ms / 1000)
                continue
            except BaseException:
                # Cancelled mid-attempt: neither outcome was recorded.
                self.breaker.release_probe()
                raise

            self.breaker.record_success()
            return result

        raise RetriesExhaustedError(self.name, attempts_allowed, last_error)

    def status(self, *, queue: RequestQueue | None = None) -> LimiterStatus:
        snapshot = self.breaker.snapshot()
        return LimiterStatus(
            dependency=self.name,
            circuit_state=snapshot.state,
            failures=snapshot.failure_count,
            queue_length=len(queue) if queue is not None else 0,
            last_call_time=self._last_call_at,
            next_retry_at=self.breaker.next_retry_at(),
        )

    def reset(self) -> None:
        self.breaker.reset()

    def _now_ms(self) -> float:
        return self._clock()

    def _lock_for_running_loop(self) -> asyncio.Lock:
        # asyncio.Lock binds to the first loop that waits on it.
        loop = asyncio.get_running_loop()
        if self._spacing_lock is None or self._spacing_loop is not loop:
            self._spacing_lock = asyncio.Lock()
            self._spacing_loop = loop
        return self._spacing_lock

    async def _await_spacing(self) -> None:
        async with self._lock_for_running_loop():
            if self._last_call_ms is not None:
                remaining = self._min_interval_ms - (self._clock() - self._last_call_ms)
                if remaining > 0:
                    await self._sleep(remaining / 1000)
            self._last_call_ms = self._clock()
            self._last_call_at = datetime.fromtimestamp(time.time(), tz=timezone.utc)

    async def _invoke_once(self, fn: Callable[[], Awaitable[T]]) -> T:
        timeout_seconds = self._request_timeout_ms / 1000
        try:
            return await asyncio.wait_for(fn(), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(
                f"{self.name} request timed out after {self._request_timeout_ms}ms"
            ) from exc

    def _note_failure(self, exc: BaseException) -> ErrorClassification:
        classification = self._classify(exc)
        if classification.is_rate_limit:
            self.breaker.record_failure()
        else:
            self.breaker.release_probe()
        return classification


@dataclass
class QueuedRequest(Generic[T]):
    invoke: Callable[[], Awaitable[T]]
    future: asyncio.Future
    enqueued_at: float


class RequestQueue:
    """FIFO path for calls that can wait; one request in flight at a time."""

    def __init__(
        self,
        executor: RateLimitedExecutor,
        *,
        queue_timeout_ms: int = 120000,
        circuit_poll_cap_ms: int = 10000,
    ) -> None:
        self._executor = executor
        self._queue_timeout_ms = queue_timeout_ms
        self._circuit_poll_cap_ms = circuit_poll_cap_ms
        self._items: deque[QueuedRequest[Any]] = deque()
        self._draining = False
        self._drain_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._draining

    async def enqueue(self, fn: Callable[[], Awaitable[T]]) -> T:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._items.append(QueuedRequest(invoke=fn, future=future, enqueued_at=self._executor._now_ms()))
        if not self._draining:
            self._draining = True
            self._drain_task = asyncio.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        executor = self._executor
        try:
            while self._items:
                request = self._items[0]
                if request.future.done():
                    self._items.popleft()
                    continue

                waited_ms = executor._now_ms() - request.enqueued_at
                if waited_ms > self._queue_timeout_ms:
                    self._items.popleft()
                    request.future.set_exception(QueueTimeoutError("Request timed out waiting in queue"))
                    continue

                decision = executor.breaker.can_proceed()
                if not decision.allowed:
                    pause_ms = min(decision.wait_ms or 5000, self._circuit_poll_cap_ms)
                    await executor._sleep(pause_ms / 1000)
                    continue

                try:
                    await executor._await_spacing()
                    self._items.popleft()
                    result = await executor._invoke_once(request.invoke)
                except Exception as exc:
                    executor._note_failure(exc)
                    if not request.future.done():
                        request.future.set_exception(exc)
                    continue
                except BaseException:
                    executor.breaker.release_probe()
                    if not request.future.done():
                        request.future.cancel()
                    raise

                executor.breaker.record_success()
                if not request.future.done():
                    request.future.set_result(result)
        finally:
            self._draining = False
