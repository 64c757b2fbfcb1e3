from __future__ import annotations

import pytest

from foodshare_outbound.circuit_breaker import CircuitBreaker


class FakeClock:
    def __init__(self) -> None:
        self.now_ms = 0.0

    def __call__(self) -> float:
        return self.now_ms


def _breaker(clock: FakeClock, *, threshold: int = 3, reset_ms: int = 60000) -> CircuitBreaker:
    return CircuitBreaker("ai", failure_threshold=threshold, reset_timeout_ms=reset_ms, clock=clock)


def test_breaker_opens_at_threshold_and_refuses_calls() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == "CLOSED"
    assert breaker.can_proceed().allowed is True

    breaker.record_failure()
    assert breaker.state == "OPEN"
    assert breaker.failure_count == 3

    clock.now_ms = 15000
    decision = breaker.can_proceed()
    assert decision.allowed is False
    assert decision.wait_ms == 45000
    assert breaker.next_retry_at() is not None


def test_half_open_admits_a_single_probe() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1, reset_ms=1000)
    breaker.record_failure()

    clock.now_ms = 1000
    assert breaker.can_proceed().allowed is True
    assert breaker.state == "HALF_OPEN"

    second = breaker.can_proceed()
    assert second.allowed is False
    assert second.wait_ms == 0


def test_probe_success_closes_and_clears_failures() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=2, reset_ms=1000)
    breaker.record_failure()
    breaker.record_failure()

    clock.now_ms = 2000
    assert breaker.can_proceed().allowed is True
    breaker.record_success()

    assert breaker.state == "CLOSED"
    assert breaker.failure_count == 0
    assert breaker.next_retry_at() is None


def test_probe_failure_reopens_with_fresh_window() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=2, reset_ms=1000)
    breaker.record_failure()
    breaker.record_failure()

    clock.now_ms = 1500
    assert breaker.can_proceed().allowed is True
    breaker.record_failure()

    assert breaker.state == "OPEN"
    decision = breaker.can_proceed()
    assert decision.allowed is False
    assert decision.wait_ms == 1000


def test_release_probe_frees_slot_without_changing_state() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1, reset_ms=10)
    breaker.record_failure()
    clock.now_ms = 10
    assert breaker.can_proceed().allowed is True

    breaker.release_probe()

    assert breaker.state == "HALF_OPEN"
    assert breaker.can_proceed().allowed is True


def test_manual_reset_closes_breaker() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()

    breaker.reset()

    snapshot = breaker.snapshot()
    assert snapshot.state == "CLOSED"
    assert snapshot.failure_count == 0
    assert breaker.can_proceed().allowed is True


def test_threshold_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker("ai", failure_threshold=0)
