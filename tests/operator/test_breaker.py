"""Tests for the gt CLI circuit breaker, driven by a fake clock."""

from __future__ import annotations

import pytest

from gastown.operator.gt.breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout=30.0, clock=clock)


def test_starts_closed(breaker: CircuitBreaker) -> None:
    assert breaker.state == CircuitState.CLOSED
    assert breaker.allow_request() is True


def test_opens_after_threshold(breaker: CircuitBreaker) -> None:
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED

    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.allow_request() is False


def test_success_resets_failure_count(breaker: CircuitBreaker) -> None:
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    stats = breaker.stats()
    assert stats.state == CircuitState.CLOSED
    assert stats.failure_count == 1
    assert stats.success_count == 1


def test_half_open_after_reset_timeout(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(3):
        breaker.record_failure()

    clock.advance(29)
    assert breaker.allow_request() is False

    clock.advance(1)
    assert breaker.state == CircuitState.HALF_OPEN
    # One probe call is let through, the next is refused.
    assert breaker.allow_request() is True
    assert breaker.allow_request() is False


def test_probe_success_closes(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(3):
        breaker.record_failure()
    clock.advance(30)
    assert breaker.allow_request() is True

    breaker.record_success()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats().failure_count == 0


def test_probe_failure_reopens(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(3):
        breaker.record_failure()
    clock.advance(30)
    assert breaker.allow_request() is True

    breaker.record_failure()

    assert breaker.state == CircuitState.OPEN
    assert breaker.allow_request() is False
    assert breaker.stats().last_failure_time == clock.now


def test_reset(breaker: CircuitBreaker) -> None:
    for _ in range(3):
        breaker.record_failure()
    breaker.reset()

    stats = breaker.stats()
    assert stats.state == CircuitState.CLOSED
    assert stats.failure_count == 0
    assert stats.last_failure_time is None


def test_non_positive_settings_fall_back_to_defaults() -> None:
    breaker = CircuitBreaker(failure_threshold=0, reset_timeout=-1, half_open_max_calls=0)
    assert breaker.failure_threshold == 5
    assert breaker.reset_timeout == 30.0
    assert breaker.half_open_max_calls == 1
