"""Unit tests for the circuit breaker state machine."""

import pytest

from compress_pipeline.processors.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, cooldown_s=30, time_fn=clock)


def _open(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


class TestClosed:
    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert not breaker.should_block()
        assert breaker.allow_request()

    def test_stays_closed_below_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    def test_success_resets_consecutive_failures(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_opens_at_threshold(self, breaker, clock):
        clock.now = 5.0
        _open(breaker)
        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == 5.0
        assert breaker.should_block()
        assert not breaker.allow_request()


class TestOpen:
    def test_remaining_cooldown(self, breaker, clock):
        _open(breaker)
        clock.now = 10.0
        assert breaker.remaining_cooldown() == pytest.approx(20.0)

    def test_success_from_straggler_does_not_close(self, breaker):
        _open(breaker)
        breaker.record_success()
        assert breaker.state == CircuitState.OPEN
        assert breaker.should_block()

    def test_cooldown_elapsed_stops_blocking(self, breaker, clock):
        _open(breaker)
        clock.now = 30.0
        assert not breaker.should_block()
        assert breaker.remaining_cooldown() == 0.0


class TestHalfOpen:
    def test_admits_exactly_one_trial(self, breaker, clock):
        _open(breaker)
        clock.now = 31.0
        assert breaker.allow_request()
        assert breaker.state == CircuitState.HALF_OPEN
        assert not breaker.allow_request()

    def test_successful_trial_closes(self, breaker, clock):
        _open(breaker)
        clock.now = 31.0
        breaker.allow_request()
        breaker.record_success(trial=True)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.allow_request()

    def test_failed_trial_reopens_with_fresh_cooldown(self, breaker, clock):
        _open(breaker)
        clock.now = 31.0
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == 31.0
        clock.now = 50.0
        assert breaker.should_block()

    def test_released_trial_can_be_reclaimed(self, breaker, clock):
        _open(breaker)
        clock.now = 31.0
        assert breaker.allow_request()
        breaker.release_trial()
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

    def test_straggler_success_does_not_close_while_trial_in_flight(self, breaker, clock):
        _open(breaker)
        clock.now = 31.0
        assert breaker.allow_request()

        breaker.record_success()

        assert breaker.state == CircuitState.HALF_OPEN
        assert not breaker.allow_request()

        breaker.record_success(trial=True)
        assert breaker.state == CircuitState.CLOSED
