"""Source health tracking and circuit breaker transitions."""

import threading

import pytest

from territory_engine.health import DataSourceHealth
from territory_engine.models import CircuitState, SourceDefinition, SourceType


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _health(clock, reliability=100, priority=80, **kw):
    d = SourceDefinition(id="src", name="src", type=SourceType.EXTERNAL_API,
                         priority=priority, reliability=reliability)
    return DataSourceHealth(d, clock=clock, **kw)


class TestRecordOutcomes:
    def test_success_resets_failures_and_nudges_reliability(self):
        h = _health(FakeClock(), reliability=90)
        h.record_failure("boom")
        h.record_failure("boom")
        assert h.consecutive_failures == 2
        assert h.reliability == 90 - 1 - 2
        h.record_success(100)
        assert h.consecutive_failures == 0
        assert h.reliability == 89

    def test_reliability_capped_at_100(self):
        h = _health(FakeClock(), reliability=99)
        h.record_success(10)
        h.record_success(10)
        assert h.reliability == 100

    def test_failure_decrement_capped_at_10(self):
        h = _health(FakeClock(), reliability=100, failure_threshold=50, reliability_floor=0)
        for _ in range(12):
            h.record_failure()
        # 1+2+...+10 then 10, 10
        assert h.reliability == 100 - 55 - 20

    def test_response_time_ema(self):
        h = _health(FakeClock())
        h.record_success(1000)
        assert h.average_response_time == 1000
        h.record_success(2000)
        assert h.average_response_time == pytest.approx(0.2 * 2000 + 0.8 * 1000)


class TestHealthScore:
    def test_recency_and_latency_bonuses(self):
        clock = FakeClock()
        h = _health(clock, reliability=70)
        assert h.health_score() == 70
        h.record_success(500)
        # 72 reliability + 10 (success within 1h) + 5 (sub-2s)
        assert h.health_score() == 87
        clock.advance(2 * 3600)
        assert h.health_score() == 82
        clock.advance(2 * 86400)
        assert h.health_score() == 77

    def test_slow_source_gets_no_latency_bonus(self):
        h = _health(FakeClock(), reliability=70)
        h.record_success(5000)
        assert h.health_score() == 72 + 10

    def test_clamped(self):
        h = _health(FakeClock(), reliability=100)
        h.record_success(10)
        assert h.health_score() == 100


class TestCircuitBreaker:
    def test_opens_after_ten_consecutive_failures(self):
        h = _health(FakeClock(), reliability=100)
        for _ in range(9):
            h.record_failure("down")
        assert h.circuit_state == CircuitState.CLOSED
        h.record_failure("down")
        assert h.circuit_state == CircuitState.OPEN
        assert not h.allow_request()

    def test_opens_when_reliability_below_floor(self):
        h = _health(FakeClock(), reliability=55)
        h.record_failure()
        assert h.circuit_state == CircuitState.CLOSED  # 54
        h.record_failure()
        assert h.circuit_state == CircuitState.CLOSED  # 52
        h.record_failure()
        assert h.reliability == 49
        assert h.circuit_state == CircuitState.OPEN

    def test_half_open_allows_exactly_one_trial(self):
        clock = FakeClock()
        h = _health(clock, reliability=100)
        for _ in range(10):
            h.record_failure()
        clock.advance(299)
        assert not h.allow_request()
        assert not h.is_available()
        clock.advance(2)
        assert h.is_available()
        assert h.allow_request()
        assert h.circuit_state == CircuitState.HALF_OPEN
        assert not h.allow_request()
        assert not h.is_available()

    def test_trial_success_closes(self):
        clock = FakeClock()
        h = _health(clock, reliability=100)
        for _ in range(10):
            h.record_failure()
        clock.advance(301)
        assert h.allow_request()
        h.record_success(200)
        assert h.circuit_state == CircuitState.CLOSED
        assert h.consecutive_failures == 0
        assert h.allow_request()

    def test_trial_failure_reopens_with_fresh_cooldown(self):
        clock = FakeClock()
        h = _health(clock, reliability=100)
        for _ in range(10):
            h.record_failure()
        clock.advance(301)
        assert h.allow_request()
        h.record_failure("still down")
        assert h.circuit_state == CircuitState.OPEN
        clock.advance(100)
        assert not h.allow_request()
        clock.advance(201)
        assert h.allow_request()

    def test_released_trial_can_be_claimed_again(self):
        clock = FakeClock()
        h = _health(clock, reliability=100)
        for _ in range(10):
            h.record_failure()
        clock.advance(301)
        assert h.allow_request()
        h.release_trial()
        assert h.allow_request()

    def test_concurrent_failures_are_not_lost(self):
        h = _health(FakeClock(), reliability=100, failure_threshold=10_000, reliability_floor=0)

        def hammer():
            for _ in range(100):
                h.record_failure()

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert h.consecutive_failures == 800


class TestSnapshot:
    def test_snapshot_fields(self):
        clock = FakeClock()
        h = _health(clock, reliability=90, priority=70)
        h.record_success(1234)
        snap = h.snapshot()
        assert snap["id"] == "src"
        assert snap["type"] == "external-api"
        assert snap["priority"] == 70
        assert snap["reliability"] == 92
        assert snap["circuit_state"] == "closed"
        assert snap["average_response_time_ms"] == 1234
        assert snap["last_success"] == clock.now

    def test_snapshot_has_no_side_effects(self):
        clock = FakeClock()
        h = _health(clock, reliability=100)
        for _ in range(10):
            h.record_failure()
        clock.advance(400)
        h.snapshot()
        h.snapshot()
        # Snapshot must not move the breaker to half-open
        assert h.circuit_state == CircuitState.OPEN
