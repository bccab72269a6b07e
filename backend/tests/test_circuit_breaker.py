from orbitwatch.services.circuit_breaker import BreakerState, CircuitBreaker, RetryPolicy


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _tripped(clock, threshold=3):
    breaker = CircuitBreaker("WH-1", failure_threshold=threshold, open_seconds=60.0, clock=clock)
    for _ in range(threshold):
        assert breaker.allow_request()
        breaker.record_failure()
    return breaker


def test_opens_after_consecutive_failures():
    clock = FakeClock()
    breaker = _tripped(clock)

    assert breaker.state == BreakerState.OPEN
    assert breaker.allow_request() is False
    assert breaker.short_circuited == 1
    assert breaker.to_dict()["retry_in_seconds"] == 60.0


def test_success_resets_failure_count():
    breaker = CircuitBreaker("WH-1", failure_threshold=3, clock=FakeClock())
    for _ in range(2):
        breaker.allow_request()
        breaker.record_failure()
    breaker.allow_request()
    breaker.record_success()
    for _ in range(2):
        breaker.allow_request()
        breaker.record_failure()
    assert breaker.state == BreakerState.CLOSED


def test_half_open_allows_a_single_trial():
    clock = FakeClock()
    breaker = _tripped(clock)
    clock.now += 60.0

    assert breaker.state == BreakerState.HALF_OPEN
    assert breaker.allow_request() is True
    assert breaker.allow_request() is False

    breaker.record_success()
    assert breaker.state == BreakerState.CLOSED
    assert breaker.to_dict()["open_seconds"] == 60.0


def test_failed_trial_doubles_open_time_up_to_cap():
    clock = FakeClock()
    breaker = CircuitBreaker("WH-1", failure_threshold=1, open_seconds=60.0, max_open_seconds=200.0, clock=clock)
    breaker.allow_request()
    breaker.record_failure()

    expected = [120.0, 200.0, 200.0]
    for open_seconds in expected:
        clock.now += breaker.to_dict()["open_seconds"]
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert breaker.to_dict()["open_seconds"] == open_seconds


def test_retry_backoff_doubles():
    policy = RetryPolicy(max_attempts=4, base_backoff_seconds=1.5)
    assert [policy.backoff(n) for n in (1, 2, 3)] == [1.5, 3.0, 6.0]


def test_retry_policy_from_dict_clamps():
    policy = RetryPolicy.from_dict({"max_attempts": 0, "base_backoff_seconds": -1})
    assert policy.max_attempts == 1
    assert policy.base_backoff_seconds == 0.0
    assert RetryPolicy.from_dict(None) == RetryPolicy()
