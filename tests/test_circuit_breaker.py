from callsync.circuit_breaker import BreakerState, CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_breaker(clock):
    return CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0, label="test", clock=clock)


class TestCircuitBreaker:
    def test_starts_closed(self):
        breaker = make_breaker(FakeClock())
        assert breaker.state is BreakerState.CLOSED
        assert breaker.allow()

    def test_opens_after_threshold(self):
        breaker = make_breaker(FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.allow()
        breaker.record_failure()
        assert breaker.state is BreakerState.OPEN
        assert not breaker.allow()
        assert breaker.remaining_cooldown() == 60.0

    def test_success_resets_count(self):
        breaker = make_breaker(FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.allow()

    def test_half_open_after_cooldown(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now += 60
        assert breaker.state is BreakerState.HALF_OPEN
        assert breaker.allow()

    def test_failed_probe_reopens(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now += 61
        breaker.record_failure()
        assert breaker.state is BreakerState.OPEN
        assert breaker.remaining_cooldown() == 60.0

    def test_successful_probe_closes(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now += 61
        breaker.record_success()
        assert breaker.state is BreakerState.CLOSED
        assert breaker.remaining_cooldown() == 0.0
