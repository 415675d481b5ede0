import threading

from colorrun.ratelimit import LoginRateLimiter


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_three_failures_lock_until_a_day_after_first_attempt():
    clock = Clock()
    limiter = LoginRateLimiter(clock=clock)
    first = clock.now

    for expected_left in (3, 2, 1):
        status = limiter.check("10.0.0.1")
        assert status.allowed and status.remaining_attempts == expected_left
        limiter.record_failure("10.0.0.1")
        clock.now += 60

    status = limiter.check("10.0.0.1")
    assert not status.allowed
    assert status.locked_until == first + 24 * 3600

    clock.now = first + 24 * 3600 + 1
    assert limiter.check("10.0.0.1").allowed


def test_success_clears_failures():
    limiter = LoginRateLimiter(clock=Clock())
    limiter.record_failure("a")
    limiter.record_failure("a")
    limiter.record_success("a")
    assert limiter.check("a").remaining_attempts == 3


def test_identifiers_are_independent():
    limiter = LoginRateLimiter(clock=Clock())
    for _ in range(3):
        limiter.record_failure("a")
    assert not limiter.check("a").allowed
    assert limiter.check("b").allowed


def test_remaining_lock_time_text():
    clock = Clock()
    limiter = LoginRateLimiter(clock=clock)
    assert limiter.remaining_lock_time(clock.now + 2 * 3600 + 60) == "2 hours 1 minute"
    assert limiter.remaining_lock_time(clock.now + 5 * 60) == "5 minutes"
    assert limiter.remaining_lock_time(clock.now - 1) == "0 minutes"


def test_stale_entries_are_swept():
    clock = Clock()
    limiter = LoginRateLimiter(clock=clock)
    limiter.record_failure("old")
    clock.now += 25 * 3600
    limiter.check("other")
    assert "old" not in limiter._attempts


def test_concurrent_failures_are_all_counted():
    limiter = LoginRateLimiter(max_attempts=1000, clock=Clock())

    def fail_many(identifier):
        for _ in range(100):
            limiter.record_failure(identifier)
            limiter.check(identifier)

    threads = [threading.Thread(target=fail_many, args=(f"10.0.0.{i % 4}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert {k: a.count for k, a in limiter._attempts.items()} == {f"10.0.0.{i}": 200 for i in range(4)}
