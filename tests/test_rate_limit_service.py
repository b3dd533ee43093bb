import threading

from app.services.rate_limit_service import RequestThrottler


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_eleventh_request_in_window_is_denied():
    clock = FakeClock(1_000)
    throttler = RequestThrottler(max_requests=10, window_ms=60_000, clock=clock)

    decisions = [throttler.check_limit("alice") for _ in range(10)]
    assert all(decision.allowed for decision in decisions)
    assert [d.remaining for d in decisions] == list(range(9, -1, -1))

    clock.now = 31_000
    denied = throttler.check_limit("alice")
    assert not denied.allowed
    assert denied.wait_time_ms == 30_000
    assert denied.remaining == 0


def test_window_expiry_starts_a_fresh_window():
    clock = FakeClock(0)
    throttler = RequestThrottler(max_requests=2, window_ms=1_000, clock=clock)
    throttler.check_limit("bob")
    throttler.check_limit("bob")
    assert not throttler.check_limit("bob").allowed

    clock.now = 1_000
    decision = throttler.check_limit("bob")

    assert decision.allowed
    assert throttler.get_count("bob") == 1


def test_identities_are_throttled_independently():
    throttler = RequestThrottler(max_requests=1, window_ms=60_000, clock=FakeClock())

    assert throttler.check_limit("alice").allowed
    assert throttler.check_limit("bob").allowed
    assert not throttler.check_limit("alice").allowed


def test_reset_and_clear_are_administrative_overrides():
    throttler = RequestThrottler(max_requests=1, window_ms=60_000, clock=FakeClock())
    throttler.check_limit("alice")
    throttler.check_limit("bob")

    throttler.reset("alice")
    assert throttler.check_limit("alice").allowed
    assert not throttler.check_limit("bob").allowed

    throttler.clear()
    assert throttler.get_count("alice") == 0
    assert throttler.check_limit("bob").allowed


def test_concurrent_checks_never_admit_more_than_the_maximum():
    throttler = RequestThrottler(max_requests=10, window_ms=60_000, clock=FakeClock())
    admitted = []
    lock = threading.Lock()

    def worker():
        for _ in range(5):
            decision = throttler.check_limit("shared")
            with lock:
                admitted.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert admitted.count(True) == 10
    assert throttler.get_count("shared") == 10
