from wa_tg_bridge.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_admits_up_to_limit_per_key():
    clock = FakeClock()
    limiter = RateLimiter(max_per_minute=3, clock=clock)

    assert [limiter.can_proceed("wa_a") for _ in range(4)] == [True, True, True, False]
    # Other keys have their own window
    assert limiter.can_proceed("wa_b")


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(max_per_minute=2, clock=clock)
    assert limiter.can_proceed("k")
    clock.now += 30
    assert limiter.can_proceed("k")
    assert not limiter.can_proceed("k")

    clock.now += 31
    # First admission is now older than 60s
    assert limiter.can_proceed("k")
    assert not limiter.can_proceed("k")


def test_cleanup_drops_empty_windows():
    clock = FakeClock()
    limiter = RateLimiter(max_per_minute=5, clock=clock)
    limiter.can_proceed("old")
    clock.now += 45
    limiter.can_proceed("fresh")
    clock.now += 20

    assert limiter.cleanup() == 1
    assert limiter.tracked_keys() == 1
