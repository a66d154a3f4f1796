from leadflow.services.first_response_guard import FirstResponseGuard


class Ticker:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestFirstResponseGuard:
    def test_marker_visible_within_ttl(self):
        ticker = Ticker()
        guard = FirstResponseGuard(ttl_seconds=10, clock=ticker)
        guard.mark_sent("c1")
        ticker.now += 9.9
        assert guard.was_sent("c1") is True

    def test_marker_expires(self):
        ticker = Ticker()
        guard = FirstResponseGuard(ttl_seconds=10, clock=ticker)
        guard.mark_sent("c1")
        ticker.now += 10
        assert guard.was_sent("c1") is False
        assert len(guard) == 0

    def test_kinds_are_independent(self):
        guard = FirstResponseGuard(ttl_seconds=10, clock=Ticker())
        guard.mark_sent("c1", "handoff:specialist")
        assert guard.was_sent("c1", "handoff:specialist") is True
        assert guard.was_sent("c1") is False
        assert guard.was_sent("c2", "handoff:specialist") is False

    def test_purge_drops_expired(self):
        ticker = Ticker()
        guard = FirstResponseGuard(ttl_seconds=10, clock=ticker)
        guard.mark_sent("c1")
        ticker.now += 5
        guard.mark_sent("c2")
        ticker.now += 6
        assert guard.purge() == 1
        assert guard.was_sent("c2") is True
