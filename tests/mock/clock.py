"""Manually advanced clock."""
from datetime import datetime, timedelta, timezone


class FakeClock:
    """Clock whose time only moves when someone sleeps.

    Usage:
        clock = FakeClock(on_sleep=cluster.reconcile)
        poll_until(condition, 2, 10, clock=clock)
        assert clock.sleeps == [2, 2]
    """

    def __init__(self, start=None, on_sleep=None):
        self.start = start or datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.on_sleep = on_sleep
        self.sleeps = []

    def monotonic(self):
        return self.elapsed

    def now(self):
        return self.start + timedelta(seconds=self.elapsed)

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.elapsed += seconds
        if self.on_sleep:
            self.on_sleep()
