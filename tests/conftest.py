"""
Shared fixtures: a controllable clock so due-date logic is deterministic
"""

import pytest
from datetime import datetime, timedelta, timezone


class FixedClock:
    """Callable clock returning a settable instant"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock frozen at 2024-06-15 12:00 UTC"""
    return FixedClock(datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc))
