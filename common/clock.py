from datetime import datetime, timedelta, timezone


class Clock:
    """Naive UTC, matching what the applications table stores."""

    def now(self):
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    def __init__(self, at: datetime):
        self.at = at

    def now(self):
        return self.at

    def advance(self, **delta):
        self.at = self.at + timedelta(**delta)
