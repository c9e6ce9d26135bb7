from dataclasses import dataclass, field

from common.config import LEASE_SAFETY_MARGIN_SECONDS


@dataclass(frozen=True)
class DutySchedule:
    name: str
    interval_seconds: float
    lease_seconds: float
    margin_seconds: float = field(default=LEASE_SAFETY_MARGIN_SECONDS, compare=False)

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError(f"{self.name}: interval must be positive")
        # A tick must never outrun its own lease.
        if self.lease_seconds < self.interval_seconds + self.margin_seconds:
            raise ValueError(
                f"{self.name}: lease {self.lease_seconds}s must be at least "
                f"interval {self.interval_seconds}s + margin {self.margin_seconds}s"
            )


# Lease names are shared by every deployed version; do not rename.
LAUNCH_SESSIONS = DutySchedule("launch_sessions", interval_seconds=60, lease_seconds=120)
REFRESH_SESSIONS = DutySchedule("refresh_sessions", interval_seconds=120, lease_seconds=240)
TRACK_SESSIONS = DutySchedule("track_sessions", interval_seconds=120, lease_seconds=240)
REAP_SESSIONS = DutySchedule("reap_sessions", interval_seconds=600, lease_seconds=900)
LAUNCH_BATCHES = DutySchedule("launch_batches", interval_seconds=60, lease_seconds=120)
TRACK_BATCHES = DutySchedule("track_batches", interval_seconds=120, lease_seconds=240)
