import threading
import time

from common.logs import log_event
from services.reconciler.metrics import duty_ticks


class DutyRunner:
    """
    Fires one duty at a fixed rate on its own thread.

    A firing only runs the duty when the named lease is acquired; anything
    the duty raises is logged so the schedule keeps going.
    """

    def __init__(self, schedule, lease, duty, stop_event: threading.Event | None = None, monotonic=time.monotonic):
        self.schedule = schedule
        self._lease = lease
        self._duty = duty
        self._stop = stop_event or threading.Event()
        self._monotonic = monotonic
        self._thread = None

    def run_once(self) -> str:
        name = self.schedule.name
        try:
            acquired = self._lease.try_acquire(name, self.schedule.lease_seconds)
        except Exception as e:
            log_event("lease_store_unavailable", lease=name, error=repr(e))
            acquired = False

        if not acquired:
            duty_ticks.labels(duty=name, outcome="skipped").inc()
            return "skipped"

        outcome = "ran"
        try:
            self._duty()
        except Exception as e:
            outcome = "failed"
            log_event("tick_failed", duty=name, error=repr(e))
        finally:
            try:
                self._lease.release(name)
            except Exception as e:
                log_event("lease_release_failed", lease=name, error=repr(e))

        duty_ticks.labels(duty=name, outcome=outcome).inc()
        return outcome

    def run_forever(self) -> None:
        interval = self.schedule.interval_seconds
        next_fire = self._monotonic()
        while not self._stop.is_set():
            self.run_once()

            next_fire += interval
            now = self._monotonic()
            if next_fire < now:
                # overran: skip the fires we missed instead of bursting
                missed = int((now - next_fire) // interval) + 1
                next_fire += missed * interval
            self._stop.wait(next_fire - now)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run_forever, name=f"duty-{self.schedule.name}", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
