import signal
import threading
import time

from prometheus_client import start_http_server
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from common.config import LEASE_BACKEND, METRICS_ENABLED, METRICS_PORT, REDIS_URL, SESSION_TIMEOUT_MINUTES
from common.logs import log_event
from db.repository import SqlJobRepository
from db.session import get_session_factory
from services.reconciler.backend import SparkSubmitBackend
from services.reconciler.duties import BatchDuties, SessionDuties
from services.reconciler.lease import RedisLeaseCoordinator, SqlLeaseCoordinator
from services.reconciler.probe import SqlActivityProbe
from services.reconciler.runner import DutyRunner
from services.reconciler.schedule import (
    LAUNCH_BATCHES,
    LAUNCH_SESSIONS,
    REAP_SESSIONS,
    REFRESH_SESSIONS,
    TRACK_BATCHES,
    TRACK_SESSIONS,
)
from services.reconciler.status import PersistentStatusTracker


def wait_for_schema(session_factory, timeout_seconds=60):
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        try:
            with session_factory() as s:
                s.execute(text("SELECT 1 FROM applications LIMIT 1"))
            return
        except SQLAlchemyError:
            time.sleep(2)
    raise RuntimeError("schema not ready")


def build_lease(session_factory):
    if LEASE_BACKEND == "redis":
        return RedisLeaseCoordinator(REDIS_URL)
    if LEASE_BACKEND == "sql":
        return SqlLeaseCoordinator(session_factory)
    raise RuntimeError(f"Unknown LEASE_BACKEND: {LEASE_BACKEND}")


def build_runners(session_factory, stop_event, lease=None, backend=None, timeout_minutes=SESSION_TIMEOUT_MINUTES):
    lease = lease or build_lease(session_factory)
    persistence = SqlJobRepository(session_factory)
    backend = backend or SparkSubmitBackend()
    tracker = PersistentStatusTracker(persistence)

    sessions = SessionDuties(
        lease,
        persistence,
        backend,
        SqlActivityProbe(session_factory),
        tracker,
        timeout_minutes=timeout_minutes,
    )
    batches = BatchDuties(lease, persistence, backend, tracker)

    return [
        DutyRunner(LAUNCH_SESSIONS, lease, sessions.launch_scheduled, stop_event),
        DutyRunner(REFRESH_SESSIONS, lease, sessions.refresh_non_final, stop_event),
        DutyRunner(TRACK_SESSIONS, lease, sessions.track_running, stop_event),
        DutyRunner(REAP_SESSIONS, lease, sessions.handle_timeout, stop_event),
        DutyRunner(LAUNCH_BATCHES, lease, batches.launch_scheduled, stop_event),
        DutyRunner(TRACK_BATCHES, lease, batches.track_non_final, stop_event),
    ]


def main():
    if METRICS_ENABLED:
        start_http_server(METRICS_PORT)

    session_factory = get_session_factory()
    wait_for_schema(session_factory)

    stop_event = threading.Event()

    def _request_stop(*_args):
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    runners = build_runners(session_factory, stop_event)
    for runner in runners:
        runner.start()
    log_event("reconciler_started", duties=[r.schedule.name for r in runners], lease_backend=LEASE_BACKEND)

    while not stop_event.is_set():
        stop_event.wait(1.0)

    for runner in runners:
        runner.join()
    log_event("reconciler_stopped")


if __name__ == "__main__":
    main()
