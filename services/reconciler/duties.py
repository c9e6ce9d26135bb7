from dataclasses import dataclass
from datetime import timedelta

from common.clock import Clock
from common.config import BATCH_LAUNCH_LIMIT, SESSION_LAUNCH_LIMIT, SESSION_TIMEOUT_MINUTES
from common.errors import InvalidTransition
from common.logs import log_event
from common.states import AppState, JobKind, RUNNING_STATES, classify_activity
from services.reconciler.metrics import launches, sessions_killed
from services.reconciler.ports import (
    ActivityProbe,
    Backend,
    ErrorHandler,
    JobPersistence,
    LeaseCoordinator,
    StatusTracker,
)
from services.reconciler.schedule import (
    LAUNCH_BATCHES,
    LAUNCH_SESSIONS,
    REAP_SESSIONS,
    REFRESH_SESSIONS,
    TRACK_BATCHES,
    TRACK_SESSIONS,
)
from services.reconciler.status import describe


# ============================================================
# Launch
# ============================================================

@dataclass(frozen=True)
class LaunchResult:
    accepted: bool
    error: BaseException | None = None


def launch_application(backend: Backend, job, on_error: ErrorHandler) -> LaunchResult:
    """
    Hand ``job`` to the backend.

    Two channels: an immediate refusal comes back in the returned result,
    a failure the backend discovers later is delivered to ``on_error``.
    """
    try:
        backend.launch(job.id, job.submit_params, on_error)
    except Exception as e:
        return LaunchResult(accepted=False, error=e)
    return LaunchResult(accepted=True)


def error_reporter(tracker, job):
    def report(cause):
        try:
            tracker.on_error(job, cause)
        except Exception as e:
            log_event("tracker_failed", job_id=job.id, transition="error", error=repr(e))

    return report


def launch_tracked(backend: Backend, tracker: StatusTracker, job, kind: JobKind) -> LaunchResult:
    """
    Report ``job`` as starting, launch it, and report an immediate refusal
    as an error. Sessions and batches share this path.
    """
    log_event("launching", job_id=job.id, kind=kind.value)

    # Recorded before the backend call so a crash in between leaves the
    # row visibly starting. If this write fails the job is not launched.
    tracker.on_starting(job)

    result = launch_application(backend, job, error_reporter(tracker, job))
    if result.accepted:
        launches.labels(kind=kind.value, result="accepted").inc()
        return result

    launches.labels(kind=kind.value, result="rejected").inc()
    log_event("launch_rejected", job_id=job.id, error=describe(result.error))
    tracker.on_error(job, result.error)
    return result


# ============================================================
# Refresh from backend
# ============================================================

def refresh_from_backend(job, info):
    """
    Apply what the backend reports to ``job``.

    The backend only knows "running"; whether a running session is busy or
    idle is decided by the activity check, so that sub-state is kept.
    """
    state = info.state
    if state == AppState.RUNNING and job.state in RUNNING_STATES:
        state = job.state
    return job.with_state(state).with_backend_app_id(info.backend_app_id)


def sync_with_backend(jobs, backend: Backend, persistence: JobPersistence):
    refreshed = []
    for job in jobs:
        try:
            info = backend.query_info(job.id)
            if info is None:
                log_event("no_backend_info", job_id=job.id)
                continue

            log_event("tracking", job_id=job.id, state=info.state.value, backend_app_id=info.backend_app_id)
            updated = refresh_from_backend(job, info)
            if updated != job:
                persistence.update(updated)
            refreshed.append(updated)
        except InvalidTransition as e:
            log_event("transition_rejected", job_id=job.id, from_state=job.state.value, reason=str(e))
        except Exception as e:
            log_event("track_failed", job_id=job.id, error=repr(e))
    return refreshed


# ============================================================
# Track
# ============================================================

def partition_by_activity(jobs, probe):
    """
    Split running sessions into ``(idle, running)``.

    The probe is asked once per job. A job whose probe call fails is left
    out of both groups for this tick.
    """
    groups = {}
    for job in jobs:
        try:
            has_work = probe.has_waiting_work(job)
        except Exception as e:
            log_event("probe_failed", job_id=job.id, error=repr(e))
            continue
        groups.setdefault(classify_activity(bool(has_work)), []).append(job)

    return tuple(groups.get(AppState.IDLE, ())), tuple(groups.get(AppState.RUNNING, ()))


def _notify_each(jobs, notify, transition):
    for job in jobs:
        try:
            notify(job)
        except Exception as e:
            log_event("tracker_failed", job_id=job.id, transition=transition, error=repr(e))


# ============================================================
# Sessions
# ============================================================

class SessionDuties:
    def __init__(
        self,
        lease: LeaseCoordinator,
        persistence: JobPersistence,
        backend: Backend,
        probe: ActivityProbe,
        tracker: StatusTracker,
        timeout_minutes: int | None = SESSION_TIMEOUT_MINUTES,
        launch_limit: int = SESSION_LAUNCH_LIMIT,
        clock=None,
    ):
        self._lease = lease
        self._persistence = persistence
        self._backend = backend
        self._probe = probe
        self._tracker = tracker
        self._timeout_minutes = timeout_minutes
        self._launch_limit = launch_limit
        self._clock = clock or Clock()

    def launch_scheduled(self):
        self._lease.assert_held(LAUNCH_SESSIONS.name)

        results = {}
        for session in self._persistence.fetch_by_state(AppState.NOT_STARTED, self._launch_limit, JobKind.SESSION):
            try:
                results[session.id] = launch_tracked(self._backend, self._tracker, session, JobKind.SESSION)
            except Exception as e:
                log_event("launch_failed", job_id=session.id, error=repr(e))
        return results

    def refresh_non_final(self):
        self._lease.assert_held(REFRESH_SESSIONS.name)
        return sync_with_backend(self._persistence.fetch_non_final(JobKind.SESSION), self._backend, self._persistence)

    def track_running(self):
        self._lease.assert_held(TRACK_SESSIONS.name)

        idle, running = partition_by_activity(self._persistence.fetch_running(JobKind.SESSION), self._probe)
        _notify_each(idle, self._tracker.on_idle, "idle")
        _notify_each(running, self._tracker.on_running, "running")
        return idle, running

    def handle_timeout(self):
        self._lease.assert_held(REAP_SESSIONS.name)

        timeout = self._timeout_minutes
        if not timeout:
            return []

        # Age is counted from creation, not from last activity.
        cutoff = self._clock.now() - timedelta(minutes=timeout)
        expired = [s for s in self._persistence.fetch_running(JobKind.SESSION) if s.created_at < cutoff]

        killed = []
        for session in expired:
            try:
                if not self._persistence.kill(session):
                    continue
            except Exception as e:
                log_event("kill_failed", job_id=session.id, error=repr(e))
                continue

            log_event("session_killed", job_id=session.id, timeout_minutes=timeout, created_at=session.created_at)
            sessions_killed.inc()
            killed.append(session)

            try:
                self._backend.kill(session.id)
            except Exception as e:
                log_event("backend_kill_failed", job_id=session.id, error=repr(e))
        return killed


# ============================================================
# Batches
# ============================================================

class BatchDuties:
    def __init__(
        self,
        lease: LeaseCoordinator,
        persistence: JobPersistence,
        backend: Backend,
        tracker: StatusTracker,
        launch_limit: int = BATCH_LAUNCH_LIMIT,
    ):
        self._lease = lease
        self._persistence = persistence
        self._backend = backend
        self._tracker = tracker
        self._launch_limit = launch_limit

    def launch_scheduled(self):
        self._lease.assert_held(LAUNCH_BATCHES.name)

        results = {}
        for batch in self._persistence.fetch_by_state(AppState.NOT_STARTED, self._launch_limit, JobKind.BATCH):
            try:
                results[batch.id] = launch_tracked(self._backend, self._tracker, batch, JobKind.BATCH)
            except Exception as e:
                log_event("launch_failed", job_id=batch.id, error=repr(e))
        return results

    def track_non_final(self):
        self._lease.assert_held(TRACK_BATCHES.name)
        return sync_with_backend(self._persistence.fetch_non_final(JobKind.BATCH), self._backend, self._persistence)
