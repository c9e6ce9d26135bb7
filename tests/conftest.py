import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest


# Ensure repo root is importable so `services.*` works
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from common.clock import FixedClock  # noqa: E402
from common.errors import LaunchRejected, LeaseNotHeld  # noqa: E402
from common.schemas import JobRecord  # noqa: E402
from common.states import (  # noqa: E402
    AppState,
    JobKind,
    NON_FINAL_STATES,
    RUNNING_STATES,
    TERMINAL_STATES,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_job(job_id, state=AppState.NOT_STARTED, age_minutes=0, kind=JobKind.SESSION, **fields):
    return JobRecord(
        id=job_id,
        kind=kind,
        state=state,
        created_at=NOW - timedelta(minutes=age_minutes),
        submit_params=fields.pop("submit_params", {"file": f"{job_id}.py"}),
        **fields,
    )


# ============================================================
# Fakes
# ============================================================

class FakeLease:
    def __init__(self, deny=()):
        self.deny = set(deny)
        self.held = set()
        self.acquired = []
        self.released = []

    def try_acquire(self, name, ttl_seconds=None):
        if name in self.deny or name in self.held:
            return False
        self.held.add(name)
        self.acquired.append(name)
        return True

    def release(self, name):
        self.held.discard(name)
        self.released.append(name)

    def assert_held(self, name):
        if name not in self.held:
            raise LeaseNotHeld(name)


class FakePersistence:
    def __init__(self, jobs=()):
        self.jobs = {j.id: j for j in jobs}
        self.reads = []
        self.updates = []
        self.killed = []

    def _select(self, kind, states):
        found = [j for j in self.jobs.values() if j.kind == kind and j.state in states]
        return sorted(found, key=lambda j: (j.created_at, j.id))

    def fetch_by_state(self, state, limit, kind=JobKind.SESSION):
        self.reads.append(("by_state", state, limit, kind))
        return self._select(kind, {state})[:limit]

    def fetch_running(self, kind=JobKind.SESSION):
        self.reads.append(("running", kind))
        return self._select(kind, RUNNING_STATES)

    def fetch_non_final(self, kind=JobKind.BATCH):
        self.reads.append(("non_final", kind))
        return self._select(kind, NON_FINAL_STATES)

    def update(self, job):
        current = self.jobs.get(job.id)
        if current is None or current.state in TERMINAL_STATES:
            return False
        self.jobs[job.id] = job
        self.updates.append(job)
        return True

    def kill(self, job):
        self.killed.append(job.id)
        current = self.jobs.get(job.id)
        if current is None or current.state in TERMINAL_STATES:
            return False
        self.jobs[job.id] = current.model_copy(update={"state": AppState.KILLED})
        return True


class RecordingTracker:
    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def _record(self, transition, job, cause=None):
        self.calls.append((transition, job.id, cause))
        if (transition, job.id) in self.fail_on:
            raise RuntimeError(f"tracker down for {job.id}")

    def on_starting(self, job):
        self._record("starting", job)

    def on_running(self, job):
        self._record("running", job)

    def on_idle(self, job):
        self._record("idle", job)

    def on_error(self, job, cause):
        self._record("error", job, cause)

    def of(self, transition):
        return [job_id for t, job_id, _ in self.calls if t == transition]


class FakeBackend:
    def __init__(self, reject=(), fail_later=(), infos=None, info_errors=()):
        self.reject = set(reject)
        self.fail_later = set(fail_later)
        self.infos = dict(infos or {})
        self.info_errors = set(info_errors)
        self.launched = []
        self.callbacks = {}
        self.killed = []

    def launch(self, job_id, submit_params, on_async_error):
        if job_id in self.reject:
            raise LaunchRejected(f"backend refused {job_id}")
        self.launched.append(job_id)
        self.callbacks[job_id] = on_async_error

    def report_async_failures(self):
        for job_id in self.fail_later:
            self.callbacks[job_id](LaunchRejected(f"{job_id} died"))

    def query_info(self, job_id):
        if job_id in self.info_errors:
            raise ConnectionError("backend unreachable")
        return self.infos.get(job_id)

    def kill(self, job_id):
        self.killed.append(job_id)


class FakeProbe:
    def __init__(self, waiting=(), failing=()):
        self.waiting = set(waiting)
        self.failing = set(failing)
        self.calls = []

    def has_waiting_work(self, job):
        self.calls.append(job.id)
        if job.id in self.failing:
            raise TimeoutError(f"probe timed out for {job.id}")
        return job.id in self.waiting


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def lease():
    return FakeLease()


@pytest.fixture
def tracker():
    return RecordingTracker()


@pytest.fixture
def session_factory(tmp_path):
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    import db.models  # noqa: F401  registers tables
    from db.session import Base

    engine = create_engine(f"sqlite:///{tmp_path / 'jobwarden.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture(scope="session")
def redis_url() -> str:
    url = os.getenv("REDIS_URL")
    if not url:
        pytest.skip("REDIS_URL is not set; export REDIS_URL to run Redis-backed tests.")

    import redis

    # If Redis isn't reachable, skip instead of failing the whole suite.
    try:
        redis.Redis.from_url(url).ping()
    except Exception as e:
        pytest.skip(f"Redis not reachable at REDIS_URL: {e}")

    return url
