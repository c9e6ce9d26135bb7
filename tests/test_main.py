import threading

from common.schemas import BackendInfo
from common.states import AppState, JobKind
from conftest import FakeBackend, FakeLease, make_job
from db.repository import SqlJobRepository
from services.reconciler.main import build_runners, wait_for_schema


def test_wiring_runs_every_duty_against_the_database(session_factory):
    repo = SqlJobRepository(session_factory)
    repo.add(make_job("s1"))
    repo.add(make_job("s2", state=AppState.RUNNING))
    backend = FakeBackend()

    runners = build_runners(session_factory, threading.Event(), lease=FakeLease(), backend=backend)

    assert [r.schedule.name for r in runners] == [
        "launch_sessions",
        "refresh_sessions",
        "track_sessions",
        "reap_sessions",
        "launch_batches",
        "track_batches",
    ]
    assert [r.run_once() for r in runners] == ["ran"] * 6

    assert backend.launched == ["s1"]
    assert repo.get("s1").state == AppState.STARTING
    assert repo.get("s2").state == AppState.IDLE



def test_launched_jobs_reach_running_and_are_reaped(session_factory):
    repo = SqlJobRepository(session_factory)
    repo.add(make_job("s1", age_minutes=100_000))
    repo.add(make_job("b1", kind=JobKind.BATCH))
    backend = FakeBackend(infos={
        "s1": BackendInfo(state=AppState.RUNNING, backend_app_id="app-1"),
        "b1": BackendInfo(state=AppState.SUCCESS, backend_app_id="app-b"),
    })
    runners = {
        r.schedule.name: r
        for r in build_runners(session_factory, threading.Event(), lease=FakeLease(), backend=backend, timeout_minutes=10)
    }

    runners["launch_sessions"].run_once()
    assert repo.get("s1").state == AppState.STARTING

    runners["refresh_sessions"].run_once()
    s1 = repo.get("s1")
    assert s1.state == AppState.RUNNING
    assert s1.backend_app_id == "app-1"

    runners["track_sessions"].run_once()
    assert repo.get("s1").state == AppState.IDLE

    runners["reap_sessions"].run_once()
    assert repo.get("s1").state == AppState.KILLED
    assert backend.killed == ["s1"]

    runners["launch_batches"].run_once()
    runners["track_batches"].run_once()
    assert repo.get("b1").state == AppState.SUCCESS
    assert repo.get("b1").backend_app_id == "app-b"
    assert backend.launched == ["s1", "b1"]

def test_wait_for_schema_returns_when_tables_exist(session_factory):
    wait_for_schema(session_factory, timeout_seconds=1)
