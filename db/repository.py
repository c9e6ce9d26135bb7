from sqlalchemy import func, select, update

from common.schemas import JobRecord
from common.states import AppState, JobKind, NON_FINAL_STATES, RUNNING_STATES, TERMINAL_STATES
from db.models import Application, utcnow

_TERMINAL = [s.value for s in TERMINAL_STATES]


def _to_record(row: Application) -> JobRecord:
    return JobRecord(
        id=row.id,
        kind=row.kind,
        state=row.state,
        created_at=row.created_at,
        backend_app_id=row.backend_app_id,
        submit_params=row.submit_params or {},
        last_error=row.last_error,
        updated_at=row.updated_at,
    )


class SqlJobRepository:
    """
    Job records in the ``applications`` table.

    Writes never touch a row that is already terminal, so concurrent duties
    on different instances can race on the same row without resurrecting a
    killed or finished application.
    """

    def __init__(self, session_factory):
        self._sessions = session_factory

    def add(self, job: JobRecord) -> None:
        with self._sessions.begin() as s:
            s.add(
                Application(
                    id=job.id,
                    kind=job.kind.value,
                    state=job.state.value,
                    backend_app_id=job.backend_app_id,
                    submit_params=dict(job.submit_params),
                    last_error=job.last_error,
                    created_at=job.created_at,
                )
            )

    def get(self, job_id: str) -> JobRecord | None:
        with self._sessions() as s:
            row = s.get(Application, job_id)
            return _to_record(row) if row else None

    def _fetch(self, kind, states, limit=None):
        stmt = (
            select(Application)
            .where(Application.kind == JobKind(kind).value)
            .where(Application.state.in_([AppState(st).value for st in states]))
            .order_by(Application.created_at, Application.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sessions() as s:
            return [_to_record(row) for row in s.scalars(stmt)]

    def fetch_by_state(self, state: AppState, limit: int, kind: JobKind = JobKind.SESSION) -> list[JobRecord]:
        return self._fetch(kind, [state], limit)

    def fetch_running(self, kind: JobKind = JobKind.SESSION) -> list[JobRecord]:
        return self._fetch(kind, RUNNING_STATES)

    def fetch_non_final(self, kind: JobKind = JobKind.BATCH) -> list[JobRecord]:
        return self._fetch(kind, NON_FINAL_STATES)

    def update(self, job: JobRecord) -> bool:
        with self._sessions.begin() as s:
            result = s.execute(
                update(Application)
                .where(Application.id == job.id)
                .where(Application.state.not_in(_TERMINAL))
                .values(
                    state=job.state.value,
                    # first writer of the backend id wins
                    backend_app_id=func.coalesce(Application.backend_app_id, job.backend_app_id),
                    last_error=job.last_error,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def kill(self, job: JobRecord) -> bool:
        with self._sessions.begin() as s:
            result = s.execute(
                update(Application)
                .where(Application.id == job.id)
                .where(Application.state.not_in(_TERMINAL))
                .values(state=AppState.KILLED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)
