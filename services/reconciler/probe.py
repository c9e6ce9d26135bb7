from sqlalchemy import exists, select

from common.schemas import JobRecord
from db.models import Statement

WAITING = "waiting"


class SqlActivityProbe:
    """A session has pending work while any of its statements is still waiting."""

    def __init__(self, session_factory):
        self._sessions = session_factory

    def has_waiting_work(self, job: JobRecord) -> bool:
        stmt = select(
            exists().where(Statement.session_id == job.id, Statement.state == WAITING)
        )
        with self._sessions() as s:
            return bool(s.scalar(stmt))
