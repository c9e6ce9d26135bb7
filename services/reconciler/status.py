from common.errors import InvalidTransition
from common.logs import log_event
from common.schemas import JobRecord
from common.states import AppState
from services.reconciler.metrics import transitions


def describe(cause: BaseException) -> str:
    return str(cause) or type(cause).__name__


class PersistentStatusTracker:
    """
    Sole writer of lifecycle transitions reported by the duties.

    A transition the state graph forbids, or one that lands on a row some
    other writer already finished, is logged and dropped.
    """

    def __init__(self, persistence):
        self._persistence = persistence

    def _apply(self, job: JobRecord, state: AppState, error: str | None = None):
        try:
            updated = job.with_state(state, error=error)
        except InvalidTransition as e:
            log_event(
                "transition_rejected",
                job_id=job.id,
                from_state=job.state.value,
                to_state=state.value,
                reason=str(e),
            )
            return None

        if not self._persistence.update(updated):
            log_event(
                "transition_rejected",
                job_id=job.id,
                from_state=job.state.value,
                to_state=state.value,
                reason="row_terminal",
            )
            return None

        transitions.labels(state=state.value).inc()
        return updated

    def on_starting(self, job: JobRecord):
        return self._apply(job, AppState.STARTING)

    def on_running(self, job: JobRecord):
        return self._apply(job, AppState.RUNNING)

    def on_idle(self, job: JobRecord):
        return self._apply(job, AppState.IDLE)

    def on_error(self, job: JobRecord, cause: BaseException):
        log_event("application_error", job_id=job.id, error=describe(cause))
        return self._apply(job, AppState.ERROR, error=describe(cause))
