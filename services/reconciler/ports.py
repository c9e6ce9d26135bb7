from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from common.schemas import BackendInfo, JobRecord
from common.states import AppState, JobKind

ErrorHandler = Callable[[BaseException], None]


class LeaseCoordinator(Protocol):
    def try_acquire(self, name: str, ttl_seconds: Optional[float] = None) -> bool: ...

    def release(self, name: str) -> None: ...

    def assert_held(self, name: str) -> None: ...


class JobPersistence(Protocol):
    def fetch_by_state(self, state: AppState, limit: int, kind: JobKind = JobKind.SESSION) -> Sequence[JobRecord]: ...

    def fetch_running(self, kind: JobKind = JobKind.SESSION) -> Sequence[JobRecord]: ...

    def fetch_non_final(self, kind: JobKind = JobKind.BATCH) -> Sequence[JobRecord]: ...

    def update(self, job: JobRecord) -> bool: ...

    def kill(self, job: JobRecord) -> bool: ...


class Backend(Protocol):
    def launch(self, job_id: str, submit_params: Dict[str, Any], on_async_error: ErrorHandler) -> None:
        """Start the job. Raises for an immediate refusal; later failures go to ``on_async_error``."""
        ...

    def query_info(self, job_id: str) -> Optional[BackendInfo]: ...

    def kill(self, job_id: str) -> None:
        """Stop the job if it is still running. Unknown ids are ignored."""
        ...


class ActivityProbe(Protocol):
    def has_waiting_work(self, job: JobRecord) -> bool: ...


class StatusTracker(Protocol):
    def on_starting(self, job: JobRecord) -> None: ...

    def on_running(self, job: JobRecord) -> None: ...

    def on_idle(self, job: JobRecord) -> None: ...

    def on_error(self, job: JobRecord, cause: BaseException) -> None: ...
