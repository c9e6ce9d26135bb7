from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from common.errors import InvalidTransition
from common.states import AppState, JobKind, assert_transition


class JobRecord(BaseModel):
    """
    One session or batch submission as persisted.

    Immutable: every change produces a new record through ``with_state`` or
    ``with_backend_app_id``, which enforce the lifecycle rules.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    kind: JobKind = JobKind.SESSION
    state: AppState = AppState.NOT_STARTED
    created_at: datetime
    backend_app_id: Optional[str] = None
    submit_params: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            v = v.replace(tzinfo=None) - v.utcoffset()
        return v

    def with_state(self, state: AppState, error: str | None = None) -> "JobRecord":
        state = AppState(state)
        if state == self.state:
            # Track re-reports the same classification every tick.
            if state == AppState.NOT_STARTED:
                raise InvalidTransition("not_started -> not_started")
            return self
        assert_transition(self.state, state)
        update: Dict[str, Any] = {"state": state}
        if error is not None:
            update["last_error"] = error
        return self.model_copy(update=update)

    def with_backend_app_id(self, app_id: str | None) -> "JobRecord":
        if not app_id or app_id == self.backend_app_id:
            return self
        if self.backend_app_id is not None:
            raise InvalidTransition(
                f"backend_app_id already set to {self.backend_app_id}, refusing {app_id}"
            )
        if self.state == AppState.NOT_STARTED:
            raise InvalidTransition("backend_app_id before starting")
        return self.model_copy(update={"backend_app_id": app_id})


class BackendInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: AppState
    backend_app_id: Optional[str] = None
