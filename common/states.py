from enum import Enum

from common.errors import InvalidTransition


class AppState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"
    SUCCESS = "success"
    ERROR = "error"
    KILLED = "killed"


class JobKind(str, Enum):
    SESSION = "session"
    BATCH = "batch"


TERMINAL_STATES = frozenset({AppState.SUCCESS, AppState.ERROR, AppState.KILLED})

# RUNNING and IDLE are the same backend state, split by activity.
RUNNING_STATES = frozenset({AppState.RUNNING, AppState.IDLE})

# Launched and not yet finished.
NON_FINAL_STATES = frozenset(AppState) - TERMINAL_STATES - {AppState.NOT_STARTED}

# KILLED is absent on purpose: only the reap path writes it, through
# JobPersistence.kill, never through a tracked transition.
_AFTER_START = RUNNING_STATES | {AppState.SUCCESS, AppState.ERROR}

_TRANSITIONS = {
    AppState.NOT_STARTED: frozenset({AppState.STARTING, AppState.ERROR}),
    AppState.STARTING: _AFTER_START,
    AppState.RUNNING: _AFTER_START,
    AppState.IDLE: _AFTER_START,
}


def is_terminal(state: AppState) -> bool:
    return AppState(state) in TERMINAL_STATES


def can_transition(src: AppState, dst: AppState) -> bool:
    return AppState(dst) in _TRANSITIONS.get(AppState(src), frozenset())


def assert_transition(src: AppState, dst: AppState) -> None:
    if not can_transition(src, dst):
        raise InvalidTransition(f"{AppState(src).value} -> {AppState(dst).value}")


def classify_activity(has_waiting_work: bool) -> AppState:
    """
    Derive the alive sub-state of a running session.

    Pure: the result is only ever used to pick which transition to report,
    it is never stored as its own column.
    """
    return AppState.RUNNING if has_waiting_work else AppState.IDLE
