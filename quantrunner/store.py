"""
The session state store: the single owner of the current backtest session.

Collaborators never mutate the session. They submit transitions through
`SessionStore.dispatch` and observe snapshots through `subscribe`.
"""
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from quantrunner.batch import BatchRun
from quantrunner.config import BacktestConfig
from quantrunner.results import BacktestResults
from quantrunner.views import total_pages

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10


class Phase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class Session(BaseModel):
    """
    Immutable snapshot of the backtest session.

    Args:
        config (BacktestConfig): Parameters for the next run.
        phase (Phase): Lifecycle phase of the current run.
        results (Optional[BacktestResults]): Results of the last successful run.
        batch (Optional[BatchRun]): Last batch run, independent of `phase`.
        error (Optional[str]): Failure message of the last run, verbatim.
        run_id (int): Incremented on every accepted start; identifies the
            run a late response belongs to.
        page (int): Current 1-based trade page.
        page_size (int): Trades per page.
    """
    model_config = ConfigDict(frozen=True)

    config: BacktestConfig = Field(default_factory=BacktestConfig)
    phase: Phase = Phase.IDLE
    results: Optional[BacktestResults] = None
    batch: Optional[BatchRun] = None
    error: Optional[str] = None
    run_id: int = Field(0, ge=0)
    page: int = Field(1, ge=1)
    page_size: int = Field(DEFAULT_PAGE_SIZE, gt=0)

    @model_validator(mode="after")
    def _check_phase(self) -> "Session":
        if self.phase == Phase.RUNNING and self.results is not None:
            raise ValueError("a running session cannot hold results")
        if self.phase == Phase.SUCCESS and self.results is None:
            raise ValueError("a successful session must hold results")
        return self


@dataclass(frozen=True)
class SetConfig:
    patch: Mapping[str, Any]


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Finish:
    results: Optional[BacktestResults]
    run_id: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ClearResults:
    pass


@dataclass(frozen=True)
class SetBatch:
    batch: Optional[BatchRun]


@dataclass(frozen=True)
class SetPage:
    page: int


@dataclass(frozen=True)
class SetPageSize:
    page_size: int


Listener = Callable[[Session], None]


def _set_config(state: Session, t: SetConfig) -> Optional[Session]:
    if state.phase == Phase.RUNNING:
        logger.warning("Configuration change rejected: a backtest is running")
        return None
    merged = {**state.config.model_dump(), **dict(t.patch)}
    try:
        config = BacktestConfig.model_validate(merged)
    except PydanticValidationError as e:
        logger.warning(f"Configuration change rejected: {e.error_count()} invalid field(s) in {dict(t.patch)}")
        return None
    return state.model_copy(update={"config": config})


def _start(state: Session, t: Start) -> Optional[Session]:
    if state.phase == Phase.RUNNING:
        logger.warning(f"Start rejected: run {state.run_id} is still running")
        return None
    return state.model_copy(update={
        "phase": Phase.RUNNING,
        "results": None,
        "error": None,
        "run_id": state.run_id + 1,
        "page": 1,
    })


def _finish(state: Session, t: Finish) -> Optional[Session]:
    if state.phase != Phase.RUNNING:
        logger.warning(f"Discarding finish for run {t.run_id}: session is {state.phase.value}")
        return None
    if t.run_id is not None and t.run_id != state.run_id:
        logger.warning(f"Discarding stale finish for run {t.run_id}; current run is {state.run_id}")
        return None
    if t.results is not None:
        return state.model_copy(update={
            "phase": Phase.SUCCESS, "results": t.results, "error": None, "page": 1,
        })
    return state.model_copy(update={
        "phase": Phase.FAILURE, "results": None, "error": t.error, "page": 1,
    })


def _clear_results(state: Session, t: ClearResults) -> Optional[Session]:
    if state.phase not in (Phase.SUCCESS, Phase.FAILURE):
        return None
    return state.model_copy(update={
        "phase": Phase.IDLE, "results": None, "error": None, "page": 1,
    })


def _set_batch(state: Session, t: SetBatch) -> Optional[Session]:
    return state.model_copy(update={"batch": t.batch})


def _set_page(state: Session, t: SetPage) -> Optional[Session]:
    if not 1 <= t.page <= total_pages(state.results, state.page_size):
        return None
    return state.model_copy(update={"page": t.page})


def _set_page_size(state: Session, t: SetPageSize) -> Optional[Session]:
    if t.page_size <= 0:
        return None
    return state.model_copy(update={"page_size": t.page_size, "page": 1})


_HANDLERS: Dict[type, Callable[[Session, Any], Optional[Session]]] = {
    SetConfig: _set_config,
    Start: _start,
    Finish: _finish,
    ClearResults: _clear_results,
    SetBatch: _set_batch,
    SetPage: _set_page,
    SetPageSize: _set_page_size,
}


class SessionStore:
    """
    Holds the current `Session` and applies transitions to it.

    Transitions are applied synchronously in call order. Subscribers receive
    every snapshot in the order the transitions were applied, including
    transitions dispatched from inside a listener.
    """

    def __init__(self, initial: Optional[Session] = None):
        self._state = initial if initial is not None else Session()
        self._listeners: List[Listener] = []
        self._pending: Deque[Session] = deque()
        self._notifying = False

    def get_state(self) -> Session:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Registers `listener` and returns a handle that unregisters it.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, transition) -> bool:
        """
        Applies one transition.

        Returns:
            bool: True if the transition was applied and subscribers were
            notified, False if it was rejected and the state is unchanged.
        """
        handler = _HANDLERS.get(type(transition))
        if handler is None:
            raise TypeError(f"Unknown transition: {transition!r}")

        new_state = handler(self._state, transition)
        if new_state is None:
            return False

        self._state = new_state
        self._pending.append(new_state)
        if not self._notifying:
            self._drain()
        return True

    def _drain(self):
        self._notifying = True
        try:
            while self._pending:
                snapshot = self._pending.popleft()
                for listener in list(self._listeners):
                    try:
                        listener(snapshot)
                    except Exception:
                        logger.exception(f"Session listener {listener!r} failed")
        finally:
            self._notifying = False
