"""
This __init__.py file exposes the public API of quantrunner.
"""

from .config import BacktestConfig, Settings
from .io import load_config
from .batch import BatchOrchestrator, BatchRun, BatchStatus, OutcomeStatus, StrategyOutcome
from .errors import BacktestRejected, PersistenceError, TransportError, ValidationError
from .executor import SingleRunExecutor
from .persistence import JsonFileStorage, SessionMirror, restore_session
from .results import BacktestResults, TradeRecord
from .service.client import register_service
from .session import BacktestSession
from .store import Phase, Session, SessionStore

__all__ = [
    "BacktestConfig",
    "Settings",
    "load_config",
    "BatchOrchestrator",
    "BatchRun",
    "BatchStatus",
    "OutcomeStatus",
    "StrategyOutcome",
    "BacktestRejected",
    "PersistenceError",
    "TransportError",
    "ValidationError",
    "SingleRunExecutor",
    "JsonFileStorage",
    "SessionMirror",
    "restore_session",
    "BacktestResults",
    "TradeRecord",
    "register_service",
    "BacktestSession",
    "Phase",
    "Session",
    "SessionStore",
]
