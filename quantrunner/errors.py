"""
Exception hierarchy for quantrunner.

Validation and persistence errors are recovered where they occur; transport
and rejection errors end a session in the failure phase. Per-strategy batch
failures are data (see `quantrunner.batch.StrategyOutcome`), not exceptions.
"""
from typing import Optional


class QuantRunnerError(Exception):
    """Base class for all errors raised by quantrunner."""


class ValidationError(QuantRunnerError, ValueError):
    """A backtest configuration is out of range or incomplete."""


class TransportError(QuantRunnerError):
    """
    The remote service could not be reached or answered with a non-success
    HTTP status.

    Args:
        message (str): Human readable description.
        status (Optional[int]): HTTP status code, when a response was received.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class BacktestRejected(QuantRunnerError):
    """
    The remote service answered but reported a business failure, or the
    payload did not have the expected shape. The message is the service's own.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PersistenceError(QuantRunnerError):
    """Reading or writing durable session state failed."""
