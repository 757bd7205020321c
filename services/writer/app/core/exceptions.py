"""Errors raised by the write path.

Batch-terminal: StoreConnectionError, TimeConversionError, and BindError or
ExecutionError raised while inserting data rows. Anything raised while
resolving one data source's identifier only costs that source.
"""

from typing import Optional

from shared.schemas import MetricIdentity

__all__ = [
    "WriteError",
    "StoreConnectionError",
    "TimeConversionError",
    "BindError",
    "ExecutionError",
    "CardinalityError",
    "NullIdentifierError",
]


class WriteError(RuntimeError):
    """Base class for every failure on the write path."""

    def __init__(self, message: str, identity: Optional[MetricIdentity] = None):
        self.identity = identity
        if identity is not None:
            message = f"{message} (identifier {identity})"
        super().__init__(message)


class StoreConnectionError(WriteError):
    """Connecting, selecting the database or preparing a statement failed."""


class TimeConversionError(WriteError):
    """The batch timestamp has no local calendar representation."""

    def __init__(self, message: str, timestamp: float):
        self.timestamp = timestamp
        super().__init__(f"{message} (timestamp {timestamp!r})")


class BindError(WriteError):
    """The store driver rejected the parameters of a statement."""


class ExecutionError(WriteError):
    """The store rejected a statement."""


class CardinalityError(WriteError):
    """A row count broke the one-row-per-identifier invariant."""

    def __init__(
        self,
        message: str,
        expected: int,
        actual: int,
        identity: Optional[MetricIdentity] = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(f"{message}: expected {expected}, got {actual}", identity)


class NullIdentifierError(WriteError):
    """The store reported a NULL identifier id."""
