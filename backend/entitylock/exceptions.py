"""Error taxonomy for connection acquisition and entity locking.

Every driver-level failure is re-raised as one of these with the original
exception chained (``raise ... from exc``), so callers can catch a single
family without importing SQLAlchemy or asyncpg types.
"""
from typing import Optional


class EntityLockError(Exception):
    """Base class for all errors raised by entitylock."""


class ConnectTimeout(EntityLockError):
    """No connection was obtained within ``connect_timeout_ms``.

    Recoverable: the whole acquisition may be retried by the caller.
    """

    def __init__(self, message: str, target=None):
        super().__init__(message)
        self.target = target


class ConnectError(EntityLockError):
    """Transport, authentication or network failure while connecting."""

    def __init__(self, message: str, target=None):
        super().__init__(message)
        self.target = target


class QueryError(EntityLockError):
    """A statement failed at the database."""

    def __init__(
        self,
        message: str,
        statement: Optional[str] = None,
        database: Optional[str] = None,
    ):
        super().__init__(message)
        self.statement = statement
        self.database = database


class TransactionError(EntityLockError):
    """Transaction state is indeterminate after a failure.

    The connection must be disposed of with ``failed=True``; no lock it
    claimed to hold can be trusted.
    """
