"""Connection handles.

A handle records how the underlying ``AsyncConnection`` was obtained, and
disposal is dispatched on that:

    DedicatedConnection  exclusively owned; close() ends the session
    PooledConnection     borrowed; close() returns it to the pool, or
                         destroys it when the caller reports a failure

A pooled connection handed back mid-transaction (or in an unknown state after
an error) would leak that state into the next borrower, hence the ``failed``
flag. Handles are async context managers; leaving the block on an exception
counts as a failure.
"""
import abc
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncConnection

from entitylock.repositories.lock_repo import AdvisoryLockRepo


@dataclass(frozen=True)
class ConnectTarget:
    """Host and database a connection points at, for messages and logs."""
    host: str
    database: str

    def __str__(self) -> str:
        return f'database "{self.database}" on host "{self.host}"'


@dataclass(eq=False)
class DbConnection(abc.ABC):
    conn: AsyncConnection
    target: ConnectTarget
    closed: bool = field(default=False, init=False)

    async def close(self, failed: bool = False) -> None:
        """Dispose of the connection. A second call does nothing."""
        if self.closed:
            return
        self.closed = True
        await self._dispose(failed)

    @abc.abstractmethod
    async def _dispose(self, failed: bool) -> None:
        ...

    async def backend_pid(self) -> int:
        return await AdvisoryLockRepo.backend_pid(self.conn)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close(failed=exc_type is not None)


class DedicatedConnection(DbConnection):
    """Session opened for one caller. ``failed`` is irrelevant."""

    async def _dispose(self, failed: bool) -> None:
        # The dedicated engine runs on NullPool, so close() ends the session.
        await self.conn.close()


class PooledConnection(DbConnection):
    """Session checked out from a shared pool."""

    async def _dispose(self, failed: bool) -> None:
        if failed:
            # Invalidated connections are discarded by the pool, never reused.
            await self.conn.invalidate()
        await self.conn.close()
