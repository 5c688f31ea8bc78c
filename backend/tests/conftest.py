"""
Shared pytest fixtures.

Unit tests run against in-memory fakes of the SQLAlchemy ``AsyncConnection``
surface. ``FakeLockServer`` plays the part of the server's advisory lock
table: a key granted to one fake connection is refused to every other one
until that connection commits, rolls back or closes.

Integration tests need a real PostgreSQL reachable through
ENTITYLOCK_DATABASE_URL (postgresql+asyncpg://...) and are skipped without it.
pytest-asyncio (asyncio_mode=auto) gives each test its own event loop, so the
``database`` fixture builds fresh engines per test and disposes them at
teardown.
"""
import asyncio
import itertools
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Optional

import pytest
from sqlalchemy.engine import make_url
from sqlalchemy.exc import InvalidRequestError, OperationalError

from entitylock.config import settings
from entitylock.connections import ConnectTarget, DbConnection
from entitylock.database import Database

_pids = itertools.count(1000)


class FakeLockServer:
    def __init__(self):
        self.holders: dict[tuple[int, int], object] = {}

    def try_lock(self, owner, key: tuple[int, int]) -> bool:
        holder = self.holders.get(key)
        if holder is None or holder is owner:
            self.holders[key] = owner
            return True
        return False

    def release_all(self, owner) -> None:
        for key in [k for k, v in self.holders.items() if v is owner]:
            del self.holders[key]

    def held_by(self, owner) -> set[tuple[int, int]]:
        return {k for k, v in self.holders.items() if v is owner}


class FakeResult:
    def __init__(self, rows: Optional[list[dict]] = None, rowcount: int = 0):
        self._rows = rows
        self.rowcount = rowcount

    @property
    def returns_rows(self) -> bool:
        return self._rows is not None

    def mappings(self):
        return self

    def all(self) -> list[dict]:
        return list(self._rows or [])


class FakeStreamResult:
    def __init__(self, rows: list[dict]):
        self._rows = rows
        self.partition_sizes: list[int] = []
        self.closed = False

    def mappings(self):
        return self

    async def partitions(self, size: int):
        for start in range(0, len(self._rows), size):
            chunk = self._rows[start:start + size]
            self.partition_sizes.append(len(chunk))
            yield chunk

    async def close(self) -> None:
        self.closed = True


class FakeTransaction:
    def __init__(self):
        self.is_active = True


class FakeConnection:
    """Just enough of ``AsyncConnection`` for the locking code paths."""

    def __init__(
        self,
        server: Optional[FakeLockServer] = None,
        *,
        fail_on: Optional[str] = None,
        database: str = "testdb",
        stream_rows: Optional[list[dict]] = None,
    ):
        self.server = server or FakeLockServer()
        self.fail_on = fail_on
        self.pid = next(_pids)
        self.statements: list[str] = []
        self.engine = SimpleNamespace(
            url=make_url(f"postgresql+asyncpg://localhost/{database}")
        )
        self.stream_rows = stream_rows or []
        self.stream_result: Optional[FakeStreamResult] = None
        self.stream_options: Optional[dict] = None
        self.close_calls = 0
        self.invalidated = False
        self.info: dict = {}
        self._in_transaction = False
        self._transaction: Optional[FakeTransaction] = None

    def _maybe_fail(self, statement: str, params=None) -> None:
        if self.fail_on and self.fail_on in statement:
            raise OperationalError(
                statement, params, Exception("server closed the connection unexpectedly")
            )

    def in_transaction(self) -> bool:
        return self._in_transaction

    def _end(self) -> None:
        self._in_transaction = False
        if self._transaction is not None:
            self._transaction.is_active = False
            self._transaction = None
        self.server.release_all(self)

    async def begin(self):
        if self._in_transaction:
            raise InvalidRequestError("a transaction is already begun for this connection")
        self._maybe_fail("BEGIN")
        self.statements.append("BEGIN")
        self._in_transaction = True
        self._transaction = FakeTransaction()
        return self._transaction

    async def commit(self) -> None:
        self._maybe_fail("COMMIT")
        self.statements.append("COMMIT")
        self._end()

    async def rollback(self) -> None:
        self._maybe_fail("ROLLBACK")
        self.statements.append("ROLLBACK")
        self._end()

    async def execute(self, clause, params=None):
        statement = str(clause)
        self.statements.append(statement)
        self._maybe_fail(statement, params)
        self._in_transaction = True
        if "pg_try_advisory_xact_lock" in statement:
            granted = self.server.try_lock(self, (params["high"], params["low"]))
            return FakeResult(rows=[{"locked": granted}])
        if "pg_backend_pid" in statement:
            return FakeResult(rows=[{"pid": self.pid}])
        return FakeResult(rowcount=3)

    async def stream(self, clause, params=None, execution_options=None):
        statement = str(clause)
        self.statements.append(statement)
        self._maybe_fail(statement, params)
        self.stream_options = execution_options
        self.stream_result = FakeStreamResult(self.stream_rows)
        return self.stream_result

    async def invalidate(self, exception=None) -> None:
        self.invalidated = True
        self._end()

    async def close(self) -> None:
        self.close_calls += 1
        self._end()


@dataclass(eq=False)
class FakeDbConnection(DbConnection):
    """Handle whose disposal is observable from a test."""
    disposed: asyncio.Event = field(default_factory=asyncio.Event)
    dispose_failed: Optional[bool] = None
    dispose_error: Optional[Exception] = None

    async def _dispose(self, failed: bool) -> None:
        self.dispose_failed = failed
        self.disposed.set()
        if self.dispose_error is not None:
            raise self.dispose_error


TARGET = ConnectTarget(host="db.example.com", database="orders")


@pytest.fixture
def lock_server() -> FakeLockServer:
    return FakeLockServer()


@pytest.fixture
def make_connection(lock_server):
    """Factory for fake connections sharing one lock table."""
    def _make(**kwargs) -> FakeConnection:
        return FakeConnection(lock_server, **kwargs)
    return _make


@pytest.fixture
def make_db_connection():
    def _make(**kwargs) -> FakeDbConnection:
        return FakeDbConnection(conn=None, target=TARGET, **kwargs)
    return _make


@pytest.fixture
async def database():
    db = Database.from_settings(settings)
    yield db
    await db.dispose()
