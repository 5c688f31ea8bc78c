"""Connection provider.

``Database`` owns two async engines for one URL:

  - a ``NullPool`` engine for dedicated sessions: every close ends the
    session on the server;
  - a queue-pooled engine for borrowed sessions.

Both kinds of connection are obtained through ``ConnectionRace``, so no
caller waits longer than ``ConnectOptions.connect_timeout_ms`` and a
connection arriving after that is closed rather than leaked.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from entitylock.config import ConnectOptions, Settings
from entitylock.connections import (
    ConnectTarget,
    DedicatedConnection,
    PooledConnection,
)
from entitylock.services.connection_race import ConnectionRace

logger = logging.getLogger(__name__)

DRIVERNAME = "postgresql+asyncpg"
_UNKNOWN = "n/a"


@dataclass
class ConnectionParams:
    host: str
    database_name: str
    user: Optional[str] = None
    password: Optional[str] = None
    port: Optional[int] = None


def create_connection_url(params: ConnectionParams) -> str:
    """Build an asyncpg URL; the password is only used together with a user."""
    url = URL.create(
        DRIVERNAME,
        username=params.user or None,
        password=params.password if params.user else None,
        host=params.host,
        port=params.port,
        database=params.database_name,
    )
    return url.render_as_string(hide_password=False)


def parse_target(url: str) -> ConnectTarget:
    """Host and database named by ``url``; ``n/a`` for whatever is missing."""
    try:
        parsed = make_url(url)
    except ArgumentError:
        return ConnectTarget(host=_UNKNOWN, database=_UNKNOWN)
    return ConnectTarget(
        host=parsed.host or _UNKNOWN,
        database=parsed.database or _UNKNOWN,
    )


class Database:
    def __init__(
        self,
        url: str,
        options: Optional[ConnectOptions] = None,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.url = url
        self.options = options or ConnectOptions()
        self.target = parse_target(url)
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._dedicated_engine: Optional[AsyncEngine] = None
        self._pooled_engine: Optional[AsyncEngine] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, logger: Optional[logging.Logger] = None
    ) -> "Database":
        if not settings.database_url:
            raise ValueError("ENTITYLOCK_DATABASE_URL is not set")
        return cls(
            settings.database_url,
            settings.connect_options(logger=logger),
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
        )

    @property
    def dedicated_engine(self) -> AsyncEngine:
        if self._dedicated_engine is None:
            self._dedicated_engine = create_async_engine(self.url, poolclass=NullPool)
        return self._dedicated_engine

    @property
    def pooled_engine(self) -> AsyncEngine:
        if self._pooled_engine is None:
            self._pooled_engine = create_async_engine(
                self.url,
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
            )
        return self._pooled_engine

    async def _open_dedicated(self) -> DedicatedConnection:
        conn = await self.dedicated_engine.connect()
        return DedicatedConnection(conn, self.target)

    async def _checkout_pooled(self) -> PooledConnection:
        conn = await self.pooled_engine.connect()
        return PooledConnection(conn, self.target)

    async def connect(self) -> DedicatedConnection:
        """Open a dedicated session, bounded by ``connect_timeout_ms``."""
        race = ConnectionRace(
            self._open_dedicated,
            target=self.target,
            timeout_ms=self.options.connect_timeout_ms,
            log=self.options.get_logger(logger),
        )
        return await race.run()

    async def connect_pooled(self) -> PooledConnection:
        """Borrow a session from the pool, bounded by ``connect_timeout_ms``."""
        race = ConnectionRace(
            self._checkout_pooled,
            target=self.target,
            timeout_ms=self.options.connect_timeout_ms,
            log=self.options.get_logger(logger),
            description="connection pool for database",
        )
        return await race.run()

    async def dispose(self) -> None:
        for engine in (self._dedicated_engine, self._pooled_engine):
            if engine is not None:
                await engine.dispose()
        self._dedicated_engine = None
        self._pooled_engine = None

    async def __aenter__(self) -> "Database":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()
