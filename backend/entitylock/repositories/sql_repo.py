"""SQL executor and row streaming over an ``AsyncConnection``.

Statements are textual SQL with named bind parameters (``:name``), executed
through ``sqlalchemy.text``. Failures are logged with the first 200
characters of the statement and the target database, then re-raised as
``QueryError``.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

from sqlalchemy import RowMapping, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from entitylock.config import ConnectOptions
from entitylock.exceptions import QueryError

logger = logging.getLogger(__name__)

_STATEMENT_LOG_CHARS = 200


@dataclass
class QueryResult:
    row_count: int
    rows: list[RowMapping] = field(default_factory=list)


def _database_of(conn: AsyncConnection) -> str:
    try:
        return conn.engine.url.database or "N/A"
    except AttributeError:
        return "N/A"


def _query_error(
    conn: AsyncConnection, statement: str, exc: Exception, log: logging.Logger
) -> QueryError:
    database = _database_of(conn)
    log.error(
        'query failed:  "%s"... for database (%s)',
        statement[:_STATEMENT_LOG_CHARS], database,
        exc_info=exc,
    )
    return QueryError(f"Query failed: {exc}", statement=statement, database=database)


class SqlRepo:
    @staticmethod
    async def execute(
        conn: AsyncConnection,
        statement: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        log: Optional[logging.Logger] = None,
    ) -> QueryResult:
        """Run one statement and return its row count and rows."""
        log = log or logger
        try:
            result = await conn.execute(text(statement), dict(params or {}))
        except SQLAlchemyError as exc:
            raise _query_error(conn, statement, exc, log) from exc

        if result.returns_rows:
            rows = list(result.mappings().all())
            return QueryResult(row_count=len(rows), rows=rows)
        return QueryResult(row_count=result.rowcount)

    @staticmethod
    async def stream(
        conn: AsyncConnection,
        statement: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        options: Optional[ConnectOptions] = None,
        batch_size: Optional[int] = None,
        high_water_mark: Optional[int] = None,
    ) -> AsyncIterator[RowMapping]:
        """
        Yield rows lazily from a server-side cursor.

        Rows are fetched ``batch_size`` at a time, and no more than
        ``high_water_mark`` fetched rows are held ahead of the consumer; the
        fetch size is the smaller of the two. Per-call overrides that are not
        positive integers are ignored in favour of ``options``.

        The iterator is forward-only and cannot be restarted. With asyncpg a
        server-side cursor needs a transaction; SQLAlchemy begins one
        implicitly if none is open.
        """
        options = (options or ConnectOptions()).updated(
            batch_size=batch_size, high_water_mark=high_water_mark
        )
        log = options.get_logger(logger)
        fetch_size = min(options.batch_size, options.high_water_mark)

        try:
            result = await conn.stream(
                text(statement),
                dict(params or {}),
                execution_options={"yield_per": fetch_size},
            )
        except SQLAlchemyError as exc:
            raise _query_error(conn, statement, exc, log) from exc

        try:
            async for partition in result.mappings().partitions(fetch_size):
                for row in partition:
                    yield row
        except SQLAlchemyError as exc:
            raise _query_error(conn, statement, exc, log) from exc
        finally:
            await result.close()
