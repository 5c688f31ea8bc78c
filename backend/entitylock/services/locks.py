"""PostgreSQL advisory locks for entity-level write serialization.

Every entity id maps to a pair of int4 keys (``derive_lock_key``). Locking a
set of entities means, on one connection:

    BEGIN
    SELECT pg_try_advisory_xact_lock(high, low)   -- once per entity, in order
    ...
    -> all granted:  return True, transaction left open for the caller
    -> one refused:  ROLLBACK, return False (remaining ids are not tried)

The locks are transaction-scoped, so COMMIT or ROLLBACK releases the whole
set at once, and so does the server if the session dies. The "try" variant
never blocks, so the order of ids does not matter for deadlock avoidance.

Usage pattern
-------------
    async with await db.connect_pooled() as handle:
        if not await lock_entities(handle.conn, [order_id, customer_id]):
            return  # contention: someone else holds one of them
        try:
            # ... writes ...
            await commit(handle.conn)
        except Exception:
            await rollback(handle.conn)
            raise

A False return is an ordinary outcome. Any raised error means the
transaction state is unknown and the connection must be closed with
``failed=True``.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from entitylock.config import ConnectOptions, EmptyEntitiesPolicy
from entitylock.exceptions import QueryError, TransactionError
from entitylock.repositories.lock_repo import AdvisoryLockRepo
from entitylock.utils.lock_keys import derive_lock_key

logger = logging.getLogger(__name__)

# conn.info slot for the transaction opened by lock_entities
_LOCK_TRANSACTION = "entitylock.lock_transaction"


async def lock_entities(
    conn: AsyncConnection,
    entity_ids: Sequence[str],
    *,
    options: Optional[ConnectOptions] = None,
) -> bool:
    """Lock every entity in ``entity_ids`` inside a new transaction.

    Returns True with the transaction still open when all locks were granted.
    Returns False, after rolling back, as soon as one is held elsewhere.
    An empty ``entity_ids`` is handled according to ``options.empty_entities``.

    A transaction SQLAlchemy began implicitly for earlier statements on
    ``conn`` is committed first, as those statements would have been in
    autocommit mode. A transaction still open from an earlier successful
    ``lock_entities`` call is an error: the caller must commit or roll back.
    """
    options = options or ConnectOptions()
    log = options.get_logger(logger)
    entity_ids = list(entity_ids)

    if not entity_ids:
        if options.empty_entities is EmptyEntitiesPolicy.RAISE:
            raise ValueError("lock_entities requires at least one entity id")
        if options.empty_entities is EmptyEntitiesPolicy.REJECT:
            return False

    held = conn.info.get(_LOCK_TRANSACTION)
    if held is not None and held.is_active:
        raise TransactionError(
            "Connection already holds entity locks; commit or roll back first"
        )

    try:
        if conn.in_transaction():
            log.debug("committing implicit transaction before locking entities")
            await conn.commit()
        conn.info[_LOCK_TRANSACTION] = await conn.begin()
    except SQLAlchemyError as exc:
        log.error("BEGIN failed before locking %d entities", len(entity_ids), exc_info=exc)
        raise TransactionError(f"BEGIN failed: {exc}") from exc

    for entity_id in entity_ids:
        key = derive_lock_key(entity_id)
        try:
            acquired = await AdvisoryLockRepo.try_xact_lock(conn, key, log=log)
        except QueryError as exc:
            # No rollback: on a dropped connection it cannot succeed anyway.
            raise TransactionError(
                f"Advisory lock attempt for entity {entity_id!r} failed"
            ) from exc
        if not acquired:
            log.debug("entity %s is locked by another session; rolling back", entity_id)
            await rollback(conn, options=options)
            return False

    log.debug("locked %d entities", len(entity_ids))
    return True


async def commit(conn: AsyncConnection, *, options: Optional[ConnectOptions] = None) -> None:
    try:
        await conn.commit()
        conn.info.pop(_LOCK_TRANSACTION, None)
    except SQLAlchemyError as exc:
        (options or ConnectOptions()).get_logger(logger).error("COMMIT failed", exc_info=exc)
        raise TransactionError(f"COMMIT failed: {exc}") from exc


async def rollback(conn: AsyncConnection, *, options: Optional[ConnectOptions] = None) -> None:
    try:
        await conn.rollback()
        conn.info.pop(_LOCK_TRANSACTION, None)
    except SQLAlchemyError as exc:
        (options or ConnectOptions()).get_logger(logger).error("ROLLBACK failed", exc_info=exc)
        raise TransactionError(f"ROLLBACK failed: {exc}") from exc


@asynccontextmanager
async def locked_entities(
    conn: AsyncConnection,
    entity_ids: Sequence[str],
    *,
    options: Optional[ConnectOptions] = None,
) -> AsyncIterator[bool]:
    """Yield whether the entities were locked; commit on clean exit.

    If the body raises after a successful lock the transaction is rolled
    back and the exception propagates. When locking failed there is nothing
    to end: ``lock_entities`` already rolled back.
    """
    acquired = await lock_entities(conn, entity_ids, options=options)
    if not acquired:
        yield False
        return
    try:
        yield True
    except BaseException:
        await rollback(conn, options=options)
        raise
    await commit(conn, options=options)
