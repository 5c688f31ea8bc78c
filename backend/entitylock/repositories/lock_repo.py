"""Repository for PostgreSQL advisory locks.

Locks taken here are transaction-scoped (``pg_try_advisory_xact_lock``):
they are released by COMMIT or ROLLBACK, and by the server when the session
ends, so a crashed holder never strands a lock.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection

from entitylock.repositories.sql_repo import SqlRepo
from entitylock.utils.lock_keys import LockKeyPair, from_oid


@dataclass
class HeldLock:
    """One advisory lock row from ``pg_locks``."""
    pid: int
    classid: int
    objid: int
    objsubid: int
    mode: str
    granted: bool
    virtualtransaction: Optional[str] = None

    @property
    def key(self) -> LockKeyPair:
        # Two-key locks (objsubid = 2) report key1 as classid, key2 as objid
        return LockKeyPair(high=from_oid(self.classid), low=from_oid(self.objid))


class AdvisoryLockRepo:
    @staticmethod
    async def try_xact_lock(
        conn: AsyncConnection,
        key: LockKeyPair,
        *,
        log: Optional[logging.Logger] = None,
    ) -> bool:
        """Non-blocking; returns False at once if another session holds the key."""
        result = await SqlRepo.execute(
            conn,
            "SELECT pg_try_advisory_xact_lock(:high, :low) AS locked",
            {"high": key.high, "low": key.low},
            log=log,
        )
        return result.row_count == 1 and result.rows[0]["locked"] is True

    @staticmethod
    async def backend_pid(conn: AsyncConnection) -> int:
        result = await SqlRepo.execute(conn, "SELECT pg_backend_pid() AS pid")
        return result.rows[0]["pid"]

    @staticmethod
    async def held_by(conn: AsyncConnection, pid: int) -> list[HeldLock]:
        """Granted two-key advisory locks held by backend ``pid``.

        ``conn`` may belong to any session; ``pg_locks`` is server-wide.
        """
        result = await SqlRepo.execute(
            conn,
            "SELECT pid, classid, objid, objsubid, mode, granted, virtualtransaction "
            "FROM pg_locks "
            "WHERE locktype = 'advisory' AND objsubid = 2 AND granted AND pid = :pid "
            "ORDER BY classid, objid",
            {"pid": pid},
        )
        return [
            HeldLock(
                pid=row["pid"],
                classid=row["classid"],
                objid=row["objid"],
                objsubid=row["objsubid"],
                mode=row["mode"],
                granted=row["granted"],
                virtualtransaction=row["virtualtransaction"],
            )
            for row in result.rows
        ]
