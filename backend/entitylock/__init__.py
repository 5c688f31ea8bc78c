"""Entity-level write serialization over PostgreSQL advisory locks."""
import logging

from entitylock.config import ConnectOptions, EmptyEntitiesPolicy, Settings
from entitylock.connections import (
    ConnectTarget,
    DbConnection,
    DedicatedConnection,
    PooledConnection,
)
from entitylock.database import (
    ConnectionParams,
    Database,
    create_connection_url,
    parse_target,
)
from entitylock.exceptions import (
    ConnectError,
    ConnectTimeout,
    EntityLockError,
    QueryError,
    TransactionError,
)
from entitylock.repositories.lock_repo import AdvisoryLockRepo, HeldLock
from entitylock.repositories.sql_repo import QueryResult, SqlRepo
from entitylock.services.connection_race import ConnectionRace
from entitylock.services.locks import commit, lock_entities, locked_entities, rollback
from entitylock.utils.lock_keys import LockKeyPair, derive_lock_key

# Silent unless the application configures logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AdvisoryLockRepo",
    "ConnectError",
    "ConnectOptions",
    "ConnectTarget",
    "ConnectTimeout",
    "ConnectionParams",
    "ConnectionRace",
    "Database",
    "DbConnection",
    "DedicatedConnection",
    "EmptyEntitiesPolicy",
    "EntityLockError",
    "HeldLock",
    "LockKeyPair",
    "PooledConnection",
    "QueryError",
    "QueryResult",
    "Settings",
    "SqlRepo",
    "TransactionError",
    "commit",
    "create_connection_url",
    "derive_lock_key",
    "lock_entities",
    "locked_entities",
    "parse_target",
    "rollback",
]
