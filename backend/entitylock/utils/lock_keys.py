"""Advisory lock key derivation.

PostgreSQL's two-key advisory lock functions take a pair of int4 values.
An entity id is mapped onto that pair with two CRC-32 checksums: one of the
id and one of the id read backwards, so the halves stay decorrelated even
for ids that share long prefixes (sequential UUIDs, for instance).

No database required; everything here is pure.
"""
import zlib
from typing import NamedTuple

_UINT32 = 0x100000000


class LockKeyPair(NamedTuple):
    high: int
    low: int


def _signed32(value: int) -> int:
    return value - _UINT32 if value & 0x80000000 else value


def crc32_signed(s: str) -> int:
    """CRC-32 (IEEE) of the UTF-8 bytes of ``s`` as a signed 32-bit int."""
    return _signed32(zlib.crc32(s.encode("utf-8")))


def derive_lock_key(entity_id: str) -> LockKeyPair:
    """Return the advisory lock key pair for ``entity_id``.

    ``high`` is the checksum of the id, ``low`` the checksum of the id with
    its characters reversed. Byte-identical ids always map to the same pair.
    Collisions between distinct ids are possible and accepted.

    Reversal is by code point. Code that reverses UTF-16 code units instead
    splits the surrogate pair of any character outside the Basic Multilingual
    Plane (emoji, for instance), so for such ids its ``low`` differs from
    ours and the two would not exclude each other. ASCII ids such as UUIDs
    derive the same pair either way.
    """
    return LockKeyPair(
        high=crc32_signed(entity_id),
        low=crc32_signed(entity_id[::-1]),
    )


def to_oid(value: int) -> int:
    """Signed int4 key half -> the unsigned oid shown in ``pg_locks``."""
    return value + _UINT32 if value < 0 else value


def from_oid(oid: int) -> int:
    """Unsigned ``pg_locks`` oid -> signed int4 key half."""
    return _signed32(oid)
