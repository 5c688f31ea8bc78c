"""Configuration.

``ConnectOptions`` is the immutable value handed to every component
(``Database``, ``ConnectionRace``, ``lock_entities``, ``SqlRepo.stream``).
There is no process-wide mutable state: a component sees exactly the options
it was given.

``Settings`` reads the same knobs from the environment (``ENTITYLOCK_``
prefix) and turns them into a ``ConnectOptions`` via ``connect_options()``.
"""
import enum
import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HIGH_WATER_MARK = 16 * 1024
DEFAULT_BATCH_SIZE = 10000
DEFAULT_CONNECT_TIMEOUT_MS = 15000

_POSITIVE_INT_OPTIONS = ("high_water_mark", "batch_size", "connect_timeout_ms")


class EmptyEntitiesPolicy(str, enum.Enum):
    """What ``lock_entities`` does when handed no entity ids."""

    ALLOW = "allow"    # BEGIN, report success with zero locks held
    REJECT = "reject"  # issue nothing, report failure
    RAISE = "raise"    # issue nothing, raise ValueError


def is_positive_int(value: Any) -> bool:
    # bool is an int subclass; True is not a batch size
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class ConnectOptions(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    logger: Optional[logging.Logger] = None
    high_water_mark: int = Field(DEFAULT_HIGH_WATER_MARK, gt=0, strict=True)
    batch_size: int = Field(DEFAULT_BATCH_SIZE, gt=0, strict=True)
    connect_timeout_ms: int = Field(DEFAULT_CONNECT_TIMEOUT_MS, gt=0, strict=True)
    empty_entities: EmptyEntitiesPolicy = EmptyEntitiesPolicy.RAISE

    def updated(self, **changes: Any) -> "ConnectOptions":
        """Return a copy with ``changes`` applied.

        Numeric options that are not positive integers are ignored and the
        current value stays in effect. ``logger`` is taken as given (``None``
        clears it). Unknown option names are a programming error.
        """
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise TypeError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        if "logger" in changes:
            values["logger"] = changes["logger"]
        for name in _POSITIVE_INT_OPTIONS:
            if is_positive_int(changes.get(name)):
                values[name] = changes[name]
        policy = changes.get("empty_entities")
        if policy is not None:
            try:
                values["empty_entities"] = EmptyEntitiesPolicy(policy)
            except ValueError:
                pass
        return self.model_copy(update=values)

    def get_logger(self, default: logging.Logger) -> logging.Logger:
        return self.logger if self.logger is not None else default


class Settings(BaseSettings):
    database_url: Optional[str] = None
    connect_timeout_ms: Optional[int] = None
    high_water_mark: Optional[int] = None
    batch_size: Optional[int] = None
    empty_entities: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10

    model_config = SettingsConfigDict(
        env_prefix="ENTITYLOCK_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("connect_timeout_ms", "high_water_mark", "batch_size", mode="before")
    @classmethod
    def _drop_invalid(cls, value: Any) -> Optional[int]:
        # Invalid values fall back to the defaults instead of failing startup
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            return None
        try:
            value = int(value)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    def connect_options(self, logger: Optional[logging.Logger] = None) -> ConnectOptions:
        return ConnectOptions().updated(
            logger=logger,
            connect_timeout_ms=self.connect_timeout_ms,
            high_water_mark=self.high_water_mark,
            batch_size=self.batch_size,
            empty_entities=self.empty_entities,
        )


settings = Settings()
