"""Connection acquisition bounded by a timeout.

A connect attempt (dedicated connect or pool checkout) runs as its own task
while a timer is scheduled on the event loop. Both report into a single
future; whichever resolves it first decides what the caller sees, and every
resolver checks ``outcome.done()`` first, so exactly one of success, timeout
or connect error reaches the caller.

The connect attempt is not cancelled when the timer wins: a driver may be
half-way through a handshake. Instead, when it finishes after the caller has
already been failed, the late connection is closed through the normal
disposal path and any late error is logged.
"""
import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional

from entitylock.connections import ConnectTarget, DbConnection
from entitylock.exceptions import ConnectError, ConnectTimeout

logger = logging.getLogger(__name__)

# Strong references to in-flight connect attempts and late-connection disposals
_background_tasks: set[asyncio.Task] = set()


def _keep(task: asyncio.Task) -> asyncio.Task:
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class ConnectionRace:
    def __init__(
        self,
        connect: Callable[[], Awaitable[DbConnection]],
        *,
        target: ConnectTarget,
        timeout_ms: int,
        log: Optional[logging.Logger] = None,
        description: str = "database",
    ):
        self._connect = connect
        self.target = target
        self.timeout_ms = timeout_ms
        self._logger = log or logger
        # "database" or "connection pool for database", for messages
        self._description = description
        self.expired = False

    def _where(self) -> str:
        return (
            f'{self._description} "{self.target.database}" '
            f'on host "{self.target.host}"'
        )

    async def run(self) -> DbConnection:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        connect_task = _keep(asyncio.ensure_future(self._connect()))
        timer = loop.call_later(self.timeout_ms / 1000, self._expire, outcome)
        connect_task.add_done_callback(
            functools.partial(self._on_connect_done, outcome, timer)
        )

        try:
            return await outcome
        except asyncio.CancelledError:
            # The caller gave up; treat the race as lost.
            timer.cancel()
            self.expired = True
            if outcome.done() and not outcome.cancelled() and outcome.exception() is None:
                self._discard(outcome.result())
            raise

    def _expire(self, outcome: asyncio.Future) -> None:
        if outcome.done():
            return
        self.expired = True
        outcome.set_exception(
            ConnectTimeout(
                f"connect to {self._where()} failed.  "
                f"Error:  Connect timeout after {self.timeout_ms} millisec",
                target=self.target,
            )
        )

    def _on_connect_done(
        self,
        outcome: asyncio.Future,
        timer: asyncio.TimerHandle,
        task: asyncio.Future,
    ) -> None:
        timer.cancel()
        if task.cancelled():
            error: Optional[BaseException] = asyncio.CancelledError()
        else:
            error = task.exception()

        if outcome.done():
            # Caller already failed (or went away); nobody is listening.
            if error is not None:
                self._logger.error(
                    "connect to %s failed after the caller had already given up",
                    self._where(), exc_info=error,
                )
            else:
                self._logger.info(
                    "closing connection to %s that was returned after connection timeout",
                    self._where(),
                )
                self._discard(task.result())
            return

        if error is not None:
            self._logger.error("connect to %s failed.", self._where(), exc_info=error)
            connect_error = ConnectError(
                f"connect to {self._where()} failed.  Error:  {error}",
                target=self.target,
            )
            connect_error.__cause__ = error
            outcome.set_exception(connect_error)
            return

        outcome.set_result(task.result())

    def _discard(self, connection: DbConnection) -> None:
        _keep(asyncio.ensure_future(self._close_late(connection)))

    async def _close_late(self, connection: DbConnection) -> None:
        try:
            await connection.close()
        except Exception:
            self._logger.exception(
                "failed to close late connection to %s", self._where()
            )
