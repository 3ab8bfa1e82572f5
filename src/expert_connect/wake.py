"""Wake signal for the dispatch control loop.

Publishing is advisory: a wake that is lost only delays dispatch until the
next interval tick, so both implementations log failures instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable

import asyncpg

logger = logging.getLogger(__name__)

WakeHandler = Callable[[], None]


class WakeChannel(ABC):
    """Payload-free publish/subscribe notification."""

    @abstractmethod
    async def publish(self) -> None:
        """Signal that dispatch eligibility might have changed."""
        ...

    @abstractmethod
    async def subscribe(self, handler: WakeHandler) -> None:
        ...

    @abstractmethod
    async def unsubscribe(self, handler: WakeHandler) -> None:
        ...

    async def close(self) -> None:
        """Release any listener resources."""
        pass


class LocalWakeChannel(WakeChannel):
    """In-process channel for the SQLite backend and tests."""

    def __init__(self) -> None:
        self._handlers: list[WakeHandler] = []

    async def publish(self) -> None:
        for handler in list(self._handlers):
            try:
                handler()
            except Exception:
                logger.exception("Wake handler failed")

    async def subscribe(self, handler: WakeHandler) -> None:
        self._handlers.append(handler)

    async def unsubscribe(self, handler: WakeHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)


class PostgresWakeChannel(WakeChannel):
    """LISTEN/NOTIFY channel shared by every dispatcher process."""

    def __init__(self, db, channel: str = "expert_connect_kick"):
        self.db = db
        self.channel = channel
        self._listen_conn: asyncpg.Connection | None = None
        self._callbacks: dict[WakeHandler, Callable] = {}

    async def publish(self) -> None:
        try:
            await self.db.pool.execute("SELECT pg_notify($1, '1')", self.channel)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("Wake publish on %s failed: %s", self.channel, e)

    async def subscribe(self, handler: WakeHandler) -> None:
        if self._listen_conn is None:
            # Dedicated connection: LISTEN state must outlive pool checkouts.
            self._listen_conn = await self.db.pool.acquire()

        def _callback(conn, pid, channel, payload) -> None:
            handler()

        self._callbacks[handler] = _callback
        await self._listen_conn.add_listener(self.channel, _callback)
        logger.info("Listening for wake signals on %s", self.channel)

    async def unsubscribe(self, handler: WakeHandler) -> None:
        callback = self._callbacks.pop(handler, None)
        if callback is not None and self._listen_conn is not None:
            await self._listen_conn.remove_listener(self.channel, callback)

    async def close(self) -> None:
        if self._listen_conn is None:
            return
        for callback in self._callbacks.values():
            await self._listen_conn.remove_listener(self.channel, callback)
        self._callbacks.clear()
        try:
            await self.db.pool.release(self._listen_conn)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to release wake listener connection")
        self._listen_conn = None
