"""Liveness backstop for the private and public streams."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Iterable, List

from stream import StreamConnection
from utils import logger

LIVENESS_INTERVAL_SEC = 30.0


class ConnectionSupervisor:
    """Every ``interval`` seconds, reconnect any stream that is not open.

    This covers connections that stall without ever emitting a close event.
    ``connect()`` is a no-op for streams already connecting, so a tick racing
    with a reconnect scheduled by the stream itself is harmless.
    """

    def __init__(self, connections: Iterable[StreamConnection], interval: float = LIVENESS_INTERVAL_SEC):
        self.connections: List[StreamConnection] = list(connections)
        self.interval = interval
        self._task: asyncio.Task | None = None

    def tick(self) -> int:
        """Check every connection once; returns how many new attempts were started."""
        started = 0
        for conn in self.connections:
            if conn.is_open():
                continue
            logger.warning(
                "stream inactive; reconnecting | kind=%s status=%s",
                conn.kind.value,
                conn.state.status.value,
            )
            if conn.connect():
                started += 1
        return started

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.tick()
            except Exception:
                logger.exception("supervisor tick failed")
