# stream.py
"""One persistent websocket connection with reconnect-on-close.

``StreamConnection`` owns at most one underlying websocket at a time and moves
through ``DISCONNECTED -> CONNECTING -> OPEN -> DISCONNECTED``.  On open it
sends the subscribe frame produced by ``subscribe_frame`` (signed for the
private channels).  Inbound frames are decoded and handed to the registered
handlers one at a time, in arrival order.  When the connection drops without
an explicit :meth:`close`, a reconnect is scheduled after a fixed delay;
retries never stop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from errors import MalformedMessage, TransportError
from messages import StreamEvent, Unrecognized, decode_frame
from utils import logger

RECONNECT_DELAY_SEC = 3.0

Handler = Callable[[StreamEvent], Awaitable[Any]]


class StreamKind(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


@dataclass
class ConnectionState:
    """Status of one connection attempt; replaced on every new attempt."""

    kind: StreamKind
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempt: int = 0
    last_open_time: Optional[float] = None


class StreamConnection:
    def __init__(
        self,
        kind: StreamKind,
        url: str,
        session_factory: Callable[[], Any],
        subscribe_frame: Callable[[], Dict[str, Any]],
        reconnect_delay: float = RECONNECT_DELAY_SEC,
        heartbeat: Optional[float] = None,
    ):
        self.kind = kind
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._session_factory = session_factory
        self._subscribe_frame = subscribe_frame
        self.heartbeat = heartbeat

        self.state = ConnectionState(kind)
        self._handlers: List[Handler] = []
        self._ws = None
        self._attempts = 0
        self._closing = False
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    def on_message(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def is_open(self) -> bool:
        return (
            self.state.status is ConnectionStatus.OPEN
            and self._ws is not None
            and not self._ws.closed
        )

    def connect(self) -> bool:
        """Start a connection attempt unless one is already connecting or open.

        Returns ``True`` when a new attempt was started.
        """
        if self.state.status is not ConnectionStatus.DISCONNECTED:
            return False
        self._closing = False
        self._attempts += 1
        self.state = ConnectionState(
            self.kind, ConnectionStatus.CONNECTING, attempt=self._attempts
        )
        logger.info(
            "stream connecting | kind=%s url=%s attempt=%d",
            self.kind.value,
            self.url,
            self._attempts,
        )
        self._reader_task = asyncio.create_task(self._run())
        return True

    async def send(self, message: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError(f"{self.kind.value} stream is not open")
        await ws.send_str(json.dumps(message))

    async def close(self) -> None:
        """Close the connection for good; no reconnect is scheduled."""
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        ws = self._ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(Exception):
                await ws.close()
        task = self._reader_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.state.status = ConnectionStatus.DISCONNECTED
        logger.info("stream closed on request | kind=%s", self.kind.value)

    # ------------------------------------------------------------------
    async def _run(self) -> None:
        try:
            session = self._session_factory()
            self._ws = await session.ws_connect(self.url, heartbeat=self.heartbeat)
            self.state.status = ConnectionStatus.OPEN
            self.state.last_open_time = time.time()
            logger.info(
                "stream open | kind=%s attempt=%d", self.kind.value, self.state.attempt
            )

            frame = self._subscribe_frame()
            await self.send(frame)
            logger.info(
                "stream subscribed | kind=%s channels=%s",
                self.kind.value,
                ",".join(frame.get("params", [])),
            )

            async for msg in self._ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise TransportError(f"websocket error: {self._ws.exception()}")
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, TransportError) as exc:
            logger.error("stream error | kind=%s error=%s", self.kind.value, exc)
        except Exception:
            logger.exception("stream reader failed | kind=%s", self.kind.value)
        finally:
            ws, self._ws = self._ws, None
            if ws is not None and not ws.closed:
                with contextlib.suppress(Exception):
                    await ws.close()
            self.state.status = ConnectionStatus.DISCONNECTED
            if not self._closing:
                logger.warning(
                    "stream disconnected; reconnect scheduled | kind=%s delay=%.1fs",
                    self.kind.value,
                    self.reconnect_delay,
                )
                self._schedule_reconnect()

    async def _dispatch(self, raw: Any) -> None:
        try:
            event = decode_frame(raw)
        except MalformedMessage as exc:
            logger.warning(
                "malformed frame dropped | kind=%s error=%s raw=%.200s",
                self.kind.value,
                exc,
                raw,
            )
            return

        if isinstance(event, Unrecognized):
            if event.error is not None:
                logger.warning(
                    "stream error frame | kind=%s error=%s", self.kind.value, event.error
                )
            else:
                logger.debug(
                    "unrecognized frame dropped | kind=%s stream=%s",
                    self.kind.value,
                    event.stream,
                )
            return

        for handler in self._handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "stream handler failed | kind=%s event=%s",
                    self.kind.value,
                    type(event).__name__,
                )

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self._closing:
            return
        if self.connect():
            logger.info("stream reconnect started | kind=%s", self.kind.value)
