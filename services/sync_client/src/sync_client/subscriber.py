"""
Client side of the realtime channel.

``RealtimeSubscriber`` keeps one channel open while it is mounted.  Every
inbound frame goes to the ``CacheRouter``.  A keepalive ping is sent on a
fixed interval while the channel is open.  When the channel drops, the
subscriber reconnects with exponential backoff (``base_delay * 2**k``
capped at ``max_delay``) and gives up after ``max_reconnect_attempts``
consecutive failures.  A successful open resets the counter.

Unmounting cancels any pending reconnect and the keepalive, closes the
channel, and guarantees that no further attempt is scheduled.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from enum import Enum
from functools import partial
from typing import Any, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

from common.events import PING, encode_control
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import WebSocketException

from sync_client.cache import QueryCache
from sync_client.router import CacheRouter

LOGGER = logging.getLogger("dailytracker.sync_client")

DEFAULT_PING_INTERVAL = 20.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0

TRANSPORT_ERRORS = (OSError, TimeoutError, WebSocketException)


class Channel(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Channel]]
Sleeper = Callable[[float], Awaitable[Any]]


class SubscriberState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    TERMINAL = "terminal"


def build_channel_url(base_url: str, token: str | None = None) -> str:
    """Map an ``http(s)://`` API origin to its ``ws(s)://.../ws?token=...`` channel URL."""
    parts = urlsplit(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/") + "/ws"
    query = urlencode({"token": token or secrets.token_urlsafe(16)})
    return urlunsplit((scheme, parts.netloc, path, query, ""))


def cookie_header(cookies: Mapping[str, str] | None) -> str | None:
    if not cookies:
        return None
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


async def open_websocket(url: str, *, cookies: Mapping[str, str] | None = None) -> Channel:
    header = cookie_header(cookies)
    headers = {"Cookie": header} if header else None
    return await websocket_connect(url, additional_headers=headers)


class RealtimeSubscriber:
    def __init__(
        self,
        url: str,
        router: CacheRouter,
        *,
        connect: Connector,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.url = url
        self.router = router
        self.ping_interval = ping_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connect = connect
        self._sleep = sleep

        self.state = SubscriberState.IDLE
        self.reconnect_attempts = 0
        self._mounted = False
        self._channel: Channel | None = None
        self._connection_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._ping_task: asyncio.Task[None] | None = None

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.base_delay * 2**attempt, self.max_delay)

    def mount(self) -> None:
        self._mounted = True
        self.reconnect_attempts = 0
        self.connect()

    def connect(self) -> bool:
        """Open the channel unless unmounted or already connecting/open."""
        if not self._mounted:
            return False
        if self.state in (SubscriberState.CONNECTING, SubscriberState.OPEN):
            return False
        self.state = SubscriberState.CONNECTING
        self._connection_task = asyncio.create_task(self._run_connection())
        return True

    async def unmount(self) -> None:
        self._mounted = False
        self._cancel_reconnect()
        self._stop_ping()

        channel, self._channel = self._channel, None
        if channel is not None:
            await self._close_quietly(channel)

        task, self._connection_task = self._connection_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.state = SubscriberState.CLOSED
        LOGGER.info(json.dumps({"event": "subscriber_unmounted", "url": self.url}))

    async def _run_connection(self) -> None:
        try:
            channel = await self._connect(self.url)
        except TRANSPORT_ERRORS as exc:
            LOGGER.warning(
                json.dumps({"event": "channel_connect_failed", "url": self.url, "error": str(exc)})
            )
            self._handle_close()
            return

        if not self._mounted:
            await self._close_quietly(channel)
            return

        self._channel = channel
        self.state = SubscriberState.OPEN
        self.reconnect_attempts = 0
        self._ping_task = asyncio.create_task(self._ping_loop(channel))
        LOGGER.info(json.dumps({"event": "channel_open", "url": self.url}))

        try:
            async for raw in channel:
                await self.router.handle_text(raw)
        except TRANSPORT_ERRORS as exc:
            LOGGER.warning(json.dumps({"event": "channel_error", "error": str(exc)}))
        finally:
            if self._channel is channel:
                self._channel = None
            self._handle_close()

    def _handle_close(self) -> None:
        self._stop_ping()
        if not self._mounted:
            self.state = SubscriberState.CLOSED
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self.state = SubscriberState.TERMINAL
            LOGGER.error(
                json.dumps(
                    {
                        "event": "reconnect_abandoned",
                        "url": self.url,
                        "attempts": self.reconnect_attempts,
                    }
                )
            )
            return

        delay = self.reconnect_delay(self.reconnect_attempts)
        self.reconnect_attempts += 1
        self.state = SubscriberState.CLOSED
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        LOGGER.info(
            json.dumps(
                {
                    "event": "reconnect_scheduled",
                    "attempt": self.reconnect_attempts,
                    "delay_seconds": delay,
                }
            )
        )

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._mounted:
            self.connect()

    async def _ping_loop(self, channel: Channel) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            if self._channel is not channel or self.state is not SubscriberState.OPEN:
                return
            try:
                await channel.send(encode_control(PING))
            except TRANSPORT_ERRORS as exc:
                LOGGER.warning(json.dumps({"event": "ping_failed", "error": str(exc)}))

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _stop_ping(self) -> None:
        task, self._ping_task = self._ping_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _close_quietly(self, channel: Channel) -> None:
        try:
            await channel.close()
        except TRANSPORT_ERRORS as exc:
            LOGGER.debug(json.dumps({"event": "channel_close_failed", "error": str(exc)}))


@asynccontextmanager
async def realtime_sync(
    base_url: str,
    cache: QueryCache,
    *,
    cookies: Mapping[str, str] | None = None,
    connect: Connector | None = None,
    **options: Any,
) -> AsyncIterator[RealtimeSubscriber]:
    """Keep ``cache`` in sync with server events for the lifetime of the block."""
    router = CacheRouter(cache)
    subscriber = RealtimeSubscriber(
        build_channel_url(base_url),
        router,
        connect=connect or partial(open_websocket, cookies=cookies),
        **options,
    )
    subscriber.mount()
    try:
        yield subscriber
    finally:
        await subscriber.unmount()
