"""Supervised WebSocket link to the hub's accessories namespace.

Lifecycle::

    idle -> connecting -> open -> closed/error -> (delay) -> connecting ...

A single supervisor task owns the connection. Reconnection is unconditional,
uses a fixed delay, and is guarded so at most one attempt exists at a time.
The health monitor and :meth:`UpstreamLink.request_reconnect` go through the
same guard.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import suppress
from enum import Enum
from typing import Any
from urllib.parse import urlencode

import aiohttp

from hbproxy.core.errors import FrameParseError, LinkError
from hbproxy.core.frames import (
    JOIN_FRAME,
    PONG,
    STATE_REQUEST_FRAME,
    Event,
    NamespaceAck,
    Ping,
    Pong,
    parse_frame,
)
from hbproxy.core.model import BridgeSettings, HubCredentials, SessionToken
from hbproxy.transports.base import Authenticator

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[str, Any], Awaitable[None]]
StatusHandler = Callable[[bool], Awaitable[None]]


class LinkState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


def websocket_url(credentials: HubCredentials, token: SessionToken) -> str:
    query = urlencode({"token": token.value, "EIO": "4", "transport": "websocket"})
    return f"ws://{credentials.host}:{credentials.port}/socket.io/?{query}"


class UpstreamLink:
    def __init__(
        self,
        credentials: HubCredentials,
        *,
        authenticator: Authenticator,
        settings: BridgeSettings | None = None,
        session: aiohttp.ClientSession | None = None,
        on_event: EventHandler | None = None,
        on_status: StatusHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials = credentials
        self._authenticator = authenticator
        self._settings = settings or BridgeSettings()
        self._http = session
        self._owns_http = False
        self.on_event = on_event
        self.on_status = on_status
        self._clock = clock

        self._state = LinkState.IDLE
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._attempt: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._session_tasks: set[asyncio.Task[Any]] = set()
        self._attempt_in_flight = False
        self._next_delay: float | None = None
        self._last_frame_at: float | None = None
        self._closing = False

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def is_open(self) -> bool:
        return self._state is LinkState.OPEN and self._ws is not None and not self._ws.closed

    @property
    def reconnect_in_flight(self) -> bool:
        return self._attempt_in_flight

    @property
    def last_frame_at(self) -> float | None:
        return self._last_frame_at

    async def start(self) -> None:
        if self._supervisor is not None and not self._supervisor.done():
            return
        self._closing = False
        if self._http is None:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        self._attempt_in_flight = True
        self._supervisor = asyncio.create_task(self._supervise(), name="hbproxy-upstream")
        self._health_task = asyncio.create_task(self._monitor_health(), name="hbproxy-upstream-health")

    async def stop(self) -> None:
        self._closing = True
        for task in (self._health_task, self._supervisor):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._health_task = None
        self._supervisor = None
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
            self._owns_http = False
        self._set_state(LinkState.IDLE)

    async def send(self, text: str) -> None:
        if self._state is not LinkState.OPEN:
            raise LinkError(f"Upstream link is not open (state={self._state.value})")
        await self._send_raw(text)

    def request_reconnect(self, reason: str, *, delay: float | None = None) -> bool:
        """Abort the current session and reconnect after a short delay.

        Returns False when the link is stopped or an attempt is already in
        flight.
        """
        if self._closing or self._supervisor is None:
            return False
        if self._attempt_in_flight:
            LOGGER.debug("Reconnect requested (%s) but an attempt is already in flight", reason)
            return False
        self._attempt_in_flight = True
        self._next_delay = self._settings.reconnect_now_delay_s if delay is None else delay
        LOGGER.warning("Forcing upstream reconnect: %s", reason)
        if self._attempt is not None and not self._attempt.done():
            self._attempt.cancel()
        return True

    def check_health(self, now: float | None = None) -> bool:
        if self._closing:
            return False
        if self._state is not LinkState.OPEN:
            return self.request_reconnect(f"link is {self._state.value}")
        now = self._clock() if now is None else now
        if self._last_frame_at is not None:
            idle_for = now - self._last_frame_at
            if idle_for > self._settings.health_timeout_s:
                return self.request_reconnect(f"no frames from hub for {idle_for:.0f}s")
        return False

    async def _supervise(self) -> None:
        while not self._closing:
            attempt = asyncio.create_task(self._run_session(), name="hbproxy-upstream-session")
            self._attempt = attempt
            try:
                await asyncio.wait({attempt})
            except asyncio.CancelledError:
                attempt.cancel()
                with suppress(asyncio.CancelledError):
                    await attempt
                raise
            finally:
                self._attempt = None

            if self._closing:
                break
            error = None if attempt.cancelled() else attempt.exception()
            self._attempt_in_flight = True
            delay = self._next_delay if self._next_delay is not None else self._settings.reconnect_delay_s
            self._next_delay = None
            if error is not None:
                self._set_state(LinkState.ERROR)
                LOGGER.warning("Upstream link failed (%s: %s); reconnecting in %.1fs", type(error).__name__, error, delay)
            else:
                self._set_state(LinkState.CLOSED)
                LOGGER.info("Upstream link closed; reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)

    async def _monitor_health(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._settings.health_interval_s)
            self.check_health()

    async def _run_session(self) -> None:
        self._set_state(LinkState.CONNECTING)
        token = await self._authenticator.acquire(self._credentials)
        ws = await self._connect(websocket_url(self._credentials, token))

        self._ws = ws
        self._last_frame_at = self._clock()
        self._attempt_in_flight = False
        self._set_state(LinkState.OPEN)
        LOGGER.info("Connected to hub at %s:%s", self._credentials.host, self._credentials.port)
        try:
            await self._notify_status(True)
            await self._send_raw(JOIN_FRAME)
            self._spawn(self._request_state_later())
            if self._settings.poll_interval_s > 0:
                self._spawn(self._poll_state())
            await self._read_loop(ws)
        finally:
            await self._teardown(ws)

    async def _connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._http is None:
            raise LinkError("Upstream link has no HTTP session (call start() first)")
        try:
            return await asyncio.wait_for(
                self._http.ws_connect(url, heartbeat=None),
                timeout=self._settings.connect_timeout_s,
            )
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in (401, 403):
                self._authenticator.invalidate()
            raise LinkError(f"Hub rejected WebSocket upgrade: HTTP {exc.status}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise LinkError(f"WebSocket connect to hub failed: {exc or type(exc).__name__}") from exc

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                text = msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                text = msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise LinkError(f"WebSocket error: {ws.exception()}")
            else:
                continue
            self._last_frame_at = self._clock()
            await self._handle_text(text)
        LOGGER.info("Hub closed the WebSocket (code=%s)", ws.close_code)

    async def _teardown(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        tasks = list(self._session_tasks)
        self._session_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._ws = None
        if not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, ConnectionError):
                LOGGER.debug("Closing hub WebSocket failed", exc_info=True)
        if self._state is LinkState.OPEN:
            self._set_state(LinkState.CLOSED)
            await self._notify_status(False)

    async def _handle_text(self, text: str) -> None:
        try:
            frame = parse_frame(text)
        except FrameParseError as exc:
            LOGGER.warning("Dropping malformed hub frame: %s (%.200s)", exc, text)
            return

        if isinstance(frame, Ping):
            await self._send_raw(PONG)
        elif isinstance(frame, NamespaceAck):
            await self._send_raw(JOIN_FRAME)
        elif isinstance(frame, Event):
            LOGGER.debug("Hub event '%s'", frame.name)
            if self.on_event is not None:
                await self.on_event(frame.name, frame.payload)
        elif isinstance(frame, Pong):
            LOGGER.debug("Unsolicited pong from hub")
        else:
            LOGGER.debug("Ignoring hub frame %.200s", frame.text)

    async def _send_raw(self, text: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise LinkError("Upstream WebSocket is closed")
        try:
            await ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise LinkError(f"Sending to hub failed: {exc}") from exc
        LOGGER.debug("-> hub %.200s", text)

    async def _request_state_later(self) -> None:
        await asyncio.sleep(self._settings.state_request_delay_s)
        try:
            await self._send_raw(STATE_REQUEST_FRAME)
        except LinkError as exc:
            LOGGER.warning("Initial state request failed: %s", exc)

    async def _poll_state(self) -> None:
        while True:
            await asyncio.sleep(self._settings.poll_interval_s)
            try:
                await self._send_raw(STATE_REQUEST_FRAME)
            except LinkError as exc:
                LOGGER.warning("State poll failed: %s", exc)
                return

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)

    def _set_state(self, state: LinkState) -> None:
        if state is not self._state:
            LOGGER.debug("Upstream link %s -> %s", self._state.value, state.value)
            self._state = state

    async def _notify_status(self, connected: bool) -> None:
        if self.on_status is not None:
            await self.on_status(connected)
