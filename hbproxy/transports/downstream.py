"""Downstream client connections, broadcast fan-out, and the WebSocket server."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import suppress
from typing import TYPE_CHECKING, Any

from aiohttp import WSMsgType, web

if TYPE_CHECKING:
    from hbproxy.core.service import BridgeService

LOGGER = logging.getLogger(__name__)

Sender = Callable[[str], Awaitable[None]]

_ids = itertools.count(1)


class DownstreamConnection:
    """One client socket with an ordered, bounded outbound queue.

    Messages are enqueued without waiting. A dedicated writer task drains the
    queue, so a slow client never delays the others. A full queue or a failed
    send closes only this connection.
    """

    def __init__(
        self,
        sender: Sender,
        *,
        closer: Callable[[], Awaitable[Any]] | None = None,
        label: str | None = None,
        max_queue: int = 256,
        send_timeout_s: float = 5.0,
    ) -> None:
        self.id = next(_ids)
        self.label = f"{label or 'client'}#{self.id}"
        self.needs_full_state = True
        self._sender = sender
        self._closer = closer
        self._send_timeout_s = send_timeout_s
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        self._writer: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[Any] | None = None
        self._closed = False
        self._on_drop: Callable[[DownstreamConnection], None] | None = None

    def __repr__(self) -> str:
        return f"DownstreamConnection({self.label!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, on_drop: Callable[[DownstreamConnection], None] | None = None) -> None:
        self._on_drop = on_drop
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"hbproxy-{self.label}-writer")

    def enqueue(self, message: dict[str, Any]) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(json.dumps(message, separators=(",", ":")))
        except asyncio.QueueFull:
            LOGGER.warning("Outbound queue full for %s; dropping connection", self.label)
            self._drop()
            return False
        return True

    async def drain(self) -> None:
        await self._queue.join()

    async def close(self) -> None:
        self._closed = True
        self._discard_queued()
        writer = self._writer
        self._writer = None
        if writer is not None:
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer

    async def _write_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await asyncio.wait_for(self._sender(text), timeout=self._send_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning(
                    "Send to %s failed (%s: %s); dropping connection", self.label, type(exc).__name__, exc
                )
                self._drop()
                return
            finally:
                self._queue.task_done()

    def _discard_queued(self) -> None:
        # Unblock drain() callers waiting on messages that will never be sent.
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    def _drop(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._discard_queued()
        writer = self._writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        if self._on_drop is not None:
            self._on_drop(self)
        if self._closer is not None:
            self._close_task = asyncio.create_task(self._closer())


class FanOut:
    def __init__(self) -> None:
        self._connections: dict[int, DownstreamConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[DownstreamConnection]:
        return iter(list(self._connections.values()))

    def add(self, connection: DownstreamConnection) -> None:
        self._connections[connection.id] = connection
        connection.start(on_drop=self.remove)

    def remove(self, connection: DownstreamConnection) -> None:
        if self._connections.pop(connection.id, None) is not None:
            LOGGER.info("Client %s removed (%d remaining)", connection.label, len(self._connections))

    def send(self, connection: DownstreamConnection, message: dict[str, Any]) -> bool:
        if connection.id not in self._connections:
            return False
        return connection.enqueue(message)

    def broadcast(self, message: dict[str, Any]) -> int:
        delivered = 0
        for connection in self:
            if connection.enqueue(message):
                delivered += 1
        return delivered

    async def close(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await connection.close()


class DownstreamServer:
    """aiohttp application accepting controller WebSocket clients."""

    def __init__(self, service: BridgeService, *, host: str, port: int) -> None:
        self._service = service
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/{tail:.*}", self.handle_websocket)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        LOGGER.info("Controller WebSocket listening on ws://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        settings = self._service.config.bridge
        connection = DownstreamConnection(
            ws.send_str,
            closer=ws.close,
            label=request.remote or "unknown",
            max_queue=settings.send_queue_size,
            send_timeout_s=settings.send_timeout_s,
        )
        LOGGER.info("Controller client %s connected", connection.label)
        await self._service.attach(connection)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._service.handle_client_message(connection, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self._service.handle_client_message(connection, msg.data.decode("utf-8", errors="replace"))
                elif msg.type == WSMsgType.ERROR:
                    LOGGER.warning("Client %s WebSocket error: %s", connection.label, ws.exception())
        finally:
            await self._service.detach(connection)
            LOGGER.info("Controller client %s disconnected", connection.label)
        return ws
