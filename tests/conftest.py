from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from hbproxy.core.errors import LinkError


def _accessory_entry(
    unique_id: str | None,
    aid: int,
    *,
    iid: int = 10,
    on: Any = False,
    brightness: Any = None,
    name: str | None = None,
) -> dict[str, Any]:
    characteristics: list[dict[str, Any]] = [
        {
            "aid": aid,
            "iid": iid + 2,
            "type": "On",
            "format": "bool",
            "perms": ["ev", "pr", "pw"],
            "value": on,
            "canWrite": True,
        }
    ]
    if brightness is not None:
        characteristics.append(
            {
                "aid": aid,
                "iid": iid + 3,
                "type": "Brightness",
                "format": "int",
                "perms": ["ev", "pr", "pw"],
                "value": brightness,
                "minValue": 0,
                "maxValue": 100,
                "minStep": 1,
                "unit": "percentage",
                "canWrite": True,
            }
        )
    entry: dict[str, Any] = {
        "aid": aid,
        "iid": iid,
        "type": "Lightbulb",
        "humanType": "Lightbulb",
        "serviceName": name or f"Light {aid}",
        "serviceCharacteristics": characteristics,
    }
    if unique_id is not None:
        entry["uniqueId"] = unique_id
    return entry


@pytest.fixture
def accessory_entry() -> Callable[..., dict[str, Any]]:
    return _accessory_entry


class FakeLink:
    def __init__(self, *, is_open: bool = True) -> None:
        self.is_open = is_open
        self.state = "open" if is_open else "closed"
        self.sent: list[str] = []
        self.reconnects: list[str] = []
        self.fail_send = False
        self.started = False
        self.stopped = False

    async def send(self, text: str) -> None:
        if self.fail_send:
            raise LinkError("socket went away")
        self.sent.append(text)

    def request_reconnect(self, reason: str, *, delay: float | None = None) -> bool:
        self.reconnects.append(reason)
        return True

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def closed_link() -> FakeLink:
    return FakeLink(is_open=False)


class FakeHub:
    """Minimal hub: a login endpoint and a Socket.IO-style WebSocket."""

    def __init__(self, *, token: str = "tok-abcdefghijklmnop", expires_in: float = 3600) -> None:
        self.token = token
        self.expires_in = expires_in
        self.login_bodies: list[Any] = []
        self.login_status = 200
        self.login_text: str | None = None
        self.socket_tokens: list[str | None] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.frames: list[str] = []
        self.server: TestServer | None = None

    @property
    def host(self) -> str:
        assert self.server is not None
        return self.server.host

    @property
    def port(self) -> int:
        assert self.server is not None and self.server.port is not None
        return self.server.port

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/auth/login", self.handle_login)
        app.router.add_get("/socket.io/", self.handle_socket)
        return app

    async def start(self) -> None:
        self.server = TestServer(self.build_app())
        await self.server.start_server()

    async def close(self) -> None:
        for ws in list(self.sockets):
            await ws.close()
        if self.server is not None:
            await self.server.close()

    async def handle_login(self, request: web.Request) -> web.Response:
        self.login_bodies.append(await request.json())
        if self.login_text is not None:
            return web.Response(text=self.login_text, status=self.login_status)
        return web.json_response(
            {"access_token": self.token, "expires_in": self.expires_in, "token_type": "Bearer"},
            status=self.login_status,
        )

    async def handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        if request.query.get("token") != self.token:
            raise web.HTTPUnauthorized()
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.socket_tokens.append(request.query.get("token"))
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                self.frames.append(msg.data)
        return ws


@pytest.fixture
def fake_hub() -> FakeHub:
    return FakeHub()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually() -> Callable[..., Any]:
    return wait_until
