"""Read-only HTTP views of the accessory snapshot."""

from __future__ import annotations

import logging
from html import escape
from typing import TYPE_CHECKING, Any

from aiohttp import web

if TYPE_CHECKING:
    from hbproxy.core.service import BridgeService

LOGGER = logging.getLogger(__name__)

NO_DATA_MESSAGE = "No accessory data yet. Please try again shortly."

_TABLE_PAGE = """<html>
<head><title>Hub Accessories</title></head>
<body>
<h1>Discovered Accessories</h1>
<table border="1" cellpadding="4" cellspacing="0">
<tr><th>Identity</th><th>Type</th><th>Human Type</th><th>Name</th></tr>
{rows}
</table>
</body>
</html>
"""


def _cell(value: Any) -> str:
    return f"<td>{escape(str(value)) if value is not None else ''}</td>"


def render_table(accessories: list[dict[str, Any]]) -> str:
    rows = "\n".join(
        "<tr>"
        + _cell(acc.get("identity"))
        + _cell(acc.get("type"))
        + _cell(acc.get("humanType"))
        + _cell(acc.get("serviceName"))
        + "</tr>"
        for acc in accessories
    )
    return _TABLE_PAGE.format(rows=rows)


class InspectionServer:
    def __init__(self, service: BridgeService, *, host: str, port: int) -> None:
        self._service = service
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/accessories", self.handle_accessories)
        app.router.add_get("/accessories/table", self.handle_table)
        app.router.add_get("/status", self.handle_status)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        LOGGER.info("Accessory list at http://%s:%s/accessories", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def handle_accessories(self, request: web.Request) -> web.Response:
        accessories = self._service.snapshot()
        if accessories is None:
            return web.json_response({"error": NO_DATA_MESSAGE}, status=503)
        return web.json_response({"accessories": accessories})

    async def handle_table(self, request: web.Request) -> web.Response:
        accessories = self._service.snapshot()
        if accessories is None:
            return web.Response(text="<h1>No accessory data yet.</h1>", content_type="text/html")
        return web.Response(text=render_table(accessories), content_type="text/html")

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._service.describe())
