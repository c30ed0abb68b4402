from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from hbproxy.core.model import BridgeConfig
from hbproxy.core.service import BridgeService
from hbproxy.transports.http_inspect import NO_DATA_MESSAGE, InspectionServer, render_table


@pytest.mark.asyncio
async def test_endpoints_before_and_after_data(fake_link, accessory_entry) -> None:
    service = BridgeService(BridgeConfig(), link=fake_link)
    inspection = InspectionServer(service, host="127.0.0.1", port=0)

    async with TestClient(TestServer(inspection.build_app())) as client:
        resp = await client.get("/accessories")
        assert resp.status == 503
        assert await resp.json() == {"error": NO_DATA_MESSAGE}

        resp = await client.get("/accessories/table")
        assert resp.status == 200
        assert "No accessory data yet" in await resp.text()

        await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3, name="Porch <Light>")])

        resp = await client.get("/accessories")
        assert resp.status == 200
        body = await resp.json()
        assert [a["identity"] for a in body["accessories"]] == ["abc"]

        resp = await client.get("/accessories/table")
        html = await resp.text()
        assert "<td>abc</td>" in html
        assert "Porch &lt;Light&gt;" in html

        resp = await client.get("/status")
        status = await resp.json()
        assert status["link"] == "open"
        assert status["accessories"] == 1
        assert status["pending"] == 0

    await service.stop()


def test_render_table_blank_cells() -> None:
    html = render_table([{"identity": "x", "type": None}])
    assert "<td>x</td><td></td><td></td><td></td>" in html
