from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from hbproxy.core.errors import LinkError
from hbproxy.core.model import BridgeConfig, BridgeSettings
from hbproxy.core.service import BridgeService
from hbproxy.transports.downstream import DownstreamConnection


def _client(received: list[dict[str, Any]]) -> DownstreamConnection:
    async def sender(text: str) -> None:
        received.append(json.loads(text))

    return DownstreamConnection(sender, label="panel")


def _events(received: list[dict[str, Any]]) -> list[str]:
    return [message["event"] for message in received]


def _service(link, **settings: Any) -> BridgeService:
    return BridgeService(BridgeConfig(bridge=BridgeSettings(**settings)), link=link, clock=lambda: 1700000000.0)


@pytest.mark.asyncio
async def test_set_characteristic_round_trip(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3, on=False)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(
        client, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":true}'
    )
    assert fake_link.sent == ['42/accessories,["set-characteristics",[{"aid":3,"iid":12,"value":true}]]']
    assert len(service.pending) == 1

    await service.handle_hub_event("set-characteristics-response", [{"aid": 3, "iid": 12, "value": True}])
    await client.drain()

    assert _events(received) == ["full-state", "connection-status", "command-sent", "command-success"]
    sent, success = received[2], received[3]
    assert sent["identity"] == "abc"
    assert sent["characteristic"] == "On"
    assert sent["value"] is True
    assert (success["aid"], success["iid"]) == (3, 12)
    assert success["timestamp"] == 1700000000000
    assert len(service.pending) == 0
    await service.stop()


@pytest.mark.asyncio
async def test_incremental_change_reaches_every_client_once(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    payload = [accessory_entry(f"light-{n}", n + 1, brightness=n) for n in range(12)]
    await service.handle_hub_event("accessories-data", payload)

    inboxes: list[list[dict[str, Any]]] = [[], []]
    clients = [_client(inbox) for inbox in inboxes]
    for client in clients:
        await service.attach(client)

    changed = accessory_entry("light-5", 6, on=True, brightness=5)
    await service.handle_hub_event("accessories-data", [changed])
    for client in clients:
        await client.drain()

    for inbox in inboxes:
        updates = [m for m in inbox if m["event"] == "accessory-update"]
        assert updates == [
            {
                "event": "accessory-update",
                "data": {"identity": "light-5", "type": "Lightbulb", "characteristic": "On", "value": True},
            }
        ]
    await service.stop()


@pytest.mark.asyncio
async def test_clients_without_snapshot_get_full_state_instead_of_deltas(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3, on=True)])
    await client.drain()

    assert _events(received) == ["connection-status", "full-state", "accessory-update"]
    assert received[1]["data"][0]["identity"] == "abc"
    assert client.needs_full_state is False
    await service.stop()


@pytest.mark.asyncio
async def test_attach_before_any_data_sends_only_status(fake_link) -> None:
    service = _service(fake_link)
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)
    await client.drain()

    assert received == [{"event": "connection-status", "connected": True, "timestamp": 1700000000000}]
    assert client.needs_full_state
    await service.stop()


@pytest.mark.asyncio
async def test_unwritable_target_reports_error_without_sending(fake_link) -> None:
    service = _service(fake_link)
    await service.handle_hub_event(
        "accessories-data",
        [
            {
                "uniqueId": "sensor",
                "aid": 7,
                "iid": 1,
                "serviceCharacteristics": [
                    {"aid": 7, "iid": 9, "type": "CurrentTemperature", "format": "float", "perms": ["pr", "ev"], "value": 21.0}
                ],
            }
        ],
    )
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(
        client, '{"command":"set-characteristic","identity":"sensor","characteristic":"CurrentTemperature","value":3}'
    )
    await client.drain()

    assert fake_link.sent == []
    error = received[-1]
    assert error["event"] == "command-error"
    assert error["cause"] == "not-writable"
    assert error["identity"] == "sensor"
    await service.stop()


@pytest.mark.asyncio
async def test_command_timeout_reported_once_and_late_response_ignored(fake_link, accessory_entry) -> None:
    service = _service(fake_link, command_timeout_s=0.02)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(
        client, '{"command":"toggle-characteristic","identity":"abc","characteristic":"On"}'
    )
    await asyncio.sleep(0.08)
    await service.handle_hub_event("set-characteristics-response", [{"aid": 3, "iid": 12, "value": True}])
    await client.drain()

    assert _events(received) == ["full-state", "connection-status", "command-sent", "command-timeout"]
    assert "value" not in received[-1]
    assert "No response from hub" in received[-1]["error"]
    await service.stop()


@pytest.mark.asyncio
async def test_hub_rejection_reported_as_error(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(
        client, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":1}'
    )
    await service.handle_hub_event("accessory-control-response", [{"aid": 3, "iid": 12, "status": -70402}])
    await client.drain()

    assert received[-1]["event"] == "command-error"
    assert received[-1]["cause"] == "hub-rejected"
    assert received[-1]["status"] == -70402
    await service.stop()


@pytest.mark.asyncio
async def test_command_with_link_down_requests_reconnect(closed_link, accessory_entry) -> None:
    link = closed_link
    service = _service(link)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(
        client, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":true}'
    )
    await service.handle_client_message(client, '42/accessories,["get-accessories"]')
    await client.drain()

    assert link.sent == []
    assert len(link.reconnects) == 2
    errors = [m for m in received if m["event"] == "command-error"]
    assert [e["cause"] for e in errors] == ["upstream-unavailable", "upstream-unavailable"]
    assert received[1] == {"event": "connection-status", "connected": False, "timestamp": 1700000000000}
    assert len(service.pending) == 0
    await service.stop()


@pytest.mark.asyncio
async def test_failed_send_clears_pending_and_reconnects(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)
    fake_link.fail_send = True

    await service.handle_client_message(
        client, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":true}'
    )
    await client.drain()

    assert len(service.pending) == 0
    assert fake_link.reconnects
    assert received[-1]["cause"] == "upstream-unavailable"
    await service.stop()


@pytest.mark.asyncio
async def test_pass_through_forwarded_verbatim(fake_link) -> None:
    service = _service(fake_link)
    client = _client([])
    await service.attach(client)

    await service.handle_client_message(client, '42/accessories,["get-accessories"]')

    assert fake_link.sent == ['42/accessories,["get-accessories"]']
    assert fake_link.reconnects == []
    await service.stop()


@pytest.mark.asyncio
async def test_get_state_and_invalid_command(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(client, '{"command":"get-state"}')
    await service.handle_client_message(client, '{"command":"toggle-characteristic"}')
    await client.drain()

    assert _events(received) == ["full-state", "connection-status", "full-state", "command-error"]
    assert received[-1]["cause"] == "invalid-command"
    await service.stop()


@pytest.mark.asyncio
async def test_link_status_and_other_events_broadcast(fake_link) -> None:
    service = _service(fake_link)
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_link_status(False)
    await service.handle_hub_event("log", {"line": "hello"})
    await service.handle_hub_event("accessories-data", {"not": "a list"})
    await client.drain()

    assert received[1:] == [
        {"event": "connection-status", "connected": False, "timestamp": 1700000000000},
        {"event": "log", "data": {"line": "hello"}},
    ]
    assert not service.store.loaded
    await service.stop()


@pytest.mark.asyncio
async def test_detach_removes_client_and_keeps_timer_quiet(fake_link, accessory_entry) -> None:
    service = _service(fake_link, command_timeout_s=0.02)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)
    await service.handle_client_message(
        client, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":true}'
    )
    await client.drain()
    count = len(received)

    await service.detach(client)
    await asyncio.sleep(0.06)

    assert len(service.fanout) == 0
    assert len(received) == count
    assert service.describe()["clients"] == 0
    await service.stop()


@pytest.mark.asyncio
async def test_describe_and_snapshot(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    assert service.snapshot() is None
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])

    snapshot = service.snapshot()
    assert snapshot is not None and snapshot[0]["identity"] == "abc"
    assert service.describe() == {
        "link": "open",
        "connected": True,
        "clients": 0,
        "pending": 0,
        "accessories": 1,
        "loaded": True,
    }
    await service.start()
    await service.stop()
    assert fake_link.started and fake_link.stopped


@pytest.mark.asyncio
async def test_unparsed_payload_forwarded_raw_to_new_clients(fake_link) -> None:
    service = _service(fake_link)
    await service.handle_hub_event("accessories-data", {"unexpected": True})
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)
    await client.drain()

    assert _events(received) == ["accessories-data", "connection-status"]
    assert received[0]["data"] == {"unexpected": True}
    assert client.needs_full_state
    await service.stop()


class _StallingLink:
    """Holds the first send until released, then fails it."""

    is_open = True
    state = "open"

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.reconnects: list[str] = []
        self.release = asyncio.Event()
        self.calls = 0

    async def send(self, text: str) -> None:
        self.calls += 1
        if self.calls == 1:
            await self.release.wait()
            raise LinkError("socket went away")
        self.sent.append(text)

    def request_reconnect(self, reason: str, *, delay: float | None = None) -> bool:
        self.reconnects.append(reason)
        return True

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


@pytest.mark.asyncio
async def test_failed_send_keeps_newer_command_for_same_characteristic(accessory_entry) -> None:
    link = _StallingLink()
    service = _service(link, command_timeout_s=0.5)
    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    first_inbox: list[dict[str, Any]] = []
    second_inbox: list[dict[str, Any]] = []
    first, second = _client(first_inbox), _client(second_inbox)
    await service.attach(first)
    await service.attach(second)

    stalled = asyncio.create_task(
        service.handle_client_message(
            first, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":true}'
        )
    )
    while link.calls == 0:
        await asyncio.sleep(0)
    await service.handle_client_message(
        second, '{"command":"set-characteristic","identity":"abc","characteristic":"On","value":false}'
    )
    link.release.set()
    await stalled

    assert len(service.pending) == 1
    await service.handle_hub_event("set-characteristics-response", [{"aid": 3, "iid": 12, "value": False}])
    await first.drain()
    await second.drain()

    assert _events(second_inbox)[-2:] == ["command-sent", "command-success"]
    assert second_inbox[-1]["value"] is False
    assert first_inbox[-1]["cause"] == "upstream-unavailable"
    assert len(service.pending) == 0
    await service.stop()


@pytest.mark.asyncio
async def test_get_state_before_first_load_still_gets_full_state_later(fake_link, accessory_entry) -> None:
    service = _service(fake_link)
    received: list[dict[str, Any]] = []
    client = _client(received)
    await service.attach(client)

    await service.handle_client_message(client, '{"command":"get-state"}')
    await client.drain()
    assert received[-1] == {"event": "full-state", "data": [], "timestamp": 1700000000000}
    assert client.needs_full_state

    await service.handle_hub_event("accessories-data", [accessory_entry("abc", 3)])
    await client.drain()

    assert _events(received) == ["connection-status", "full-state", "full-state"]
    assert received[-1]["data"][0]["identity"] == "abc"
    assert client.needs_full_state is False
    await service.stop()
