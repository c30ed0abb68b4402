"""Bridge service: the single owner of accessory state and command flow."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import aiohttp

from hbproxy.core.errors import CommandError, CommandTimeout, FrameParseError, LinkError
from hbproxy.core.model import (
    BridgeConfig,
    LoadResult,
    PendingCommand,
    RequestState,
    SetCharacteristic,
    ToggleCharacteristic,
    WireCommand,
)
from hbproxy.core.pending import PendingCommandTracker
from hbproxy.core.store import AccessoryStore
from hbproxy.core.translator import CommandTranslator, parse_client_message
from hbproxy.transports.auth import SessionAuthenticator
from hbproxy.transports.base import Authenticator, HubLink
from hbproxy.transports.downstream import DownstreamConnection, FanOut
from hbproxy.transports.upstream import UpstreamLink

LOGGER = logging.getLogger(__name__)

ACCESSORIES_EVENT = "accessories-data"
RESPONSE_EVENTS = frozenset({"set-characteristics-response", "accessory-control-response"})
UPSTREAM_UNAVAILABLE = "upstream-unavailable"


class BridgeService:
    """Route hub events to clients and client commands to the hub.

    Every mutation of the store and the pending tracker happens inside this
    class while holding ``_lock``. Network sends are never awaited with the
    lock held.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        link: HubLink | None = None,
        authenticator: Authenticator | None = None,
        fanout: FanOut | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._clock = clock
        self._lock = asyncio.Lock()
        self.store = AccessoryStore(full_load_threshold=config.bridge.full_load_threshold)
        self.translator = CommandTranslator(self.store)
        self.pending = PendingCommandTracker(
            timeout_s=config.bridge.command_timeout_s,
            on_timeout=self._on_command_timeout,
            clock=clock,
        )
        self.fanout = fanout or FanOut()
        if link is None:
            authenticator = authenticator or SessionAuthenticator(
                session=session,
                timeout_s=config.bridge.auth_timeout_s,
            )
            link = UpstreamLink(
                config.credentials,
                authenticator=authenticator,
                settings=config.bridge,
                session=session,
                on_event=self.handle_hub_event,
                on_status=self.handle_link_status,
            )
        self.link = link

    def timestamp(self) -> int:
        return int(self._clock() * 1000)

    async def start(self) -> None:
        await self.link.start()

    async def stop(self) -> None:
        await self.link.stop()
        self.pending.clear()
        await self.fanout.close()

    async def handle_hub_event(self, name: str, payload: Any) -> None:
        if name == ACCESSORIES_EVENT:
            async with self._lock:
                try:
                    result = self.store.apply(payload)
                except FrameParseError as exc:
                    LOGGER.warning("Ignoring accessories-data event: %s", exc)
                    return
                self._broadcast_load(result)
        elif name in RESPONSE_EVENTS:
            async with self._lock:
                self._resolve_responses(payload)
        else:
            LOGGER.debug("Forwarding hub event '%s' to %d clients", name, len(self.fanout))
            self.fanout.broadcast({"event": name, "data": payload})

    async def handle_link_status(self, connected: bool) -> None:
        LOGGER.info("Hub link %s", "up" if connected else "down")
        self.fanout.broadcast(self._status_message(connected))

    def _broadcast_load(self, result: LoadResult) -> None:
        full_state: dict[str, Any] | None = None
        updates = [{"event": "accessory-update", "data": delta.to_dict()} for delta in result.deltas]
        for connection in self.fanout:
            if connection.needs_full_state:
                if full_state is None:
                    full_state = self._full_state_message()
                if self.fanout.send(connection, full_state):
                    connection.needs_full_state = False
                continue
            for update in updates:
                if not self.fanout.send(connection, update):
                    break
        if updates:
            LOGGER.debug("Broadcast %d characteristic updates (%s load)", len(updates), result.kind)

    def _resolve_responses(self, payload: Any) -> None:
        items = payload if isinstance(payload, list) else [payload]
        for item in items:
            if not isinstance(item, Mapping):
                continue
            aid = item.get("aid")
            iid = item.get("iid")
            if not isinstance(aid, int) or not isinstance(iid, int):
                continue
            entry = self.pending.resolve((aid, iid))
            if entry is None:
                LOGGER.debug("Ignoring hub response for aid=%s iid=%s with no pending command", aid, iid)
                continue
            status = item.get("status", 0)
            if status in (0, None):
                LOGGER.info("Hub confirmed %s.%s = %r", entry.wire.identity, entry.wire.characteristic, entry.wire.value)
                self._notify_origin(entry, {"event": "command-success", **self._command_fields(entry.wire)})
            else:
                LOGGER.warning(
                    "Hub rejected %s.%s = %r (status %s)",
                    entry.wire.identity,
                    entry.wire.characteristic,
                    entry.wire.value,
                    status,
                )
                self._notify_origin(
                    entry,
                    {
                        "event": "command-error",
                        "cause": "hub-rejected",
                        "error": f"Hub rejected the write (status {status})",
                        "status": status,
                        **self._command_fields(entry.wire),
                    },
                )

    def _on_command_timeout(self, entry: PendingCommand) -> None:
        error = CommandTimeout(
            f"No response from hub for {entry.wire.identity}.{entry.wire.characteristic} "
            f"within {self.pending.timeout_s:g}s"
        )
        fields = self._command_fields(entry.wire)
        fields.pop("value")
        self._notify_origin(entry, {"event": "command-timeout", "error": str(error), **fields})

    def _notify_origin(self, entry: PendingCommand, message: dict[str, Any]) -> None:
        origin = entry.origin
        if isinstance(origin, DownstreamConnection):
            self.fanout.send(origin, message)

    async def attach(self, connection: DownstreamConnection) -> None:
        self.fanout.add(connection)
        LOGGER.info("Client %s attached (%d connected)", connection.label, len(self.fanout))
        async with self._lock:
            if self.store.loaded:
                if self.fanout.send(connection, self._full_state_message()):
                    connection.needs_full_state = False
            elif self.store.last_raw_payload is not None:
                self.fanout.send(connection, {"event": ACCESSORIES_EVENT, "data": self.store.last_raw_payload})
        self.fanout.send(connection, self._status_message(self.link.is_open))

    async def detach(self, connection: DownstreamConnection) -> None:
        self.fanout.remove(connection)
        async with self._lock:
            self.pending.discard_origin(connection)
        await connection.close()

    async def handle_client_message(self, connection: DownstreamConnection, text: str) -> None:
        try:
            command = parse_client_message(text)
        except CommandError as exc:
            self._reply_error(connection, exc)
            return

        if command is None:
            await self._forward_raw(connection, text)
        elif isinstance(command, RequestState):
            async with self._lock:
                message = self._full_state_message()
                loaded = self.store.loaded
            if self.fanout.send(connection, message) and loaded:
                connection.needs_full_state = False
        else:
            await self._dispatch(connection, command)

    async def _dispatch(
        self,
        connection: DownstreamConnection,
        command: SetCharacteristic | ToggleCharacteristic,
    ) -> None:
        async with self._lock:
            try:
                wire = self.translator.translate(command)
            except CommandError as exc:
                LOGGER.info("Rejected command from %s: %s", connection.label, exc)
                self._reply_error(connection, exc, identity=command.identity, characteristic=command.characteristic)
                return
            if not self.link.is_open:
                self._reply_unavailable(connection, identity=command.identity, characteristic=command.characteristic)
                return
            entry = self.pending.register(wire, origin=connection)

        try:
            await self.link.send(wire.frame)
        except LinkError as exc:
            async with self._lock:
                self.pending.discard(entry)
            LOGGER.warning("Sending %s.%s to hub failed: %s", wire.identity, wire.characteristic, exc)
            self._reply_unavailable(connection, identity=wire.identity, characteristic=wire.characteristic)
            return

        LOGGER.info("Sent %s.%s = %r from %s", wire.identity, wire.characteristic, wire.value, connection.label)
        self.fanout.send(connection, {"event": "command-sent", **self._command_fields(wire)})

    async def _forward_raw(self, connection: DownstreamConnection, text: str) -> None:
        if not self.link.is_open:
            self._reply_unavailable(connection)
            return
        try:
            await self.link.send(text)
        except LinkError as exc:
            LOGGER.warning("Forwarding raw message from %s failed: %s", connection.label, exc)
            self._reply_unavailable(connection)
            return
        LOGGER.debug("Forwarded raw message from %s", connection.label)

    def _reply_unavailable(self, connection: DownstreamConnection, **extra: Any) -> None:
        error = CommandError("Hub connection is not open; reconnecting", cause=UPSTREAM_UNAVAILABLE)
        self._reply_error(connection, error, **extra)
        self.link.request_reconnect(f"client {connection.label} found the hub link unavailable")

    def _reply_error(self, connection: DownstreamConnection, error: CommandError, **extra: Any) -> None:
        message = {"event": "command-error", "cause": error.cause, "error": str(error), **extra}
        message["timestamp"] = self.timestamp()
        self.fanout.send(connection, message)

    def _command_fields(self, wire: WireCommand) -> dict[str, Any]:
        return {
            "identity": wire.identity,
            "characteristic": wire.characteristic,
            "value": wire.value,
            "aid": wire.key[0],
            "iid": wire.key[1],
            "timestamp": self.timestamp(),
        }

    def _full_state_message(self) -> dict[str, Any]:
        return {"event": "full-state", "data": self.store.to_payload(), "timestamp": self.timestamp()}

    def _status_message(self, connected: bool) -> dict[str, Any]:
        return {"event": "connection-status", "connected": connected, "timestamp": self.timestamp()}

    def snapshot(self) -> list[dict[str, Any]] | None:
        """Return a copy of the accessory list, or ``None`` before the first load."""
        if not self.store.loaded:
            return None
        return self.store.to_payload()

    def describe(self) -> dict[str, Any]:
        return {
            "link": self.link.state,
            "connected": self.link.is_open,
            "clients": len(self.fanout),
            "pending": len(self.pending),
            "accessories": len(self.store.accessories()),
            "loaded": self.store.loaded,
        }
