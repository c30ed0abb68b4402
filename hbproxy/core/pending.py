"""Correlate outgoing characteristic writes with hub responses."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from hbproxy.core.model import PendingCommand, WireCommand

LOGGER = logging.getLogger(__name__)


class PendingCommandTracker:
    """Hold at most one pending write per ``(aid, iid)`` correlation key.

    Entries leave the tracker exactly once, either through :meth:`resolve` or
    through their timeout. Both paths run on the event loop thread and check
    identity of the stored entry, so the second observer is a no-op.
    """

    def __init__(
        self,
        *,
        timeout_s: float = 10.0,
        on_timeout: Callable[[PendingCommand], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout_s = timeout_s
        self._on_timeout = on_timeout
        self._clock = clock
        self._entries: dict[tuple[int, int], PendingCommand] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def register(self, wire: WireCommand, origin: Any = None) -> PendingCommand:
        previous = self._entries.pop(wire.key, None)
        if previous is not None:
            self._cancel_timer(previous)
            LOGGER.debug("Pending command %s superseded by a newer write", wire.key)

        entry = PendingCommand(key=wire.key, origin=origin, wire=wire, created_at=self._clock())
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(self.timeout_s, self._expire, entry)
        self._entries[wire.key] = entry
        return entry

    def resolve(self, key: tuple[int, int]) -> PendingCommand | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._cancel_timer(entry)
        return entry

    def discard(self, entry: PendingCommand) -> bool:
        """Remove ``entry`` only if it still holds its key."""
        if self._entries.get(entry.key) is not entry:
            return False
        del self._entries[entry.key]
        self._cancel_timer(entry)
        return True

    def discard_origin(self, origin: Any) -> None:
        for entry in self._entries.values():
            if entry.origin is origin:
                entry.origin = None

    def clear(self) -> None:
        for entry in self._entries.values():
            self._cancel_timer(entry)
        self._entries.clear()

    def _expire(self, entry: PendingCommand) -> None:
        if self._entries.get(entry.key) is not entry:
            return
        del self._entries[entry.key]
        entry.timer = None
        LOGGER.info(
            "No hub response for %s.%s (aid=%s iid=%s) within %.1fs",
            entry.wire.identity,
            entry.wire.characteristic,
            entry.key[0],
            entry.key[1],
            self.timeout_s,
        )
        if self._on_timeout is not None:
            self._on_timeout(entry)

    @staticmethod
    def _cancel_timer(entry: PendingCommand) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
