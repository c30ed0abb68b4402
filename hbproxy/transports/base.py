"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from hbproxy.core.model import HubCredentials, SessionToken


class Authenticator(Protocol):
    async def acquire(self, credentials: HubCredentials) -> SessionToken:
        """Return a bearer token usable for the next connection attempt."""

    def invalidate(self) -> None:
        """Forget any cached token."""


class HubLink(Protocol):
    @property
    def is_open(self) -> bool:
        """Whether frames can currently be sent upstream."""

    @property
    def state(self) -> str:
        """Current lifecycle state name."""

    async def send(self, text: str) -> None:
        """Send one text frame upstream or raise ``LinkError``."""

    def request_reconnect(self, reason: str) -> bool:
        """Abort the current session and reconnect soon, unless already in flight."""

    async def start(self) -> None:
        """Begin supervising the connection."""

    async def stop(self) -> None:
        """Stop supervising and close the connection."""
