"""Run the hbproxy bridge from your own asyncio program.

Import config loading, the error types and :class:`Bridge` from here. The
modules under ``hbproxy.core`` and ``hbproxy.transports`` may change between
releases.
"""

from __future__ import annotations

import asyncio
import logging
import signal

import aiohttp

from hbproxy.core.config_loader import load_config
from hbproxy.core.errors import (
    AuthError,
    CommandError,
    CommandTimeout,
    ConfigError,
    ConfigLoadError,
    ConfigValidationError,
    FrameParseError,
    HbproxyError,
    LinkError,
)
from hbproxy.core.model import (
    Accessory,
    BridgeConfig,
    BridgeSettings,
    Characteristic,
    CharacteristicDelta,
    HubCredentials,
    ListenSettings,
    SessionToken,
)
from hbproxy.core.service import BridgeService
from hbproxy.transports.auth import SessionAuthenticator
from hbproxy.transports.downstream import DownstreamServer
from hbproxy.transports.http_inspect import InspectionServer

__all__ = [
    "HbproxyError",
    "AuthError",
    "CommandError",
    "CommandTimeout",
    "ConfigError",
    "ConfigLoadError",
    "ConfigValidationError",
    "FrameParseError",
    "LinkError",
    "Accessory",
    "BridgeConfig",
    "BridgeSettings",
    "Characteristic",
    "CharacteristicDelta",
    "HubCredentials",
    "ListenSettings",
    "SessionToken",
    "BridgeService",
    "Bridge",
    "load_config",
    "login",
]

LOGGER = logging.getLogger(__name__)


async def login(config: BridgeConfig) -> SessionToken:
    """Perform one credential exchange against the configured hub."""
    authenticator = SessionAuthenticator(timeout_s=config.bridge.auth_timeout_s)
    return await authenticator.acquire(config.credentials)


class Bridge:
    """Run the hub link, the controller WebSocket server, and the inspection views.

    A `Bridge` owns one HTTP client session shared by the authenticator and
    the upstream link. Call :meth:`stop` (or send SIGINT/SIGTERM when using
    :meth:`serve_forever`) to shut everything down.
    """

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.service: BridgeService | None = None
        self._session: aiohttp.ClientSession | None = None
        self._downstream: DownstreamServer | None = None
        self._inspection: InspectionServer | None = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        self._stopped.clear()
        self._session = aiohttp.ClientSession()
        self.service = BridgeService(self.config, session=self._session)
        listen = self.config.listen
        self._downstream = DownstreamServer(self.service, host=listen.host, port=listen.port)
        await self._downstream.start()
        if listen.inspect_port is not None:
            self._inspection = InspectionServer(self.service, host=listen.host, port=listen.inspect_port)
            await self._inspection.start()
        await self.service.start()
        LOGGER.info(
            "Bridging hub %s:%s to controllers on port %s",
            self.config.credentials.host,
            self.config.credentials.port,
            listen.port,
        )

    def stop(self) -> None:
        self._stopped.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def close(self) -> None:
        if self.service is not None:
            await self.service.stop()
        for server in (self._inspection, self._downstream):
            if server is not None:
                await server.stop()
        self._inspection = None
        self._downstream = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        LOGGER.info("Bridge stopped")

    async def serve_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)
        try:
            await self.start()
            await self.wait_stopped()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.close()
