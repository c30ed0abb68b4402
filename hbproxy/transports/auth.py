"""Hub login: exchange credentials for a bearer token."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import aiohttp

from hbproxy.core.errors import AuthError
from hbproxy.core.model import HubCredentials, SessionToken

LOGGER = logging.getLogger(__name__)

LOGIN_PATH = "/api/auth/login"
REFRESH_MARGIN_S = 60.0


def login_url(credentials: HubCredentials) -> str:
    return f"http://{credentials.host}:{credentials.port}{LOGIN_PATH}"


class SessionAuthenticator:
    """Cache a hub session token and renew it lazily.

    The token is reused until it is within ``refresh_margin_s`` of expiry.
    There is no background refresh: callers acquire right before connecting.
    """

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
        refresh_margin_s: float = REFRESH_MARGIN_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._timeout_s = timeout_s
        self._refresh_margin_s = refresh_margin_s
        self._clock = clock
        self._token: SessionToken | None = None

    @property
    def token(self) -> SessionToken | None:
        return self._token

    def invalidate(self) -> None:
        self._token = None

    async def acquire(self, credentials: HubCredentials) -> SessionToken:
        if self._token is not None and self._token.is_usable(self._clock(), self._refresh_margin_s):
            return self._token

        self._token = None
        body = await self._post_login(credentials)
        token = _token_from_body(body, now=self._clock())
        LOGGER.info("Obtained hub token %s... (expires in %.0fs)", token.value[:12], token.expires_at - self._clock())
        self._token = token
        return token

    async def _post_login(self, credentials: HubCredentials) -> Any:
        url = login_url(credentials)
        payload = {
            "username": credentials.username,
            "password": credentials.password,
            "otp": credentials.otp,
        }
        headers = {"Content-Type": "application/json", "Accept": "*/*"}
        timeout = aiohttp.ClientTimeout(total=self._timeout_s)

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession(timeout=timeout)
        try:
            async with session.post(url, json=payload, headers=headers, timeout=timeout) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    raise AuthError(f"Hub login failed: HTTP {resp.status}: {text[:200]}")
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    raise AuthError(f"Hub login returned invalid JSON: {text[:200]}") from exc
        except AuthError:
            LOGGER.warning("Token fetch failed for %s", url)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            LOGGER.warning("Token fetch failed for %s: %s", url, exc)
            raise AuthError(f"Hub login request to {url} failed: {exc}") from exc
        finally:
            if owns_session:
                await session.close()


def _token_from_body(body: Any, *, now: float) -> SessionToken:
    if not isinstance(body, dict):
        raise AuthError("Hub login response must be a JSON object")
    access_token = body.get("access_token")
    expires_in = body.get("expires_in")
    if not isinstance(access_token, str) or not access_token:
        raise AuthError("Hub login response is missing 'access_token'")
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        raise AuthError("Hub login response is missing a numeric 'expires_in'")
    return SessionToken(value=access_token, expires_at=now + float(expires_in))
