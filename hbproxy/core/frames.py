"""Text frame codec for the hub's Socket.IO accessories namespace.

Only the subset the bridge needs is understood. Everything else is surfaced as
``Unknown`` so callers can log it without tearing the connection down.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from hbproxy.core.errors import FrameParseError

NAMESPACE = "/accessories"
PING = "2"
PONG = "3"
NAMESPACE_ACK = "40"
JOIN_FRAME = f"40{NAMESPACE},"
EVENT_PREFIX = f"42{NAMESPACE},"


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class Pong:
    pass


@dataclass(frozen=True)
class NamespaceAck:
    pass


@dataclass(frozen=True)
class Event:
    name: str
    payload: Any = None


@dataclass(frozen=True)
class Unknown:
    text: str


Frame = Ping | Pong | NamespaceAck | Event | Unknown


def parse_frame(text: str) -> Frame:
    if text == PING:
        return Ping()
    if text == PONG:
        return Pong()
    if text == NAMESPACE_ACK:
        return NamespaceAck()
    if not text.startswith(EVENT_PREFIX):
        return Unknown(text)

    body = text[len(EVENT_PREFIX):]
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise FrameParseError(f"Invalid JSON in event frame: {exc}") from exc

    if not isinstance(decoded, list) or not decoded:
        raise FrameParseError("Event frame must carry a non-empty JSON array")
    name = decoded[0]
    if not isinstance(name, str):
        raise FrameParseError(f"Event name must be a string, got {type(name).__name__}")
    payload = decoded[1] if len(decoded) > 1 else None
    return Event(name=name, payload=payload)


def encode_event(name: str, *args: Any) -> str:
    return EVENT_PREFIX + json.dumps([name, *args], separators=(",", ":"))


STATE_REQUEST_FRAME = encode_event("get-accessories")
