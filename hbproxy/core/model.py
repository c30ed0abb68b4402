"""Core data models used across config, store, translator, and service."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

INTEGER_FORMATS = frozenset({"int", "uint8", "uint16", "uint32", "uint64"})
WRITE_PERMISSION = "pw"


@dataclass(frozen=True)
class HubCredentials:
    host: str = "127.0.0.1"
    port: int = 8581
    username: str = "admin"
    password: str = "admin"
    otp: str = ""


@dataclass(frozen=True)
class ListenSettings:
    port: int = 9001
    host: str = "0.0.0.0"
    inspect_port: int | None = 9100


@dataclass(frozen=True)
class BridgeSettings:
    reconnect_delay_s: float = 10.0
    reconnect_now_delay_s: float = 1.0
    health_interval_s: float = 30.0
    health_timeout_s: float = 120.0
    command_timeout_s: float = 10.0
    full_load_threshold: int = 5
    state_request_delay_s: float = 0.25
    poll_interval_s: float = 0.0
    auth_timeout_s: float = 10.0
    connect_timeout_s: float = 15.0
    send_queue_size: int = 256
    send_timeout_s: float = 5.0


@dataclass(frozen=True)
class BridgeConfig:
    credentials: HubCredentials = field(default_factory=HubCredentials)
    listen: ListenSettings = field(default_factory=ListenSettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)


@dataclass(frozen=True)
class SessionToken:
    value: str
    expires_at: float

    def is_usable(self, now: float, margin_s: float = 60.0) -> bool:
        return now < self.expires_at - margin_s


@dataclass(frozen=True)
class Characteristic:
    type: str
    value: Any
    format: str | None
    perms: tuple[str, ...]
    aid: int | None = None
    iid: int | None = None
    can_write: bool | None = None
    min_value: float | None = None
    max_value: float | None = None
    min_step: float | None = None
    unit: str | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "format": self.format,
            "perms": list(self.perms),
            "aid": self.aid,
            "iid": self.iid,
            "canWrite": self.can_write,
            "minValue": self.min_value,
            "maxValue": self.max_value,
            "minStep": self.min_step,
            "unit": self.unit,
            "description": self.description,
        }


@dataclass(frozen=True)
class Accessory:
    identity: str
    aid: int | None
    iid: int | None
    type: str | None
    human_type: str | None
    service_name: str | None
    characteristics: dict[str, Characteristic]

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "aid": self.aid,
            "iid": self.iid,
            "type": self.type,
            "humanType": self.human_type,
            "serviceName": self.service_name,
            "characteristics": [c.to_dict() for c in self.characteristics.values()],
        }


@dataclass(frozen=True)
class CharacteristicMeta:
    aid: int
    iid: int
    format: str | None
    perms: tuple[str, ...]
    can_write: bool | None = None
    min_value: float | None = None
    max_value: float | None = None
    min_step: float | None = None

    @property
    def writable(self) -> bool:
        if self.can_write is not None:
            return self.can_write
        return WRITE_PERMISSION in self.perms


@dataclass(frozen=True)
class CharacteristicDelta:
    identity: str
    accessory_type: str | None
    characteristic: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "type": self.accessory_type,
            "characteristic": self.characteristic,
            "value": self.value,
        }


@dataclass(frozen=True)
class LoadResult:
    kind: str
    deltas: tuple[CharacteristicDelta, ...]
    redundant: bool = False


@dataclass(frozen=True)
class SetCharacteristic:
    identity: str
    characteristic: str
    value: Any


@dataclass(frozen=True)
class ToggleCharacteristic:
    identity: str
    characteristic: str


@dataclass(frozen=True)
class RequestState:
    pass


@dataclass(frozen=True)
class WireCommand:
    key: tuple[int, int]
    frame: str
    identity: str
    characteristic: str
    value: Any


@dataclass
class PendingCommand:
    key: tuple[int, int]
    origin: Any
    wire: WireCommand
    created_at: float
    timer: asyncio.TimerHandle | None = None
