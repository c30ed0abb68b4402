"""Translate downstream semantic commands into hub wire commands."""

from __future__ import annotations

import json
import math
from typing import Any

from hbproxy.core.errors import CommandError
from hbproxy.core.frames import encode_event
from hbproxy.core.model import (
    INTEGER_FORMATS,
    CharacteristicMeta,
    RequestState,
    SetCharacteristic,
    ToggleCharacteristic,
    WireCommand,
)
from hbproxy.core.store import AccessoryStore

POWER_CHARACTERISTICS = frozenset({"On", "Active", "Mute"})
LEVEL_CHARACTERISTICS = frozenset({"Brightness", "RotationSpeed", "TargetPosition", "Volume"})
POWER_ON_VALUE = 1
LEVEL_ON_VALUE = 100

_FORMAT_RANGES: dict[str, tuple[int, int]] = {
    "uint8": (0, 2**8 - 1),
    "uint16": (0, 2**16 - 1),
    "uint32": (0, 2**32 - 1),
    "uint64": (0, 2**64 - 1),
    "int": (-(2**31), 2**31 - 1),
}
_TRUE_WORDS = frozenset({"true", "on", "1", "yes"})
_FALSE_WORDS = frozenset({"false", "off", "0", "no"})

ClientCommand = SetCharacteristic | ToggleCharacteristic | RequestState


def _require_str(doc: dict[str, Any], key: str, command: str) -> str:
    value = doc.get(key)
    if not isinstance(value, str) or not value:
        raise CommandError(f"'{command}' requires a non-empty string '{key}'", cause="invalid-command")
    return value


def parse_client_message(text: str) -> ClientCommand | None:
    """Return the semantic command in ``text``, or ``None`` for pass-through text."""
    try:
        doc = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(doc, dict):
        return None

    command = doc.get("command")
    if command == "set-characteristic":
        if "value" not in doc:
            raise CommandError("'set-characteristic' requires a 'value'", cause="invalid-command")
        return SetCharacteristic(
            identity=_require_str(doc, "identity", command),
            characteristic=_require_str(doc, "characteristic", command),
            value=doc["value"],
        )
    if command == "toggle-characteristic":
        return ToggleCharacteristic(
            identity=_require_str(doc, "identity", command),
            characteristic=_require_str(doc, "characteristic", command),
        )
    if command == "get-state":
        return RequestState()
    return None


def _coerce_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    raise CommandError(f"{context} expects a boolean, got {value!r}", cause="invalid-value")


def _parse_number(value: Any, *, context: str) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise CommandError(f"{context} expects a number, got {value!r}", cause="invalid-value") from None
    else:
        raise CommandError(f"{context} expects a number, got {value!r}", cause="invalid-value")
    if not math.isfinite(number):
        raise CommandError(f"{context} expects a finite number, got {value!r}", cause="invalid-value")
    return number


def _clamp(number: float, lower: float | None, upper: float | None) -> float:
    if lower is not None and number < lower:
        return lower
    if upper is not None and number > upper:
        return upper
    return number


def coerce_value(meta: CharacteristicMeta, value: Any, *, context: str) -> Any:
    fmt = meta.format
    if fmt == "bool":
        return _coerce_bool(value, context=context)
    if fmt in INTEGER_FORMATS:
        if isinstance(value, int) and not isinstance(value, bool):
            number: float = value
        else:
            number = _parse_number(value, context=context)
        natural_min, natural_max = _FORMAT_RANGES[fmt]
        lower = meta.min_value if meta.min_value is not None else natural_min
        upper = meta.max_value if meta.max_value is not None else natural_max
        return int(round(_clamp(number, lower, upper)))
    if fmt == "float":
        return float(_clamp(_parse_number(value, context=context), meta.min_value, meta.max_value))
    if fmt == "string":
        return value if isinstance(value, str) else str(value)
    return value


class CommandTranslator:
    def __init__(self, store: AccessoryStore) -> None:
        self.store = store

    def resolve(self, identity: str, characteristic: str) -> CharacteristicMeta:
        entries = self.store.characteristics_for(identity)
        if entries is None:
            raise CommandError(f"Unknown accessory '{identity}'", cause="unknown-identity")
        meta = entries.get(characteristic)
        if meta is None:
            available = ", ".join(sorted(entries.keys()))
            raise CommandError(
                f"Accessory '{identity}' has no characteristic '{characteristic}'. Available: {available}",
                cause="unknown-characteristic",
            )
        if not meta.writable:
            perms = ", ".join(meta.perms) or "none"
            raise CommandError(
                f"Characteristic '{characteristic}' on '{identity}' is not writable (perms: {perms})",
                cause="not-writable",
            )
        return meta

    def translate(self, command: SetCharacteristic | ToggleCharacteristic) -> WireCommand:
        meta = self.resolve(command.identity, command.characteristic)
        context = f"{command.identity}.{command.characteristic}"
        if isinstance(command, ToggleCharacteristic):
            raw_value = self._toggled_value(command, meta)
        else:
            raw_value = command.value
        value = coerce_value(meta, raw_value, context=context)

        frame = encode_event(
            "set-characteristics",
            [{"aid": meta.aid, "iid": meta.iid, "value": value}],
        )
        return WireCommand(
            key=(meta.aid, meta.iid),
            frame=frame,
            identity=command.identity,
            characteristic=command.characteristic,
            value=value,
        )

    def _toggled_value(self, command: ToggleCharacteristic, meta: CharacteristicMeta) -> Any:
        current = self.store.current_value(command.identity, command.characteristic)
        if meta.format == "bool":
            return not bool(current)
        if command.characteristic in POWER_CHARACTERISTICS:
            return 0 if current else POWER_ON_VALUE
        if command.characteristic in LEVEL_CHARACTERISTICS:
            return 0 if current else LEVEL_ON_VALUE
        raise CommandError(
            f"Characteristic '{command.characteristic}' on '{command.identity}' cannot be toggled",
            cause="unsupported-toggle",
        )
