"""Accessory snapshot store with full/incremental merging and diffing."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from typing import Any

from hbproxy.core.errors import FrameParseError
from hbproxy.core.model import (
    INTEGER_FORMATS,
    Accessory,
    Characteristic,
    CharacteristicDelta,
    CharacteristicMeta,
    LoadResult,
)

LOGGER = logging.getLogger(__name__)

FULL_LOAD = "full"
INCREMENTAL_LOAD = "incremental"


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _optional_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value if isinstance(value, (int, float)) else None


def _unrepresentable(value: Any, fmt: str) -> None:
    LOGGER.warning("Dropping value %r that cannot be expressed as %s", value, fmt)
    return None


def normalize_value(value: Any, fmt: str | None) -> Any:
    """Return ``value`` expressed in the type its declared format implies.

    ``None`` (absent) is preserved. Integer formats round, booleans treat any
    non-zero number as true, and a value that cannot be expressed in the
    declared format is stored as absent.
    """
    if value is None or fmt is None:
        return value
    if fmt == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "false"):
                return lowered == "true"
        number = _as_number(value)
        return number != 0 if number is not None else _unrepresentable(value, fmt)
    if fmt in INTEGER_FORMATS:
        number = _as_number(value)
        return int(round(number)) if number is not None else _unrepresentable(value, fmt)
    if fmt == "float":
        number = _as_number(value)
        return float(number) if number is not None else _unrepresentable(value, fmt)
    if fmt == "string" and not isinstance(value, str):
        return str(value)
    return value


def values_differ(old: Any, new: Any) -> bool:
    return type(old) is not type(new) or old != new


def _identity_for(entry: Mapping[str, Any]) -> str | None:
    unique_id = entry.get("uniqueId")
    if isinstance(unique_id, str) and unique_id:
        return unique_id
    aid = _optional_int(entry.get("aid"))
    iid = _optional_int(entry.get("iid"))
    if aid is None or iid is None:
        return None
    return f"{aid}.{iid}"


def _build_characteristic(raw: Mapping[str, Any], default_aid: int | None) -> Characteristic | None:
    char_type = raw.get("type")
    if not isinstance(char_type, str) or not char_type:
        return None
    fmt = _optional_str(raw.get("format"))
    perms = raw.get("perms")
    can_write = raw.get("canWrite")
    aid = _optional_int(raw.get("aid"))
    return Characteristic(
        type=char_type,
        value=normalize_value(raw.get("value"), fmt),
        format=fmt,
        perms=tuple(p for p in perms if isinstance(p, str)) if isinstance(perms, list) else (),
        aid=aid if aid is not None else default_aid,
        iid=_optional_int(raw.get("iid")),
        can_write=can_write if isinstance(can_write, bool) else None,
        min_value=_optional_number(raw.get("minValue")),
        max_value=_optional_number(raw.get("maxValue")),
        min_step=_optional_number(raw.get("minStep")),
        unit=_optional_str(raw.get("unit")),
        description=_optional_str(raw.get("description")),
    )


def parse_accessory(entry: Any) -> Accessory | None:
    if not isinstance(entry, Mapping):
        return None
    identity = _identity_for(entry)
    if identity is None:
        return None

    aid = _optional_int(entry.get("aid"))
    characteristics: dict[str, Characteristic] = {}
    raw_chars = entry.get("serviceCharacteristics")
    if isinstance(raw_chars, list):
        for raw in raw_chars:
            if not isinstance(raw, Mapping):
                continue
            characteristic = _build_characteristic(raw, aid)
            if characteristic is None:
                continue
            characteristics[characteristic.type] = characteristic

    return Accessory(
        identity=identity,
        aid=aid,
        iid=_optional_int(entry.get("iid")),
        type=_optional_str(entry.get("type")),
        human_type=_optional_str(entry.get("humanType")),
        service_name=_optional_str(entry.get("serviceName")),
        characteristics=characteristics,
    )


def _diff(previous: Accessory | None, current: Accessory) -> list[CharacteristicDelta]:
    deltas: list[CharacteristicDelta] = []
    for char_type, characteristic in current.characteristics.items():
        prior = previous.characteristics.get(char_type) if previous else None
        if prior is None or values_differ(prior.value, characteristic.value):
            deltas.append(
                CharacteristicDelta(
                    identity=current.identity,
                    accessory_type=current.type,
                    characteristic=char_type,
                    value=characteristic.value,
                )
            )
    return deltas


def _merge(previous: Accessory, incoming: Accessory) -> Accessory:
    characteristics = dict(previous.characteristics)
    characteristics.update(incoming.characteristics)
    return Accessory(
        identity=incoming.identity,
        aid=incoming.aid if incoming.aid is not None else previous.aid,
        iid=incoming.iid if incoming.iid is not None else previous.iid,
        type=incoming.type if incoming.type is not None else previous.type,
        human_type=incoming.human_type if incoming.human_type is not None else previous.human_type,
        service_name=incoming.service_name if incoming.service_name is not None else previous.service_name,
        characteristics=characteristics,
    )


class AccessoryStore:
    """Authoritative mirror of hub-reported accessories.

    Mutated only through :meth:`apply`. The lookup index and the correlation
    map are rebuilt aside and swapped in after every load, so readers never see
    a partially rebuilt index.
    """

    def __init__(self, *, full_load_threshold: int = 5) -> None:
        self.full_load_threshold = full_load_threshold
        self._snapshot: dict[str, Accessory] = {}
        self._index: dict[str, dict[str, CharacteristicMeta]] = {}
        self._by_key: dict[tuple[int, int], tuple[str, str]] = {}
        self._last_full_payload: str | None = None
        self._last_raw_payload: Any = None
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def last_raw_payload(self) -> Any:
        return self._last_raw_payload

    def apply(self, payload: Any) -> LoadResult:
        self._last_raw_payload = payload
        if not isinstance(payload, list):
            raise FrameParseError(
                f"accessories-data payload must be a list, got {type(payload).__name__}"
            )

        if not self._loaded or len(payload) > self.full_load_threshold:
            return self._apply_full(payload)
        return self._apply_incremental(payload)

    def _parse_all(self, payload: list[Any]) -> list[Accessory]:
        parsed: list[Accessory] = []
        for entry in payload:
            accessory = parse_accessory(entry)
            if accessory is None:
                LOGGER.warning("Skipping accessory entry without usable identity: %r", entry)
                continue
            parsed.append(accessory)
        return parsed

    def _apply_full(self, payload: list[Any]) -> LoadResult:
        canonical = json.dumps(payload, separators=(",", ":"))
        if self._loaded and canonical == self._last_full_payload:
            LOGGER.debug("Full load identical to previous payload; nothing to broadcast")
            return LoadResult(kind=FULL_LOAD, deltas=(), redundant=True)

        snapshot: dict[str, Accessory] = {}
        for accessory in self._parse_all(payload):
            if accessory.identity in snapshot:
                LOGGER.warning("Duplicate accessory identity '%s' in full load; keeping last", accessory.identity)
            snapshot[accessory.identity] = accessory

        deltas: list[CharacteristicDelta] = []
        for identity, accessory in snapshot.items():
            deltas.extend(_diff(self._snapshot.get(identity), accessory))

        self._snapshot = snapshot
        self._last_full_payload = canonical
        self._loaded = True
        self._rebuild_index()
        LOGGER.info("Full load: %d accessories, %d changed characteristics", len(snapshot), len(deltas))
        return LoadResult(kind=FULL_LOAD, deltas=tuple(deltas))

    def _apply_incremental(self, payload: list[Any]) -> LoadResult:
        deltas: list[CharacteristicDelta] = []
        snapshot = dict(self._snapshot)
        for accessory in self._parse_all(payload):
            previous = snapshot.get(accessory.identity)
            merged = _merge(previous, accessory) if previous else accessory
            deltas.extend(_diff(previous, merged))
            snapshot[accessory.identity] = merged

        self._snapshot = snapshot
        # The next full load must be compared against state, not bytes.
        self._last_full_payload = None
        self._rebuild_index()
        LOGGER.debug("Incremental load: %d entries, %d changed characteristics", len(payload), len(deltas))
        return LoadResult(kind=INCREMENTAL_LOAD, deltas=tuple(deltas))

    def _rebuild_index(self) -> None:
        index: dict[str, dict[str, CharacteristicMeta]] = {}
        by_key: dict[tuple[int, int], tuple[str, str]] = {}
        for identity, accessory in self._snapshot.items():
            entries: dict[str, CharacteristicMeta] = {}
            for char_type, characteristic in accessory.characteristics.items():
                if characteristic.aid is None or characteristic.iid is None:
                    continue
                entries[char_type] = CharacteristicMeta(
                    aid=characteristic.aid,
                    iid=characteristic.iid,
                    format=characteristic.format,
                    perms=characteristic.perms,
                    can_write=characteristic.can_write,
                    min_value=characteristic.min_value,
                    max_value=characteristic.max_value,
                    min_step=characteristic.min_step,
                )
                by_key[(characteristic.aid, characteristic.iid)] = (identity, char_type)
            index[identity] = entries
        self._index = index
        self._by_key = by_key

    def accessories(self) -> list[Accessory]:
        return list(self._snapshot.values())

    def get(self, identity: str) -> Accessory | None:
        return self._snapshot.get(identity)

    def characteristics_for(self, identity: str) -> dict[str, CharacteristicMeta] | None:
        return self._index.get(identity)

    def lookup(self, identity: str, characteristic: str) -> CharacteristicMeta | None:
        entries = self._index.get(identity)
        if entries is None:
            return None
        return entries.get(characteristic)

    def current_value(self, identity: str, characteristic: str) -> Any:
        accessory = self._snapshot.get(identity)
        if accessory is None:
            return None
        found = accessory.characteristics.get(characteristic)
        return found.value if found else None

    def resolve_key(self, aid: int, iid: int) -> tuple[str, str] | None:
        return self._by_key.get((aid, iid))

    def to_payload(self) -> list[dict[str, Any]]:
        return [accessory.to_dict() for accessory in self._snapshot.values()]
