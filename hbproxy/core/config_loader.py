"""Configuration loading and validation for hbproxy."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from hbproxy.core.errors import ConfigLoadError, ConfigValidationError
from hbproxy.core.model import BridgeConfig, BridgeSettings, HubCredentials, ListenSettings

LOGGER = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
SECTIONS = ("hub", "listen", "bridge")


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


# Keep yes/no/on/off as strings so passwords such as "no" survive.
UniqueKeyLoader.yaml_implicit_resolvers = {
    first_char: [(tag, regexp) for tag, regexp in mappings if tag != "tag:yaml.org,2002:bool"]
    for first_char, mappings in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document (line {key_node.start_mark.line + 1})")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


def _load_schema_validator() -> Any:
    schema_text = resources.files("hbproxy.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "hbproxy" / CONFIG_FILENAME


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _merge_overrides(doc: dict[str, Any], overrides: Mapping[str, Mapping[str, Any]] | None) -> dict[str, Any]:
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in doc.items()}
    for section, values in (overrides or {}).items():
        if section not in SECTIONS:
            raise ConfigValidationError(f"Unknown override section '{section}'")
        present = {key: value for key, value in values.items() if value is not None}
        if not present:
            continue
        target = merged.setdefault(section, {})
        if not isinstance(target, dict):
            # Let schema validation report the malformed section.
            continue
        target.update(present)
    return merged


def _validate(doc: dict[str, Any], source: str) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _build_config(doc: dict[str, Any]) -> BridgeConfig:
    hub = dict(doc.get("hub", {}))
    for secret in ("password", "otp"):
        if secret in hub:
            hub[secret] = str(hub[secret])

    listen = ListenSettings(**doc.get("listen", {}))
    if listen.inspect_port is not None and listen.inspect_port == listen.port:
        raise ConfigValidationError(
            f"listen.port and listen.inspect_port must differ (both are {listen.port})"
        )

    bridge = BridgeSettings(**doc.get("bridge", {}))
    if bridge.health_timeout_s < bridge.health_interval_s:
        raise ConfigValidationError(
            "bridge.health_timeout_s must not be shorter than bridge.health_interval_s"
        )

    return BridgeConfig(credentials=HubCredentials(**hub), listen=listen, bridge=bridge)


def load_config(
    path: Path | None = None,
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
) -> BridgeConfig:
    """Build the effective configuration.

    Values come from built-in defaults, then the YAML file, then ``overrides``
    (a ``{section: {key: value}}`` mapping where ``None`` means "not given").
    An explicit ``path`` must exist; the default XDG path is optional.
    """
    doc: dict[str, Any] = {}
    source = "defaults"
    if path is not None:
        doc = _read_yaml(path)
        source = str(path)
    else:
        candidate = default_config_path()
        if candidate.is_file():
            doc = _read_yaml(candidate)
            source = str(candidate)

    merged = _merge_overrides(doc, overrides)
    _validate(merged, source)
    config = _build_config(merged)
    LOGGER.debug("Loaded configuration from %s", source)
    return config


def redacted(config: BridgeConfig) -> dict[str, Any]:
    """Return the effective settings as plain data with secrets masked."""
    credentials = config.credentials
    return {
        "hub": {
            "host": credentials.host,
            "port": credentials.port,
            "username": credentials.username,
            "password": "***" if credentials.password else "",
            "otp": "***" if credentials.otp else "",
        },
        "listen": {
            "host": config.listen.host,
            "port": config.listen.port,
            "inspect_port": config.listen.inspect_port,
        },
        "bridge": asdict(config.bridge),
    }
