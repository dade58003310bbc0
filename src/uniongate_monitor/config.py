"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config default.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

from uniongate_monitor.buffer import DEFAULT_CAPACITY
from uniongate_monitor.topics import DEFAULT_NAMESPACE

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

DEFAULT_BROKER_URL = "wss://broker.emqx.io:8084/mqtt"


@dataclass
class ReconnectConfig:
    """Fixed-period reconnection parameters."""

    reconnect_period_ms: int = 1000
    connect_timeout_ms: int = 30000


@dataclass
class TlsConfig:
    """TLS material for ``mqtts://`` and ``wss://`` brokers."""

    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    insecure: bool = False


@dataclass
class BrokerConfig:
    """MQTT broker connection settings."""

    url: str = DEFAULT_BROKER_URL
    client_id: Optional[str] = None
    client_id_prefix: str = "device-dashboard"
    username: Optional[str] = None
    password: Optional[str] = None
    keepalive: int = 60
    qos: int = 0
    clean_session: bool = True
    tls: TlsConfig = field(default_factory=TlsConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class TopicConfig:
    """Topic namespace shared by all gates."""

    namespace: str = DEFAULT_NAMESPACE


@dataclass
class GateOption:
    """A selectable gate: display label and device identifier."""

    label: str = ""
    value: str = ""


def _default_gates() -> list[GateOption]:
    return [
        GateOption(label="Punceling Gate In 1", value="BAGT2212111400001"),
        GateOption(label="BAGT2212111400002", value="BAGT2212111400002"),
        GateOption(label="BAGT2212111500003", value="BAGT2212111500003"),
    ]


@dataclass
class LogBufferConfig:
    """Capacities of the two in-memory logs and the device-switch policy.

    When ``clear_on_device_switch`` is False (the default) history from the
    previously selected gate stays visible after a switch.
    """

    events_capacity: int = DEFAULT_CAPACITY
    status_capacity: int = DEFAULT_CAPACITY
    clear_on_device_switch: bool = False


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/uniongate-monitor/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*username*", "*token*", "*secret*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    broker: BrokerConfig = field(default_factory=BrokerConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    gates: list[GateOption] = field(default_factory=_default_gates)
    default_device: Optional[str] = None
    logs: LogBufferConfig = field(default_factory=LogBufferConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def initial_device(self) -> Optional[str]:
        """``default_device`` if set, else the first configured gate."""
        if self.default_device:
            return self.default_device
        return self.gates[0].value if self.gates else None

    def gate_label(self, device_id: str) -> str:
        for gate in self.gates:
            if gate.value == device_id:
                return gate.label or device_id
        return device_id


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    broker_raw = dict(raw.get("broker", {}))
    tls_raw = broker_raw.pop("tls", {})
    reconnect_raw = broker_raw.pop("reconnect", {})
    logs_raw = raw.get("logs", {})
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    cfg = AppConfig(
        broker=BrokerConfig(
            **_pick(BrokerConfig, broker_raw),
            tls=TlsConfig(**_pick(TlsConfig, tls_raw)),
            reconnect=ReconnectConfig(**_pick(ReconnectConfig, reconnect_raw)),
        ),
        topics=TopicConfig(**_pick(TopicConfig, raw.get("topics", {}))),
        default_device=raw.get("default_device"),
        logs=LogBufferConfig(**_pick(LogBufferConfig, logs_raw)),
        logging=LoggingConfig(
            **_pick(LoggingConfig, logging_raw),
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
        ),
    )
    if "gates" in raw:
        cfg.gates = [GateOption(**_pick(GateOption, g)) for g in raw["gates"]]
    return cfg


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
