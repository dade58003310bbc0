"""Tests for config loading, interpolation and validation."""

from pathlib import Path

import jsonschema
import orjson
import pytest

from uniongate_monitor.config import AppConfig, load_config

EXAMPLE = Path(__file__).resolve().parent.parent / "config" / "config.example.json"


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps(data))
    return path


def test_example_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    """The shipped example validates and resolves its defaults."""
    for var in ("UNIONGATE_BROKER_URL", "UNIONGATE_BROKER_USERNAME", "UNIONGATE_BROKER_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    cfg = load_config(EXAMPLE)
    assert cfg.broker.url == "wss://broker.emqx.io:8084/mqtt"
    assert cfg.broker.username == ""
    assert cfg.initial_device == "BAGT2212111400001"
    assert [g.value for g in cfg.gates] == [
        "BAGT2212111400001",
        "BAGT2212111400002",
        "BAGT2212111500003",
    ]
    assert cfg.logs.events_capacity == 200


def test_env_interpolation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GATE_BROKER", "mqtt://broker.local:1883")
    path = _write(tmp_path, {"broker": {"url": "${GATE_BROKER}"}})
    assert load_config(path).broker.url == "mqtt://broker.local:1883"


def test_override_beats_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GATE_PASS", "from-env")
    path = _write(tmp_path, {"broker": {"password": "${GATE_PASS:-fallback}"}})
    cfg = load_config(path, overrides={"GATE_PASS": "from-cli"})
    assert cfg.broker.password == "from-cli"


def test_default_used_when_unset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GATE_NS", raising=False)
    path = _write(tmp_path, {"topics": {"namespace": "${GATE_NS:-site-a}"}})
    assert load_config(path).topics.namespace == "site-a"


def test_required_variable_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GATE_MISSING", raising=False)
    path = _write(tmp_path, {"broker": {"username": "${GATE_MISSING}"}})
    with pytest.raises(ValueError, match="GATE_MISSING"):
        load_config(path)


def test_empty_file_gives_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, {}))
    assert cfg == AppConfig()
    assert cfg.broker.reconnect.reconnect_period_ms == 1000
    assert cfg.broker.reconnect.connect_timeout_ms == 30000
    assert cfg.broker.client_id_prefix == "device-dashboard"
    assert cfg.logs.clear_on_device_switch is False


def test_nested_sections(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        {
            "broker": {
                "url": "mqtts://broker.local",
                "qos": 1,
                "tls": {"ca_file": "/etc/ssl/ca.pem"},
                "reconnect": {"reconnect_period_ms": 250},
            },
            "logs": {"status_capacity": 50, "clear_on_device_switch": True},
            "logging": {"level": "debug", "file": {"enabled": True, "path": "/tmp/gate.log"}},
        },
    )
    cfg = load_config(path)
    assert cfg.broker.qos == 1
    assert cfg.broker.tls.ca_file == "/etc/ssl/ca.pem"
    assert cfg.broker.reconnect.reconnect_period_ms == 250
    assert cfg.broker.reconnect.connect_timeout_ms == 30000
    assert cfg.logs.status_capacity == 50
    assert cfg.logs.clear_on_device_switch is True
    assert cfg.logging.level == "debug"
    assert cfg.logging.file.enabled is True
    assert cfg.logging.file.backup_count == 5


def test_gates_and_labels(tmp_path: Path) -> None:
    path = _write(tmp_path, {"gates": [{"label": "North", "value": "G-N"}, {"value": "G-S"}]})
    cfg = load_config(path)
    assert cfg.initial_device == "G-N"
    assert cfg.gate_label("G-N") == "North"
    assert cfg.gate_label("G-S") == "G-S"
    assert cfg.gate_label("unlisted") == "unlisted"


def test_no_gates_no_initial_device() -> None:
    assert AppConfig(gates=[]).initial_device is None
    assert AppConfig(gates=[], default_device="G1").initial_device == "G1"


@pytest.mark.parametrize(
    "data",
    [
        {"broker": {"url": "http://broker.local"}},
        {"broker": {"qos": 3}},
        {"broker": {"unknown_key": 1}},
        {"gates": [{"label": "bad", "value": "a/b"}]},
        {"logs": {"events_capacity": 0}},
        {"logging": {"level": "verbose"}},
    ],
)
def test_schema_rejects(tmp_path: Path, data: dict) -> None:
    with pytest.raises(jsonschema.ValidationError):
        load_config(_write(tmp_path, data))


def test_missing_schema_skips_validation(tmp_path: Path) -> None:
    path = _write(tmp_path, {"broker": {"qos": 3}})
    cfg = load_config(path, schema_path=tmp_path / "absent.json")
    assert cfg.broker.qos == 3
