"""Tests for the classifier module."""

import logging

import orjson
import pytest

from uniongate_monitor.classifier import MAX_RAW_PAYLOAD_BYTES, classify, unknown_event
from uniongate_monitor.models import (
    AccessKind,
    AccessMessage,
    DeviceState,
    MalformedPayload,
    StatusMessage,
    UnknownMessage,
)


STATUS_RECORD = {
    "type": "status",
    "device": "BAGT2212111400001",
    "latitude": -6.2088,
    "longitude": 106.8456,
    "timestamp": 1739644321,
    "status": "online",
    "cpu_percent": 12.5,
    "ram_percent": 41.25,
    "ram_used_mb": 812.0,
    "ram_total_mb": 1968.5,
}


def test_qr_event() -> None:
    """A QR message becomes an AccessEvent with the hash preserved."""
    raw = b'{"type":"qr","device":"BAGT1","success":true,"code":"ABC123","qr_hash":"deadbeef12"}'
    result = classify(raw)
    assert isinstance(result, AccessMessage)
    event = result.event
    assert event.kind is AccessKind.QR
    assert event.success is True
    assert event.code == "ABC123"
    assert event.device_id == "BAGT1"
    assert event.hash.startswith("deadbeef")
    assert event.short_hash == "deadbeef"
    assert event.is_decision


def test_rfid_event_with_missing_fields() -> None:
    """Missing device/code are left unset, classification still succeeds."""
    result = classify(b'{"type":"rfid","success":false,"card_hash":"ff00"}')
    assert isinstance(result, AccessMessage)
    event = result.event
    assert event.kind is AccessKind.RFID
    assert event.success is False
    assert event.hash == "ff00"
    assert event.device_id is None
    assert event.code is None


def test_rfid_ignores_qr_hash_field() -> None:
    """Each kind reads its own hash field."""
    result = classify(b'{"type":"rfid","success":true,"qr_hash":"abcd"}')
    assert isinstance(result, AccessMessage)
    assert result.event.hash is None


@pytest.mark.parametrize(
    "value, expected",
    [(True, True), (False, False), (1, True), (0, False), ("true", True), ("False", False), (None, False), ("maybe", False)],
)
def test_success_coercion(value, expected) -> None:
    result = classify(orjson.dumps({"type": "qr", "success": value}))
    assert isinstance(result, AccessMessage)
    assert result.event.success is expected


def test_full_status() -> None:
    """All telemetry fields are mapped and typed."""
    result = classify(orjson.dumps(STATUS_RECORD))
    assert isinstance(result, StatusMessage)
    status = result.status
    assert status.device_id == "BAGT2212111400001"
    assert status.status is DeviceState.ONLINE
    assert status.is_online
    assert status.timestamp == 1739644321
    assert status.latitude == pytest.approx(-6.2088)
    assert status.cpu_percent == pytest.approx(12.5)
    assert status.ram_total_mb == pytest.approx(1968.5)
    assert status.arrival_order is None


def test_partial_status() -> None:
    """Missing or mistyped fields become None but the status is still emitted."""
    raw = orjson.dumps({"type": "status", "cpu_percent": "37.5", "ram_percent": True, "status": "rebooting"})
    result = classify(raw)
    assert isinstance(result, StatusMessage)
    status = result.status
    assert status.cpu_percent == pytest.approx(37.5)
    assert status.ram_percent is None
    assert status.status is None
    assert status.latitude is None
    assert status.device_id is None


def test_partial_status_logs_absent_fields(caplog) -> None:
    raw = orjson.dumps({"type": "status", "device": "BAGT1", "cpu_percent": "high", "status": "online"})
    with caplog.at_level(logging.DEBUG, logger="uniongate_monitor.classifier"):
        result = classify(raw)
    assert isinstance(result, StatusMessage)
    assert "cpu_percent" in caplog.text
    assert "ram_total_mb" in caplog.text
    assert "BAGT1" in caplog.text


def test_full_status_logs_nothing(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="uniongate_monitor.classifier"):
        classify(orjson.dumps(STATUS_RECORD))
    assert caplog.records == []


def test_unclamped_values_pass_through() -> None:
    raw = orjson.dumps({"type": "status", "cpu_percent": 140.0, "ram_used_mb": 3000, "ram_total_mb": 2000})
    status = classify(raw).status
    assert status.cpu_percent == 140.0
    assert status.ram_used_mb > status.ram_total_mb


def test_missing_type_without_fallback_is_unknown() -> None:
    result = classify(orjson.dumps({"device": "BAGT1", "success": True}))
    assert isinstance(result, UnknownMessage)
    assert result.raw_type is None


def test_missing_type_with_fallback() -> None:
    """The status topic treats untagged records as telemetry."""
    record = {k: v for k, v in STATUS_RECORD.items() if k != "type"}
    result = classify(orjson.dumps(record), fallback_type="status")
    assert isinstance(result, StatusMessage)
    assert result.status.device_id == "BAGT2212111400001"


def test_unrecognized_type() -> None:
    result = classify(b'{"type":"face","device":"BAGT1","code":"X1"}')
    assert isinstance(result, UnknownMessage)
    assert result.raw_type == "face"
    event = unknown_event(result)
    assert event.kind is AccessKind.UNKNOWN
    assert event.raw_type == "face"
    assert event.device_id == "BAGT1"
    assert not event.is_decision


def test_type_tag_is_case_insensitive() -> None:
    assert isinstance(classify(b'{"type":"QR","success":true}'), AccessMessage)


@pytest.mark.parametrize(
    "raw",
    [b"", b"{", b'{"type":"qr"', b"\xff\xfe\x00", b"not json at all"],
)
def test_invalid_json(raw: bytes) -> None:
    """Undecodable bytes yield a MalformedPayload, never an exception."""
    result = classify(raw)
    assert isinstance(result, MalformedPayload)
    assert result.code == "parse_error"


@pytest.mark.parametrize("raw", [b"[]", b"42", b'"qr"', b"null"])
def test_non_object_json(raw: bytes) -> None:
    result = classify(raw)
    assert isinstance(result, MalformedPayload)
    assert result.code == "not_an_object"


def test_raw_payload_truncation() -> None:
    """Payloads exceeding 4096 bytes are truncated in malformed records."""
    raw = b'{"not": "' + b"x" * (MAX_RAW_PAYLOAD_BYTES + 1000)
    result = classify(raw)
    assert isinstance(result, MalformedPayload)
    assert result.raw_payload_truncated is True
    assert len(result.raw_payload) <= MAX_RAW_PAYLOAD_BYTES


def test_str_input_accepted() -> None:
    assert isinstance(classify('{"type":"rfid","card_hash":"aa"}'), AccessMessage)
