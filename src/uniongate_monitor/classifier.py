"""Classify raw broker payloads into typed status, access or unknown records.

Classification pipeline::

    raw bytes
      │
      ├─ JSON parse failure        → MalformedPayload(code="parse_error")
      ├─ not a JSON object         → MalformedPayload(code="not_an_object")
      ├─ type missing / unknown    → UnknownMessage
      ├─ type == "status"          → StatusMessage(DeviceStatus)
      └─ type in ("qr", "rfid")    → AccessMessage(AccessEvent)

The producer's schema is loose, so field extraction is permissive: a missing
or oddly-typed field becomes ``None`` instead of rejecting the message.
:func:`classify` never raises.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import orjson

from uniongate_monitor.models import (
    AccessEvent,
    AccessKind,
    AccessMessage,
    Classification,
    DeviceState,
    DeviceStatus,
    MalformedPayload,
    StatusMessage,
    UnknownMessage,
)

logger = logging.getLogger(__name__)

# Maximum bytes of raw payload preserved in malformed records.
MAX_RAW_PAYLOAD_BYTES = 4096

STATUS_TYPE = "status"

# Access-event type tag → (kind, field holding the credential hash)
_ACCESS_TYPES = {
    "qr": (AccessKind.QR, "qr_hash"),
    "rfid": (AccessKind.RFID, "card_hash"),
}

_TRUE_STRINGS = frozenset({"true", "1", "yes"})

# Status fields reported when absent or of the wrong type.
_STATUS_FIELDS = (
    "device_id",
    "latitude",
    "longitude",
    "status",
    "timestamp",
    "cpu_percent",
    "ram_percent",
    "ram_used_mb",
    "ram_total_mb",
)


def classify(
    raw: str | bytes,
    fallback_type: Optional[str] = None,
) -> Classification:
    """Classify a single raw message.

    Parameters
    ----------
    raw:
        Payload as delivered by the broker.
    fallback_type:
        Tag assumed when the record carries no string ``type``.  The status
        topic passes ``"status"`` because telemetry producers may omit it.

    Returns
    -------
    StatusMessage, AccessMessage, UnknownMessage or MalformedPayload
    """
    try:
        record = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        return _malformed("parse_error", str(exc), raw)

    if not isinstance(record, dict):
        return _malformed(
            "not_an_object",
            f"Expected a JSON object, got {type(record).__name__}",
            raw,
        )

    msg_type = record.get("type")
    if not isinstance(msg_type, str):
        if fallback_type is None:
            return UnknownMessage(raw_type=None, record=record)
        msg_type = fallback_type

    tag = msg_type.strip().lower()
    if tag == STATUS_TYPE:
        return StatusMessage(status=_shape_status(record))
    if tag in _ACCESS_TYPES:
        kind, hash_field = _ACCESS_TYPES[tag]
        return AccessMessage(event=_shape_access(record, kind, hash_field))
    return UnknownMessage(raw_type=msg_type, record=record)


def unknown_event(message: UnknownMessage) -> AccessEvent:
    """Build the ``kind=unknown`` event recorded for an unrecognized message."""
    return AccessEvent(
        kind=AccessKind.UNKNOWN,
        success=False,
        code=_as_str(message.record.get("code")),
        device_id=_as_str(message.record.get("device")),
        raw_type=message.raw_type,
    )


# ── shaping ─────────────────────────────────────────────────────────


def _shape_status(record: dict) -> DeviceStatus:
    status = DeviceStatus(
        device_id=_as_str(record.get("device")),
        latitude=_as_float(record.get("latitude")),
        longitude=_as_float(record.get("longitude")),
        status=_as_state(record.get("status")),
        timestamp=_as_int(record.get("timestamp")),
        cpu_percent=_as_float(record.get("cpu_percent")),
        ram_percent=_as_float(record.get("ram_percent")),
        ram_used_mb=_as_float(record.get("ram_used_mb")),
        ram_total_mb=_as_float(record.get("ram_total_mb")),
    )
    missing = [name for name in _STATUS_FIELDS if getattr(status, name) is None]
    if missing:
        logger.debug(
            "Status from %s missing or mistyped: %s", status.device_id, ", ".join(missing)
        )
    return status


def _shape_access(record: dict, kind: AccessKind, hash_field: str) -> AccessEvent:
    return AccessEvent(
        kind=kind,
        success=_as_bool(record.get("success")),
        code=_as_str(record.get("code")),
        hash=_as_str(record.get(hash_field)),
        device_id=_as_str(record.get("device")),
        raw_type=record.get("type"),
    )


# ── coercion helpers ────────────────────────────────────────────────


def _as_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _as_float(value: Any) -> Optional[float]:
    # bool is an int subclass but never a meaningful measurement
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    if number is None or number != number:  # NaN
        return None
    try:
        return int(number)
    except OverflowError:
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _as_state(value: Any) -> Optional[DeviceState]:
    if not isinstance(value, str):
        return None
    try:
        return DeviceState(value.strip().lower())
    except ValueError:
        return None


def _malformed(code: str, message: str, raw: str | bytes) -> MalformedPayload:
    """Build a :class:`MalformedPayload` with truncation handling."""
    raw_bytes = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    truncated = len(raw_bytes) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_bytes = raw_bytes[:MAX_RAW_PAYLOAD_BYTES]

    return MalformedPayload(
        code=code,
        message=message,
        raw_payload=raw_bytes.decode("utf-8", errors="replace"),
        raw_payload_truncated=truncated,
    )
