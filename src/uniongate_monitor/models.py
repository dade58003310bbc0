"""Dataclass models for UnionGate Monitor records.

Classification results form a tagged union::

    StatusMessage | AccessMessage | UnknownMessage | MalformedPayload

All models are frozen so a record handed to the presentation layer can never
change under it.  Log buffers stamp ``arrival_order`` and ``received_at`` via
:func:`dataclasses.replace`, producing a new instance.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

# Hash characters kept by :attr:`AccessEvent.short_hash`.
SHORT_HASH_LEN = 8


class DeviceState(str, enum.Enum):
    """Online flag reported by the gate itself."""

    ONLINE = "online"
    OFFLINE = "offline"


class AccessKind(str, enum.Enum):
    """Credential type of an access event."""

    QR = "qr"
    RFID = "rfid"
    UNKNOWN = "unknown"


class LogLevel(str, enum.Enum):
    """Severity of an operational event-log entry."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class DeviceStatus:
    """Latest telemetry snapshot of one gate.

    Values come straight from the producer and are not clamped;
    ``ram_used_mb <= ram_total_mb`` is expected but not enforced.
    """

    device_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: Optional[DeviceState] = None
    timestamp: Optional[int] = None
    cpu_percent: Optional[float] = None
    ram_percent: Optional[float] = None
    ram_used_mb: Optional[float] = None
    ram_total_mb: Optional[float] = None
    arrival_order: Optional[int] = None
    received_at: Optional[datetime] = None

    @property
    def is_online(self) -> bool:
        return self.status is DeviceState.ONLINE


@dataclass(frozen=True)
class AccessEvent:
    """One classified QR or RFID access attempt."""

    kind: AccessKind = AccessKind.UNKNOWN
    success: bool = False
    code: Optional[str] = None
    hash: Optional[str] = None
    device_id: Optional[str] = None
    raw_type: Optional[str] = None
    arrival_order: Optional[int] = None
    received_at: Optional[datetime] = None

    @property
    def is_decision(self) -> bool:
        """True when the event represents an actual grant or denial."""
        return self.kind is not AccessKind.UNKNOWN

    @property
    def short_hash(self) -> Optional[str]:
        if self.hash is None:
            return None
        return self.hash[:SHORT_HASH_LEN]


@dataclass(frozen=True)
class EventLogEntry:
    """A line in the operational event log.

    Access events carry the classified :class:`AccessEvent` in ``event``;
    connection transitions and device switches have ``event=None``.
    """

    level: LogLevel = LogLevel.INFO
    message: str = ""
    device_id: Optional[str] = None
    details: Optional[str] = None
    event: Optional[AccessEvent] = None
    arrival_order: Optional[int] = None
    received_at: Optional[datetime] = None


# ── classification results ──────────────────────────────────────────


@dataclass(frozen=True)
class StatusMessage:
    """A telemetry message, possibly with missing fields."""

    status: DeviceStatus


@dataclass(frozen=True)
class AccessMessage:
    """A QR or RFID access event."""

    event: AccessEvent


@dataclass(frozen=True)
class UnknownMessage:
    """A well-formed record whose ``type`` tag is missing or unrecognized."""

    raw_type: Optional[str] = None
    record: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MalformedPayload:
    """A payload that could not be decoded into a JSON object.

    ``raw_payload`` holds at most ``MAX_RAW_PAYLOAD_BYTES`` of the original
    bytes (decoded with replacement) for diagnostics.
    """

    code: str = ""
    message: str = ""
    raw_payload: str = ""
    raw_payload_truncated: bool = False


Classification = Union[StatusMessage, AccessMessage, UnknownMessage, MalformedPayload]
