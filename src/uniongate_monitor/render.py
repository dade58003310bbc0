"""Rendering-ready views of log entries and dashboard snapshots.

Everything here is presentation support: time labels, the display level of
a status snapshot, and orjson serialization of entries to NDJSON lines.
"""

from __future__ import annotations

import enum
from dataclasses import asdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Union

import orjson

from uniongate_monitor.models import DeviceStatus, EventLogEntry, LogLevel

if TYPE_CHECKING:
    from uniongate_monitor.session import DashboardSnapshot

# CPU usage above which a status snapshot is flagged.
HIGH_CPU_PERCENT = 50.0


def format_time(dt: datetime) -> str:
    """Local wall-clock ``HH:MM:SS`` of *dt*."""
    return dt.astimezone().strftime("%H:%M:%S")


def format_timestamp(epoch_seconds: Optional[int]) -> Optional[str]:
    """Local date and time of a producer timestamp, or ``None``."""
    if epoch_seconds is None:
        return None
    try:
        return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).astimezone().strftime(
            "%Y-%m-%d %H:%M:%S"
        )
    except (OverflowError, OSError, ValueError):
        return None


def is_high_cpu(status: DeviceStatus) -> bool:
    return status.cpu_percent is not None and status.cpu_percent > HIGH_CPU_PERCENT


def status_level(status: DeviceStatus) -> LogLevel:
    """Display level of a status snapshot: ``error`` under high CPU load."""
    return LogLevel.ERROR if is_high_cpu(status) else LogLevel.INFO


def entry_to_dict(entry: Union[DeviceStatus, EventLogEntry]) -> dict[str, Any]:
    """Plain-dict form of a log entry with display helpers added."""
    data = _jsonable(asdict(entry))
    if entry.received_at is not None:
        data["time"] = format_time(entry.received_at)
    if isinstance(entry, DeviceStatus):
        data["record"] = "status"
        data["level"] = status_level(entry).value
        data["last_update"] = format_timestamp(entry.timestamp)
    else:
        data["record"] = "event"
        if entry.event is not None:
            data["event"]["short_hash"] = entry.event.short_hash
    return data


def to_ndjson(entry: Union[DeviceStatus, EventLogEntry]) -> bytes:
    """Serialize *entry* as a newline-terminated JSON line."""
    return orjson.dumps(entry_to_dict(entry), option=orjson.OPT_APPEND_NEWLINE)


def snapshot_to_dict(snapshot: "DashboardSnapshot") -> dict[str, Any]:
    return {
        "device_id": snapshot.device_id,
        "topics": list(snapshot.topics) if snapshot.topics else None,
        "connected": snapshot.connected,
        "last_error": snapshot.last_error,
        "status": entry_to_dict(snapshot.status) if snapshot.status else None,
        "events": [entry_to_dict(e) for e in snapshot.events],
        "statuses": [entry_to_dict(s) for s in snapshot.statuses],
    }


def _jsonable(obj: Any) -> Any:
    """Convert enums and datetimes left by :func:`dataclasses.asdict`."""
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj
