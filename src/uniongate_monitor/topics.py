"""Topic naming for gate devices: ``{namespace}/{device_id}/status|events``."""

from __future__ import annotations

from typing import NamedTuple

DEFAULT_NAMESPACE = "uniongate"
STATUS_SUFFIX = "status"
EVENTS_SUFFIX = "events"

_FORBIDDEN = ("/", "+", "#")


class DeviceTopics(NamedTuple):
    """The pair of topics a selected device is monitored through."""

    status: str
    events: str


def _check_segment(kind: str, value: str) -> str:
    if not value:
        raise ValueError(f"{kind} must not be empty")
    if any(ch in value for ch in _FORBIDDEN):
        raise ValueError(f"{kind} {value!r} contains a reserved topic character")
    return value


def status_topic(namespace: str, device_id: str) -> str:
    return f"{namespace}/{_check_segment('device id', device_id)}/{STATUS_SUFFIX}"


def events_topic(namespace: str, device_id: str) -> str:
    return f"{namespace}/{_check_segment('device id', device_id)}/{EVENTS_SUFFIX}"


def device_topics(namespace: str, device_id: str) -> DeviceTopics:
    return DeviceTopics(
        status=status_topic(namespace, device_id),
        events=events_topic(namespace, device_id),
    )
