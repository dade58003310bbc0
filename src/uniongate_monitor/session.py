"""Monitoring session for one selected gate.

A :class:`MonitorSession` owns the dispatcher, the connection monitor and
both log buffers, and wires them to an explicitly supplied broker client::

    BrokerClient ──on_message──► TopicDispatcher ──► status / events handler
         │                                              │
         │                                          classify()
         │                                              │
         └──on_connection_change──► ConnectionMonitor   ├─► current DeviceStatus + status log
                                          │             └─► event log
                                          └──► session observer ──► event log

The presentation layer reads :meth:`MonitorSession.snapshot` and may follow
new log entries through :meth:`MonitorSession.subscribe_to_entries`.

Switching device keeps log history unless ``logs.clear_on_device_switch``
is set; the current status is always discarded.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Union

from uniongate_monitor.buffer import LogBuffer
from uniongate_monitor.classifier import STATUS_TYPE, classify, unknown_event
from uniongate_monitor.config import AppConfig
from uniongate_monitor.dispatcher import TopicDispatcher
from uniongate_monitor.models import (
    AccessEvent,
    AccessMessage,
    Classification,
    DeviceStatus,
    EventLogEntry,
    LogLevel,
    MalformedPayload,
    StatusMessage,
    UnknownMessage,
)
from uniongate_monitor.monitor import ConnectionMonitor, ObserverRegistry
from uniongate_monitor.topics import DeviceTopics, device_topics
from uniongate_monitor.transport import ConnectError

logger = logging.getLogger(__name__)

LogEntry = Union[DeviceStatus, EventLogEntry]


class SessionClient(Protocol):
    """Broker client surface used by the session."""

    last_error: Optional[str]

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def subscribe(self, topic: str) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def on_message(self, callback: Callable[[str, bytes], None]) -> None: ...

    def on_connection_change(self, callback: Callable[[bool], None]) -> None: ...


@dataclass(frozen=True)
class DashboardSnapshot:
    """Everything the presentation layer renders, logs newest first."""

    device_id: Optional[str]
    topics: Optional[DeviceTopics]
    status: Optional[DeviceStatus]
    connected: bool
    last_error: Optional[str]
    events: tuple[EventLogEntry, ...]
    statuses: tuple[DeviceStatus, ...]


def _stamp_event_entry(entry: EventLogEntry, arrival_order: int, received_at: datetime) -> EventLogEntry:
    """Stamp the entry and the access event it carries with the same arrival."""
    event = entry.event
    if event is not None:
        event = dataclasses.replace(event, arrival_order=arrival_order, received_at=received_at)
    return dataclasses.replace(
        entry, event=event, arrival_order=arrival_order, received_at=received_at
    )


class MonitorSession:
    """Subscribes to one gate at a time and classifies what arrives.

    Parameters
    ----------
    client:
        An owned broker client (normally
        :class:`~uniongate_monitor.transport.BrokerClient`).
    config:
        Application config; topic namespace, gate list and log settings
        are read from it.
    """

    def __init__(self, client: SessionClient, config: Optional[AppConfig] = None) -> None:
        self._client = client
        self._config = config or AppConfig()
        self.monitor = ConnectionMonitor()
        self.dispatcher = TopicDispatcher(client)
        self.events: LogBuffer[EventLogEntry] = LogBuffer(
            self._config.logs.events_capacity, stamp=_stamp_event_entry
        )
        self.statuses: LogBuffer[DeviceStatus] = LogBuffer(self._config.logs.status_capacity)
        self._entries: ObserverRegistry[LogEntry] = ObserverRegistry("entry observer")

        self._status: Optional[DeviceStatus] = None
        self._device_id: Optional[str] = None
        self._topics: Optional[DeviceTopics] = None
        self._last_error: Optional[str] = None
        self._unsubscribe_monitor: Optional[Callable[[], None]] = None
        self._client_wired = False

        # Bound once so the dispatcher sees the same handler objects on deregister.
        self._status_handler = self._on_status_payload
        self._events_handler = self._on_events_payload

    # ── read side ───────────────────────────────────────────────────

    @property
    def status(self) -> Optional[DeviceStatus]:
        return self._status

    @property
    def connected(self) -> bool:
        return self.monitor.connected

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def topics(self) -> Optional[DeviceTopics]:
        return self._topics

    def snapshot(self) -> DashboardSnapshot:
        return DashboardSnapshot(
            device_id=self._device_id,
            topics=self._topics,
            status=self._status,
            connected=self.monitor.connected,
            last_error=self._last_error,
            events=tuple(self.events.latest()),
            statuses=tuple(self.statuses.latest()),
        )

    def subscribe_to_entries(self, observer: Callable[[LogEntry], None]) -> Callable[[], None]:
        """Receive every stamped entry appended to either log."""
        return self._entries.subscribe(observer)

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self, device_id: Optional[str] = None) -> None:
        """Connect and begin monitoring *device_id* (or the configured default).

        A connection failure is recorded in :attr:`last_error` and the event
        log instead of being raised; the client keeps reconnecting.
        """
        # Client callbacks cannot be removed, so they are wired once per session.
        if not self._client_wired:
            self._client.on_message(self.dispatcher.dispatch)
            self._client.on_connection_change(self.monitor.set_connected)
            self._client_wired = True
        if self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self.monitor.subscribe_to_changes(
                self._on_connection_change
            )

        try:
            await self._client.connect()
        except ConnectError as exc:
            self._last_error = str(exc)
            logger.error("Connection error: %s", exc)
            self._record(LogLevel.ERROR, "Connection error", details=str(exc))

        target = device_id or self._config.initial_device
        if target:
            self.select_device(target)

    async def close(self) -> None:
        """Drop topics and observers, then disconnect the client."""
        self._drop_topics()
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        self.monitor.clear()
        self._entries.clear()
        self._status = None
        await self._client.disconnect()
        logger.info("Session closed")

    def select_device(self, device_id: str) -> None:
        """Move both subscriptions to *device_id*.

        Raises
        ------
        ValueError
            If *device_id* cannot form a topic segment.
        """
        if device_id == self._device_id:
            return
        new_topics = device_topics(self._config.topics.namespace, device_id)

        self._drop_topics()
        if self._config.logs.clear_on_device_switch:
            self.events.clear()
            self.statuses.clear()

        self._device_id = device_id
        self._topics = new_topics
        self.dispatcher.register(new_topics.status, self._status_handler)
        self.dispatcher.register(new_topics.events, self._events_handler)

        logger.info("Monitoring %s (%s, %s)", device_id, new_topics.status, new_topics.events)
        self._record(
            LogLevel.INFO,
            f"Monitoring {self._config.gate_label(device_id)}",
            device_id=device_id,
        )

    def _drop_topics(self) -> None:
        if self._topics is not None:
            self.dispatcher.deregister(self._topics.status, self._status_handler)
            self.dispatcher.deregister(self._topics.events, self._events_handler)
        self._topics = None
        self._device_id = None
        self._status = None

    # ── handlers ────────────────────────────────────────────────────

    def _on_status_payload(self, payload: bytes) -> None:
        self._handle(classify(payload, fallback_type=STATUS_TYPE), "status")

    def _on_events_payload(self, payload: bytes) -> None:
        self._handle(classify(payload), "events")

    def _handle(self, result: Classification, channel: str) -> None:
        if isinstance(result, StatusMessage):
            self._apply_status(result.status)
        elif isinstance(result, AccessMessage):
            self._record_access(result.event)
        elif isinstance(result, UnknownMessage):
            self._record_unknown(result, channel)
        elif isinstance(result, MalformedPayload):
            logger.warning(
                "Dropped malformed %s payload (%s): %s", channel, result.code, result.message
            )
        else:
            raise TypeError(f"Unhandled classification result: {result!r}")

    def _apply_status(self, status: DeviceStatus) -> None:
        stamped = self.statuses.append(status)
        self._status = stamped
        logger.debug("Status from %s (#%d)", stamped.device_id, stamped.arrival_order)
        self._entries.notify(stamped)

    def _record_access(self, event: AccessEvent) -> None:
        verdict = "granted" if event.success else "denied"
        details = " ".join(
            f"{label}={value}"
            for label, value in (("code", event.code), ("hash", event.short_hash))
            if value
        )
        self._append_event(
            EventLogEntry(
                level=LogLevel.SUCCESS if event.success else LogLevel.WARNING,
                message=f"{event.kind.value.upper()} access {verdict}",
                device_id=event.device_id,
                details=details or None,
                event=event,
            )
        )

    def _record_unknown(self, message: UnknownMessage, channel: str) -> None:
        if message.raw_type is None:
            text = "Message without type"
        else:
            text = f"Unrecognized message type {message.raw_type!r}"
        logger.info("%s on %s topic", text, channel)
        event = unknown_event(message)
        self._append_event(
            EventLogEntry(
                level=LogLevel.INFO,
                message=text,
                device_id=event.device_id,
                details=f"{channel} topic",
                event=event,
            )
        )

    def _on_connection_change(self, connected: bool) -> None:
        if connected:
            self._last_error = None
            self._record(LogLevel.INFO, "Connected to broker")
        else:
            self._last_error = getattr(self._client, "last_error", None) or "Disconnected from broker"
            self._record(LogLevel.WARNING, "Disconnected from broker", details=self._last_error)

    # ── helpers ─────────────────────────────────────────────────────

    def _record(
        self,
        level: LogLevel,
        message: str,
        device_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        self._append_event(
            EventLogEntry(level=level, message=message, device_id=device_id, details=details)
        )

    def _append_event(self, entry: EventLogEntry) -> None:
        self._entries.notify(self.events.append(entry))
