"""Shared test fixtures."""

from __future__ import annotations

from typing import Callable, Optional

import orjson
import pytest

from uniongate_monitor.transport import ConnectError


class FakeBrokerClient:
    """In-memory stand-in for :class:`BrokerClient`.

    Records every broker-level call in ``calls`` as ``(action, topic)``.
    """

    def __init__(self, connect_error: Optional[str] = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.last_error: Optional[str] = None
        self.connect_error = connect_error
        self.disconnected = False
        self._message_callbacks: list[Callable[[str, bytes], None]] = []
        self._connection_callbacks: list[Callable[[bool], None]] = []

    async def connect(self) -> None:
        if self.connect_error:
            self.last_error = self.connect_error
            raise ConnectError(self.connect_error)
        self.set_connected(True)

    async def disconnect(self) -> None:
        self.disconnected = True
        self.set_connected(False)

    def subscribe(self, topic: str) -> None:
        self.calls.append(("subscribe", topic))

    def unsubscribe(self, topic: str) -> None:
        self.calls.append(("unsubscribe", topic))

    def on_message(self, callback: Callable[[str, bytes], None]) -> None:
        self._message_callbacks.append(callback)

    def on_connection_change(self, callback: Callable[[bool], None]) -> None:
        self._connection_callbacks.append(callback)

    # ── test helpers ────────────────────────────────────────────────

    def emit(self, topic: str, payload) -> None:
        """Deliver *payload* (bytes, or a dict to be JSON-encoded)."""
        if isinstance(payload, dict):
            payload = orjson.dumps(payload)
        for callback in self._message_callbacks:
            callback(topic, payload)

    def set_connected(self, connected: bool) -> None:
        for callback in self._connection_callbacks:
            callback(connected)

    def count(self, action: str, topic: str) -> int:
        return self.calls.count((action, topic))


@pytest.fixture
def fake_client() -> FakeBrokerClient:
    return FakeBrokerClient()
