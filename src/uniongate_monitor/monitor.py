"""Connection lifecycle monitor and the observer registry behind it.

Observers are notified synchronously, in registration order, before
:meth:`ConnectionMonitor.set_connected` returns.  A failing observer is
logged and skipped; it never blocks delivery to the ones after it.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ObserverRegistry(Generic[T]):
    """Ordered list of callbacks with capability-style removal."""

    def __init__(self, name: str = "observer") -> None:
        self._name = name
        self._observers: list[list[Callable[[T], None]]] = []

    def subscribe(self, observer: Callable[[T], None]) -> Callable[[], None]:
        """Register *observer*; the returned callable removes this registration.

        Each registration is tracked by its own cell, so registering the same
        function twice yields two independent unsubscribe capabilities.
        """
        cell = [observer]
        self._observers.append(cell)

        def _unsubscribe() -> None:
            for i, existing in enumerate(self._observers):
                if existing is cell:
                    del self._observers[i]
                    return

        return _unsubscribe

    def notify(self, value: T) -> None:
        """Call every observer with *value*, isolating failures."""
        for cell in list(self._observers):
            observer = cell[0]
            try:
                observer(value)
            except Exception:
                logger.exception("Error in %s %r", self._name, observer)

    def clear(self) -> None:
        self._observers.clear()

    def __len__(self) -> int:
        return len(self._observers)


class ConnectionMonitor:
    """Tracks the broker connection flag and notifies observers on change."""

    def __init__(self) -> None:
        self._connected = False
        self._observers: ObserverRegistry[bool] = ObserverRegistry("connection observer")

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe_to_changes(self, observer: Callable[[bool], None]) -> Callable[[], None]:
        """Register *observer* for connection transitions.

        Returns an idempotent callable that removes exactly this observer.
        """
        return self._observers.subscribe(observer)

    def set_connected(self, connected: bool) -> bool:
        """Record the connection flag.

        Returns ``True`` when the flag changed and observers were notified.
        """
        connected = bool(connected)
        if connected == self._connected:
            return False
        self._connected = connected
        logger.info("Broker connection %s", "up" if connected else "down")
        self._observers.notify(connected)
        return True

    def clear(self) -> None:
        """Drop all observers (session teardown)."""
        self._observers.clear()

    @property
    def observer_count(self) -> int:
        return len(self._observers)
