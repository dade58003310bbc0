"""Topic dispatcher: per-topic handler registry with isolated fan-out.

A topic holds exactly one broker subscription while it has at least one
handler::

    register(T, h1)    → client.subscribe(T)       (empty → non-empty)
    register(T, h2)    → (no broker call)
    deregister(T, h1)  → (no broker call)
    deregister(T, h2)  → client.unsubscribe(T)     (non-empty → empty)

Handlers run in registration order; a handler that raises is logged,
counted and reported to the optional error sink, then the next handler runs.
Persistently failing handlers stay registered: removal is the owner's call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

Handler = Callable[[bytes], None]


class SubscriptionClient(Protocol):
    """The part of :class:`~uniongate_monitor.transport.BrokerClient` the dispatcher needs."""

    def subscribe(self, topic: str) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...


@dataclass(eq=False)
class _Registration:
    """One handler on one topic, with its failure count."""

    handler: Handler
    failures: int = 0


class HandlerError(Exception):
    """A registered handler raised while processing a message."""

    def __init__(self, topic: str, handler: Handler, cause: BaseException) -> None:
        super().__init__(f"Handler {handler!r} failed on {topic}: {cause}")
        self.topic = topic
        self.handler = handler
        self.cause = cause


class TopicDispatcher:
    """Maps topics to ordered handler lists and fans out inbound payloads.

    Parameters
    ----------
    client:
        Receives the broker-level ``subscribe``/``unsubscribe`` calls.
    on_handler_error:
        Optional sink for :class:`HandlerError` reports.
    """

    def __init__(
        self,
        client: SubscriptionClient,
        on_handler_error: Optional[Callable[[HandlerError], None]] = None,
    ) -> None:
        self._client = client
        self._on_handler_error = on_handler_error
        self._handlers: dict[str, list[_Registration]] = {}

    # ── registry ────────────────────────────────────────────────────

    def register(self, topic: str, handler: Handler) -> None:
        """Add *handler* for *topic*; subscribes on the first handler."""
        registrations = self._handlers.get(topic)
        if registrations is None:
            self._handlers[topic] = [_Registration(handler)]
            logger.debug("First handler for %s: subscribing", topic)
            self._client.subscribe(topic)
            return
        if any(r.handler == handler for r in registrations):
            return
        registrations.append(_Registration(handler))

    def deregister(self, topic: str, handler: Optional[Handler] = None) -> None:
        """Remove *handler* (or every handler) for *topic*.

        Unsubscribes once when the topic's list becomes empty.  Unknown
        topics and handlers are ignored.
        """
        registrations = self._handlers.get(topic)
        if registrations is None:
            return

        if handler is not None:
            for i, existing in enumerate(registrations):
                if existing.handler == handler:
                    del registrations[i]
                    break
            if registrations:
                return

        del self._handlers[topic]
        logger.debug("No handlers left for %s: unsubscribing", topic)
        self._client.unsubscribe(topic)

    def topics(self) -> list[str]:
        return list(self._handlers)

    def handlers(self, topic: str) -> list[Handler]:
        return [r.handler for r in self._handlers.get(topic, ())]

    def failure_count(self, handler: Handler) -> int:
        """Exceptions raised by *handler* while registered, across topics.

        Counts are dropped when the handler is deregistered.
        """
        return sum(
            r.failures
            for registrations in self._handlers.values()
            for r in registrations
            if r.handler == handler
        )

    # ── fan-out ─────────────────────────────────────────────────────

    def dispatch(self, topic: str, payload: bytes) -> None:
        """Deliver *payload* to every handler of *topic*.  Never raises."""
        registrations = self._handlers.get(topic)
        if not registrations:
            logger.debug("No handlers for %s: message dropped", topic)
            return

        for registration in list(registrations):
            try:
                registration.handler(payload)
            except Exception as exc:
                registration.failures += 1
                logger.exception(
                    "Error in message handler for %s (failure #%d)",
                    topic,
                    registration.failures,
                )
                self._report(HandlerError(topic, registration.handler, exc))

    def _report(self, error: HandlerError) -> None:
        if self._on_handler_error is None:
            return
        try:
            self._on_handler_error(error)
        except Exception:
            logger.exception("Handler error sink failed")
