"""MQTT transport client for the gate broker.

One :class:`BrokerClient` owns one logical broker connection, kept alive by
a background task with a fixed-period reconnect loop::

    connect() ──► RUN ──► CONNECTING ──(CONNACK)──► CONNECTED ──(drop)──┐
                   ▲          │                                        │
                   │       (error)                                     │
                   └──── WAIT reconnect_period ◄───────────────────────┘

:meth:`BrokerClient.connect` resolves on the first CONNACK or raises
:class:`ConnectError` after ``connect_timeout_ms``; the loop keeps retrying
either way and reports later drops only through connection-change callbacks.
Active topics are re-subscribed after every reconnect.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlsplit

import aiomqtt
import tenacity

from uniongate_monitor.config import BrokerConfig, TlsConfig

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], None]
ConnectionCallback = Callable[[bool], None]

_DEFAULT_PORTS = {"mqtt": 1883, "mqtts": 8883, "ws": 80, "wss": 443}

# Exceptions that end one connection attempt but not the reconnect loop.
_TRANSIENT_ERRORS = (aiomqtt.MqttError, OSError, asyncio.TimeoutError)


class ConnectError(Exception):
    """The broker could not be reached before the connect timeout."""


@dataclass(frozen=True)
class BrokerEndpoint:
    """Where and how to reach the broker, parsed from its URL."""

    hostname: str
    port: int
    transport: str = "tcp"
    websocket_path: Optional[str] = None
    tls: bool = False


def parse_broker_url(url: str) -> BrokerEndpoint:
    """Parse ``mqtt[s]://`` or ``ws[s]://host[:port][/path]``.

    Raises
    ------
    ValueError
        For an unsupported scheme or a missing host.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"Unsupported broker URL scheme: {parts.scheme!r}")
    if not parts.hostname:
        raise ValueError(f"Broker URL has no host: {url!r}")

    websocket = scheme in ("ws", "wss")
    return BrokerEndpoint(
        hostname=parts.hostname,
        port=parts.port or _DEFAULT_PORTS[scheme],
        transport="websockets" if websocket else "tcp",
        websocket_path=(parts.path or "/") if websocket else None,
        tls=scheme in ("mqtts", "wss"),
    )


def configure_tls_context(endpoint: BrokerEndpoint, tls: TlsConfig) -> ssl.SSLContext | None:
    """Create an :class:`ssl.SSLContext` for TLS endpoints, ``None`` otherwise."""
    if not endpoint.tls:
        return None

    try:
        if tls.ca_file:
            if not Path(tls.ca_file).exists():
                raise RuntimeError(f"MQTT TLS CA file missing: {tls.ca_file}")
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=tls.ca_file)
        else:
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

        if tls.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if tls.cert_file or tls.key_file:
            if not (tls.cert_file and tls.key_file):
                raise ValueError("Both cert_file and key_file must be provided for mTLS.")
            context.load_cert_chain(tls.cert_file, tls.key_file)

        return context
    except (OSError, ssl.SSLError, ValueError) as exc:
        raise RuntimeError(f"TLS setup failed: {exc}") from exc


def generate_client_id(prefix: str) -> str:
    """``{prefix}-`` followed by six random hex characters."""
    return f"{prefix}-{secrets.token_hex(3)}"


def _payload_bytes(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    return str(payload).encode("utf-8")


def _log_retry_attempt(retry_state: tenacity.RetryCallState) -> None:
    logger.info(
        "Reconnecting to broker (attempt %d, next wait %.2fs)",
        retry_state.attempt_number + 1,
        retry_state.next_action.sleep if retry_state.next_action else 0,
    )


class BrokerClient:
    """Manages the MQTT connection lifecycle and raw message delivery.

    Parameters
    ----------
    config:
        Broker URL, credentials, TLS material and reconnect timing.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._endpoint = parse_broker_url(config.url)
        self._client_id = config.client_id or generate_client_id(config.client_id_prefix)
        self._topics: dict[str, None] = {}
        self._message_callbacks: list[MessageCallback] = []
        self._connection_callbacks: list[ConnectionCallback] = []
        self._client: Optional[aiomqtt.Client] = None
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None
        self._pending: set[asyncio.Task] = set()
        self._connected = False
        self._last_error: Optional[str] = None

    # ── properties ──────────────────────────────────────────────────

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def endpoint(self) -> BrokerEndpoint:
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def last_error(self) -> Optional[str]:
        """Description of the most recent connection failure, if any."""
        return self._last_error

    @property
    def active_topics(self) -> list[str]:
        return list(self._topics)

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── callbacks ───────────────────────────────────────────────────

    def on_message(self, callback: MessageCallback) -> None:
        """Receive ``(topic, payload)`` for every inbound message, in order."""
        self._message_callbacks.append(callback)

    def on_connection_change(self, callback: ConnectionCallback) -> None:
        """Receive the new flag on every connected/disconnected transition."""
        self._connection_callbacks.append(callback)

    # ── lifecycle ───────────────────────────────────────────────────

    async def connect(self) -> None:
        """Start the connection loop and wait for the first CONNACK.

        Raises
        ------
        ConnectError
            When no connection is established within ``connect_timeout_ms``.
            The loop keeps retrying in the background.
        """
        if self._connected:
            return
        if self._ready is None:
            self._ready = asyncio.Event()
        if not self.started:
            self._task = asyncio.create_task(self._run(), name=f"mqtt-{self._client_id}")

        timeout = self._config.reconnect.connect_timeout_ms / 1000.0
        run_task = self._task
        ready = asyncio.ensure_future(self._ready.wait())
        try:
            await asyncio.wait(
                {ready, run_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready.cancel()

        if self._connected:
            return
        if run_task.done():
            if run_task.cancelled():
                raise ConnectError("Connection attempt was cancelled")
            raise ConnectError(
                f"Could not connect to {self._config.url}: {run_task.exception()}"
            ) from run_task.exception()
        reason = self._last_error or "timed out"
        raise ConnectError(
            f"Could not connect to {self._config.url} within {timeout:.1f}s: {reason}"
        )

    async def disconnect(self) -> None:
        """Stop the connection loop and forget all topics.  Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._pending):
            pending.cancel()
        self._pending.clear()
        self._topics.clear()
        self._client = None
        if self._ready is not None:
            self._ready.clear()
        self._set_connected(False)

    # ── topics ──────────────────────────────────────────────────────

    def subscribe(self, topic: str) -> None:
        """Request delivery for *topic*; repeated calls are no-ops."""
        if not self.started:
            logger.warning("Client not started, cannot subscribe to %s", topic)
            return
        if topic in self._topics:
            return
        self._topics[topic] = None
        if self._client is not None:
            self._spawn(self._client.subscribe(topic, qos=self._config.qos), "subscribe", topic)

    def unsubscribe(self, topic: str) -> None:
        """Stop delivery for *topic*; unknown topics are ignored."""
        if not self.started:
            logger.warning("Client not started, cannot unsubscribe from %s", topic)
            return
        if topic not in self._topics:
            return
        del self._topics[topic]
        if self._client is not None:
            self._spawn(self._client.unsubscribe(topic), "unsubscribe", topic)

    # ── internal: connection loop ───────────────────────────────────

    async def _run(self) -> None:
        period = self._config.reconnect.reconnect_period_ms / 1000.0
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_fixed(period),
            retry=tenacity.retry_if_exception_type(_TRANSIENT_ERRORS),
            before_sleep=_log_retry_attempt,
            reraise=True,
        )
        tls_context = configure_tls_context(self._endpoint, self._config.tls)

        try:
            async for attempt in retryer:
                with attempt:
                    await self._connect_session(tls_context)
        except asyncio.CancelledError:
            logger.info("MQTT transport stopping.")
            raise
        except Exception:
            logger.exception("MQTT transport stopped on an unexpected error")
            raise

    async def _connect_session(self, tls_context: ssl.SSLContext | None) -> None:
        ep = self._endpoint
        logger.info(
            "Connecting to %s:%d (%s) as %s", ep.hostname, ep.port, ep.transport, self._client_id
        )
        try:
            async with aiomqtt.Client(
                hostname=ep.hostname,
                port=ep.port,
                identifier=self._client_id,
                username=self._config.username or None,
                password=self._config.password or None,
                keepalive=self._config.keepalive,
                clean_session=self._config.clean_session,
                transport=ep.transport,
                websocket_path=ep.websocket_path,
                tls_context=tls_context,
                logger=logging.getLogger("uniongate_monitor.mqtt.client"),
            ) as client:
                self._client = client
                self._last_error = None
                for topic in list(self._topics):
                    await client.subscribe(topic, qos=self._config.qos)
                logger.info("Connected to broker (%d topics restored)", len(self._topics))
                self._set_connected(True)
                if self._ready is not None:
                    self._ready.set()

                async for message in client.messages:
                    self._deliver(str(message.topic), _payload_bytes(message.payload))

                # The message stream only ends when the connection does.
                raise aiomqtt.MqttError("Connection closed by broker")
        except _TRANSIENT_ERRORS as exc:
            self._last_error = str(exc) or type(exc).__name__
            logger.warning("MQTT connection error: %s", self._last_error)
            raise
        finally:
            self._client = None
            if self._ready is not None:
                self._ready.clear()
            self._set_connected(False)

    # ── internal: delivery ──────────────────────────────────────────

    def _deliver(self, topic: str, payload: bytes) -> None:
        for callback in list(self._message_callbacks):
            try:
                callback(topic, payload)
            except Exception:
                logger.exception("Error in message callback for %s", topic)

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        for callback in list(self._connection_callbacks):
            try:
                callback(connected)
            except Exception:
                logger.exception("Error in connection callback")

    def _spawn(self, coro, action: str, topic: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Failed to %s %s: %s", action, topic, exc)
            else:
                logger.info("%s %s", "Subscribed to" if action == "subscribe" else "Unsubscribed from", topic)

        task.add_done_callback(_done)
