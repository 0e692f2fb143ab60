"""
Connection manager: one broker session, its subscriptions and the message log.

State machine:
    DISCONNECTED --connect()--> CONNECTING --connected--> CONNECTED
    CONNECTED --closed/error--> RECONNECTING --connected--> CONNECTED
    any --disconnect()--> DISCONNECTED

RECONNECTING is entered on transport events only; the retry loop and its
interval belong to the transport. Events from a transport that has since been
replaced or torn down are ignored (each transport gets a generation tag).
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from galgo_mqtt.config import BrokerConfig
from galgo_mqtt.errors import GalgoMQTTError, NotConnectedError, StorageError, TransportError
from galgo_mqtt.storage import InboundMessage, Storage, Subscription
from galgo_mqtt.topics import (
    STATUS_OFFLINE,
    STATUS_ONLINE,
    build_status_payload,
    topic_matches,
    validate_topic_filter,
    validate_topic_name,
)
from galgo_mqtt.transport import LastWill, PahoTransport, Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[..., Transport]
ErrorListener = Callable[[GalgoMQTTError], None]
MessageListener = Callable[[InboundMessage], None]

OFFLINE_PUBLISH_TIMEOUT_S = 1.0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    state: ConnectionState
    broker: Optional[str]
    client_id: Optional[str]
    topics: tuple[str, ...]
    storage_errors: int
    last_error: Optional[str]

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnecting(self) -> bool:
        return self.state is ConnectionState.RECONNECTING

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready snapshot using the REST layer's camelCase keys."""
        return {
            "connected": self.connected,
            "reconnecting": self.reconnecting,
            "state": self.state.value,
            "broker": self.broker,
            "clientId": self.client_id,
            "topics": list(self.topics),
            "storageErrors": self.storage_errors,
            "lastError": self.last_error,
        }


def _validate_qos(qos: int) -> int:
    if qos not in (0, 1, 2):
        raise ValueError(f"qos must be 0, 1 or 2, got {qos!r}")
    return qos


class _BoundListener:
    """Forwards transport events to the manager, tagged with the transport's generation."""

    def __init__(self, manager: "ConnectionManager", generation: int) -> None:
        self._manager = manager
        self._generation = generation

    def on_transport_connected(self, session_resumed: bool) -> None:
        self._manager._handle_connected(self._generation, session_resumed)

    def on_transport_message(self, message: InboundMessage) -> None:
        self._manager._handle_message(self._generation, message)

    def on_transport_error(self, error: TransportError) -> None:
        self._manager._handle_transport_error(self._generation, error)

    def on_transport_closed(self, unexpected: bool) -> None:
        self._manager._handle_closed(self._generation, unexpected)


class ConnectionManager:
    """
    Owns at most one broker transport at a time.

    Storage and the transport factory are injected; construct one manager at
    process start and pass it to whatever needs it. subscribe/unsubscribe/publish
    raise NotConnectedError immediately when there is no session and otherwise
    return a Future that resolves on the broker's acknowledgment.
    """

    def __init__(
        self,
        storage: Storage,
        transport_factory: TransportFactory = PahoTransport,
        *,
        status_topic: str = "galgo/status",
        resubscribe_delay_s: float = 1.0,
    ) -> None:
        self._storage = storage
        self._transport_factory = transport_factory
        self.status_topic = validate_topic_name(status_topic)
        self.resubscribe_delay_s = resubscribe_delay_s

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._transport: Optional[Transport] = None
        self._config: Optional[BrokerConfig] = None
        # filters the broker has acknowledged for the current session
        self._topics: set[str] = set()
        # filters registered through subscribe(); re-asserted on every reconnect
        self._requested: dict[str, int] = {}
        self._settle_timer: Optional[threading.Timer] = None
        self._connected_event = threading.Event()

        self._storage_errors = 0
        self._last_error: Optional[str] = None
        self._error_listeners: list[ErrorListener] = []
        self._message_listeners: list[MessageListener] = []

        # One worker keeps the message log in delivery order without blocking paho's thread.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-store")

    # -------------------------
    # Lifecycle
    # -------------------------
    def connect(self, config: BrokerConfig) -> bool:
        """
        Start a connection attempt. Returns False (and does nothing) when another
        attempt is already in flight. Any existing session is torn down first.
        Connection errors after this point are retried by the transport.
        """
        with self._lock:
            if self._state is ConnectionState.CONNECTING:
                logger.warning("connect() ignored: a connection attempt is already in progress")
                return False
            previous = self._transport
            previous_client_id = self._config.client_id if self._config else ""
            was_connected = self._state is ConnectionState.CONNECTED
            self._transport = None
            self._generation += 1
            generation = self._generation
            self._state = ConnectionState.CONNECTING
            self._config = config
            self._topics.clear()
            self._connected_event.clear()
            self._cancel_settle_timer()

        if previous is not None:
            logger.info("Closing existing MQTT connection before reconnecting")
            self._teardown(previous, previous_client_id, announce=was_connected)

        last_will = LastWill(
            topic=self.status_topic,
            payload=build_status_payload(STATUS_OFFLINE, config.client_id),
        )
        transport = self._transport_factory(
            config, _BoundListener(self, generation), last_will=last_will
        )

        with self._lock:
            if generation != self._generation:
                # disconnect() or another connect() won the race
                stale = True
            else:
                stale = False
                self._transport = transport
        if stale:
            logger.info("connect() superseded before start; discarding transport")
            return False

        try:
            transport.connect()
        except Exception as exc:
            logger.exception("Failed to start MQTT connection to %s", config.address)
            with self._lock:
                if generation == self._generation:
                    self._transport = None
                    self._state = ConnectionState.DISCONNECTED
            self._report_error(TransportError(f"Failed to start connection: {exc}"))
            return False
        return True

    def disconnect(self) -> None:
        """Announce offline (best effort), close the transport, clear state. Idempotent."""
        with self._lock:
            transport = self._transport
            if transport is None and self._state is ConnectionState.DISCONNECTED:
                return
            client_id = self._config.client_id if self._config else ""
            was_connected = self._state is ConnectionState.CONNECTED
            self._transport = None
            self._generation += 1
            self._state = ConnectionState.DISCONNECTED
            self._topics.clear()
            self._requested.clear()
            self._connected_event.clear()
            self._cancel_settle_timer()

        logger.info("Disconnecting from MQTT broker...")
        if transport is not None:
            self._teardown(transport, client_id, announce=was_connected)
        logger.info("Disconnected from MQTT broker")

    def close(self) -> None:
        """Disconnect and stop the storage worker. The manager is unusable afterwards."""
        self.disconnect()
        self._executor.shutdown(wait=True)

    def _teardown(self, transport: Transport, client_id: str, *, announce: bool) -> None:
        if announce:
            try:
                fut = transport.publish(
                    self.status_topic,
                    build_status_payload(STATUS_OFFLINE, client_id),
                    qos=1,
                    retain=True,
                )
                fut.result(timeout=OFFLINE_PUBLISH_TIMEOUT_S)
            except Exception as exc:
                logger.warning("Offline status publish failed: %s", exc)
        try:
            transport.end()
        except Exception:
            logger.exception("Error closing MQTT transport")

    def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        return self._connected_event.wait(timeout)

    # -------------------------
    # Status and listeners
    # -------------------------
    def get_status(self) -> ConnectionStatus:
        with self._lock:
            return ConnectionStatus(
                state=self._state,
                broker=self._config.address if self._config else None,
                client_id=self._config.client_id if self._config else None,
                topics=tuple(sorted(self._topics)),
                storage_errors=self._storage_errors,
                last_error=self._last_error,
            )

    def is_connected(self) -> bool:
        with self._lock:
            return self._state is ConnectionState.CONNECTED

    def add_error_listener(self, callback: ErrorListener) -> None:
        self._error_listeners.append(callback)

    def add_message_listener(self, callback: MessageListener) -> None:
        self._message_listeners.append(callback)

    def _report_error(self, error: GalgoMQTTError) -> None:
        with self._lock:
            self._last_error = str(error)
            if isinstance(error, StorageError):
                self._storage_errors += 1
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener failed")

    # -------------------------
    # Operations
    # -------------------------
    def _require_transport(self) -> Transport:
        with self._lock:
            if self._state is not ConnectionState.CONNECTED or self._transport is None:
                raise NotConnectedError()
            return self._transport

    def subscribe(self, topic: str, qos: int = 0) -> Future:
        """Subscribe and keep the filter subscribed across reconnects until unsubscribe()."""
        return self._subscribe(topic, qos, remember=True)

    def _subscribe(self, topic: str, qos: int, *, remember: bool) -> Future:
        validate_topic_filter(topic)
        _validate_qos(qos)
        transport = self._require_transport()

        def _done() -> None:
            with self._lock:
                self._topics.add(topic)
                if remember:
                    self._requested[topic] = qos
            logger.info("Subscribed to topic: %s (QoS: %d)", topic, qos)

        return _chain(transport.subscribe(topic, qos), _done)

    def unsubscribe(self, topic: str) -> Future:
        validate_topic_filter(topic)
        transport = self._require_transport()

        def _done() -> None:
            with self._lock:
                self._topics.discard(topic)
                self._requested.pop(topic, None)
            logger.info("Unsubscribed from topic: %s", topic)

        return _chain(transport.unsubscribe(topic), _done)

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Future:
        validate_topic_name(topic)
        _validate_qos(qos)
        transport = self._require_transport()
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        return _chain(
            transport.publish(topic, payload, qos=qos, retain=retain),
            lambda: logger.debug("Published message to %s", topic),
        )

    # -------------------------
    # Topic management (storage + live subscription)
    # -------------------------
    def add_topic(
        self,
        topic: str,
        *,
        qos: int = 0,
        retained: bool = False,
        active: bool = True,
        description: Optional[str] = None,
    ) -> Subscription:
        """Store a topic filter; subscribe right away when active and connected."""
        validate_topic_filter(topic)
        _validate_qos(qos)
        sub = self._storage.add_subscription(
            Subscription(topic=topic, qos=qos, retained=retained, active=active, description=description)
        )
        if active and self.is_connected():
            self._subscribe_in_background(topic, qos)
        return sub

    def set_topic_active(self, topic: str, active: bool) -> Subscription:
        sub = self._storage.update_subscription(topic, active=active)
        if self.is_connected():
            if active:
                self._subscribe_in_background(topic, sub.qos)
            else:
                self._unsubscribe_in_background(topic)
        return sub

    def remove_topic(self, topic: str) -> Subscription:
        sub = self._storage.delete_subscription(topic)
        if sub.active and self.is_connected():
            self._unsubscribe_in_background(topic)
        return sub

    def _subscribe_in_background(self, topic: str, qos: int) -> None:
        try:
            fut = self._subscribe(topic, qos, remember=False)
        except GalgoMQTTError as exc:
            logger.warning("Could not subscribe to %s: %s", topic, exc)
            return
        fut.add_done_callback(lambda f: self._log_failure(f, f"subscribe to {topic}"))

    def _unsubscribe_in_background(self, topic: str) -> None:
        try:
            fut = self.unsubscribe(topic)
        except GalgoMQTTError as exc:
            logger.warning("Could not unsubscribe from %s: %s", topic, exc)
            return
        fut.add_done_callback(lambda f: self._log_failure(f, f"unsubscribe from {topic}"))

    def _log_failure(self, fut: Future, what: str) -> None:
        exc = fut.exception()
        if exc is None:
            return
        logger.error("Failed to %s: %s", what, exc)
        if isinstance(exc, GalgoMQTTError) and not isinstance(exc, NotConnectedError):
            self._report_error(exc)

    # -------------------------
    # Transport events
    # -------------------------
    def _handle_connected(self, generation: int, session_resumed: bool) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._state = ConnectionState.CONNECTED
            if not session_resumed:
                self._topics.clear()
            self._connected_event.set()
            delay = self.resubscribe_delay_s
            if delay > 0:
                self._cancel_settle_timer()
                self._settle_timer = threading.Timer(
                    delay, self._after_connect, args=(generation, session_resumed)
                )
                self._settle_timer.daemon = True
                self._settle_timer.start()
        if delay <= 0:
            self._after_connect(generation, session_resumed)

    def _after_connect(self, generation: int, session_resumed: bool) -> None:
        with self._lock:
            if generation != self._generation or self._state is not ConnectionState.CONNECTED:
                return
            client_id = self._config.client_id if self._config else ""
        self._sync_subscriptions(session_resumed)
        try:
            fut = self.publish(
                self.status_topic,
                build_status_payload(STATUS_ONLINE, client_id),
                qos=1,
                retain=True,
            )
        except GalgoMQTTError as exc:
            logger.warning("Online status publish failed: %s", exc)
            return
        fut.add_done_callback(lambda f: self._log_failure(f, "publish online status"))

    def _sync_subscriptions(self, session_resumed: bool) -> None:
        """
        Subscribe to every active stored topic plus the filters registered
        through subscribe().

        A resumed session still holds what was acknowledged before the drop, so
        only the difference is sent: filters activated while offline are
        subscribed, filters deactivated or removed while offline are dropped.
        """
        try:
            stored: Optional[list[Subscription]] = self._storage.list_active_subscriptions()
        except Exception as exc:
            logger.error("Failed to load active topics for resubscription: %s", exc)
            self._report_error(exc if isinstance(exc, StorageError) else StorageError(str(exc)))
            stored = None

        wanted = {sub.topic: sub.qos for sub in stored or ()}
        with self._lock:
            wanted.update(self._requested)
            held = set(self._topics) if session_resumed else set()

        missing = [(topic, qos) for topic, qos in wanted.items() if topic not in held]
        # without the stored list nothing can be proven stale
        stale = sorted(held - wanted.keys()) if stored is not None else []

        if session_resumed:
            logger.info(
                "Broker resumed the session; %d topics to add, %d to drop",
                len(missing),
                len(stale),
            )
        elif missing:
            logger.info("Re-subscribing to %d active topics...", len(missing))
        for topic, qos in missing:
            self._subscribe_in_background(topic, qos)
        for topic in stale:
            self._unsubscribe_in_background(topic)

    def _handle_message(self, generation: int, message: InboundMessage) -> None:
        with self._lock:
            if generation != self._generation:
                return
            matched = any(topic_matches(f, message.topic) for f in self._topics)
        if matched:
            logger.debug("MQTT message received: %s", message.topic)
        else:
            logger.debug("MQTT message on %s matches no acknowledged subscription", message.topic)
        try:
            self._executor.submit(self._store_message, message)
        except RuntimeError:
            logger.warning("Dropping message on %s: storage worker stopped", message.topic)

    def _store_message(self, message: InboundMessage) -> None:
        try:
            self._storage.append_message(
                message.topic,
                message.text,
                message.qos,
                message.retain,
                message.received_at,
            )
        except Exception as exc:
            logger.error("Failed to store message on %s: %s", message.topic, exc)
            self._report_error(exc if isinstance(exc, StorageError) else StorageError(str(exc)))
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Message listener failed")

    def _handle_transport_error(self, generation: int, error: TransportError) -> None:
        with self._lock:
            if generation != self._generation:
                return
        logger.error("MQTT transport error: %s", error)
        self._report_error(error)

    def _handle_closed(self, generation: int, unexpected: bool) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._connected_event.clear()
            self._cancel_settle_timer()
            if unexpected:
                # _topics stays until the next CONNACK says whether the session resumed
                self._state = ConnectionState.RECONNECTING
            else:
                self._topics.clear()
                self._state = ConnectionState.DISCONNECTED
        if unexpected:
            logger.info("MQTT reconnecting...")

    def _cancel_settle_timer(self) -> None:
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None


def _chain(inner: Future, on_success: Callable[[], None]) -> Future:
    """Future that settles after on_success has run for a successful inner future."""
    outer: Future = Future()

    def _done(f: Future) -> None:
        exc = f.exception()
        if exc is not None:
            outer.set_exception(exc)
            return
        try:
            on_success()
        except Exception:
            logger.exception("Acknowledgment handler failed")
        outer.set_result(None)

    inner.add_done_callback(_done)
    return outer
