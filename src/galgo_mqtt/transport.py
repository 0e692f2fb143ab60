"""
Broker transport built on paho-mqtt.

One PahoTransport wraps one paho client for the lifetime of one connect()
call. paho's network thread (loop_start) owns the socket, the initial
connection attempt and every automatic reconnect; this module turns paho
callbacks into TransportListener events and acknowledgments into Futures.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import paho.mqtt.client as mqtt

from galgo_mqtt.config import BrokerConfig
from galgo_mqtt.errors import NotConnectedError, TransportError
from galgo_mqtt.storage import InboundMessage

logger = logging.getLogger(__name__)

# upper bound on acks parked before their mid is registered
MAX_EARLY_ACKS = 64


@dataclass(frozen=True, slots=True)
class LastWill:
    topic: str
    payload: str
    qos: int = 1
    retain: bool = True


class TransportListener(Protocol):
    def on_transport_connected(self, session_resumed: bool) -> None: ...

    def on_transport_message(self, message: InboundMessage) -> None: ...

    def on_transport_error(self, error: TransportError) -> None: ...

    def on_transport_closed(self, unexpected: bool) -> None: ...


class Transport(Protocol):
    def connect(self) -> None: ...

    def subscribe(self, topic: str, qos: int) -> Future: ...

    def unsubscribe(self, topic: str) -> Future: ...

    def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> Future: ...

    def end(self) -> None: ...


def _failed(exc: BaseException) -> Future:
    fut: Future = Future()
    fut.set_exception(exc)
    return fut


class PahoTransport:
    """
    Transport over one paho.mqtt Client (MQTT 3.1.1, callback API v2).

    Reconnects are paho's: reconnect_delay_set() is pinned to the configured
    interval so every retry waits exactly reconnect_interval_ms.
    """

    def __init__(
        self,
        config: BrokerConfig,
        listener: TransportListener,
        *,
        last_will: Optional[LastWill] = None,
    ) -> None:
        self.config = config
        self._listener = listener
        self._last_will = last_will
        self._client: Optional[mqtt.Client] = None
        self._closing = False

        # mid -> Future for operations awaiting an ack; acks that beat registration
        # are parked in _early_acks until the caller registers the mid. Mids paho
        # handed out for operations already failed locally land in _abandoned so
        # their late acks cannot settle a later operation that reuses the mid.
        self._lock = threading.Lock()
        self._pending: dict[int, Future] = {}
        self._early_acks: dict[int, Optional[BaseException]] = {}
        self._abandoned: set[int] = set()

    def connect(self) -> None:
        endpoint = self.config.endpoint
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            clean_session=self.config.clean_session,
            protocol=mqtt.MQTTv311,
            transport=endpoint.transport,
        )
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if endpoint.tls:
            client.tls_set()
        if endpoint.transport == "websockets" and endpoint.path:
            client.ws_set_options(path=endpoint.path)
        if self._last_will is not None:
            client.will_set(
                self._last_will.topic,
                payload=self._last_will.payload,
                qos=self._last_will.qos,
                retain=self._last_will.retain,
            )

        interval_s = self.config.reconnect_interval_ms / 1000.0
        client.reconnect_delay_set(min_delay=interval_s, max_delay=interval_s)
        client.connect_timeout = self.config.connect_timeout_ms / 1000.0

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe
        client.on_publish = self._on_publish

        logger.info("Connecting to MQTT broker: %s as %s", self.config.address, self.config.client_id)
        # connect_async defers DNS/TCP to the network thread, which also retries on failure
        client.connect_async(endpoint.host, endpoint.port, keepalive=self.config.keepalive_s)
        client.loop_start()
        self._client = client

    def end(self) -> None:
        client = self._client
        if client is None:
            return
        self._closing = True
        try:
            client.disconnect()
            client.loop_stop()
        finally:
            self._client = None
            self._fail_pending(NotConnectedError("MQTT connection closed before acknowledgment"))

    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    # -------------------------
    # Operations
    # -------------------------
    def subscribe(self, topic: str, qos: int) -> Future:
        if self._client is None:
            return _failed(NotConnectedError())
        result, mid = self._client.subscribe(topic, qos=qos)
        return self._track(result, mid, f"subscribe {topic}")

    def unsubscribe(self, topic: str) -> Future:
        if self._client is None:
            return _failed(NotConnectedError())
        result, mid = self._client.unsubscribe(topic)
        return self._track(result, mid, f"unsubscribe {topic}")

    def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> Future:
        if self._client is None:
            return _failed(NotConnectedError())
        info = self._client.publish(topic, payload=payload, qos=qos, retain=retain)
        return self._track(info.rc, info.mid, f"publish {topic}")

    def _track(self, result: int, mid: Optional[int], what: str) -> Future:
        if result != mqtt.MQTT_ERR_SUCCESS or mid is None:
            if mid:
                # paho may still send a queued QoS>0 publish later
                with self._lock:
                    self._abandoned.add(mid)
                    self._early_acks.pop(mid, None)
            if result == mqtt.MQTT_ERR_NO_CONN:
                return _failed(NotConnectedError())
            return _failed(TransportError(f"{what} failed: {mqtt.error_string(result)}"))
        fut: Future = Future()
        with self._lock:
            self._abandoned.discard(mid)
            if mid in self._early_acks:
                error = self._early_acks.pop(mid)
            else:
                self._pending[mid] = fut
                return fut
        _settle(fut, error)
        return fut

    def _ack(self, mid: int, error: Optional[BaseException]) -> None:
        with self._lock:
            fut = self._pending.pop(mid, None)
            if fut is None:
                if mid in self._abandoned:
                    self._abandoned.discard(mid)
                    logger.debug("Dropping ack for abandoned mid %s", mid)
                    return
                if len(self._early_acks) >= MAX_EARLY_ACKS:
                    self._early_acks.pop(next(iter(self._early_acks)))
                self._early_acks[mid] = error
                return
        _settle(fut, error)

    def _fail_pending(self, error: BaseException) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            self._early_acks.clear()
        for fut in pending:
            _settle(fut, error)

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connect failed: %s", reason_code)
            self._listener.on_transport_error(TransportError(f"Connect refused: {reason_code}"))
            return
        session_resumed = bool(getattr(flags, "session_present", False))
        logger.info(
            "Connected to MQTT broker: %s (session present: %s)",
            self.config.address,
            session_resumed,
        )
        self._listener.on_transport_connected(session_resumed)

    def _on_connect_fail(self, client, userdata) -> None:
        logger.warning("MQTT connection attempt to %s failed; retrying", self.config.address)
        self._listener.on_transport_error(
            TransportError(f"Connection attempt to {self.config.address} failed")
        )
        self._listener.on_transport_closed(unexpected=not self._closing)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        unexpected = not self._closing
        if unexpected:
            logger.warning("Unexpected MQTT disconnect: %s", reason_code)
        else:
            logger.info("MQTT connection closed")
        self._fail_pending(NotConnectedError("MQTT connection lost before acknowledgment"))
        self._listener.on_transport_closed(unexpected=unexpected)

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage) -> None:
        self._listener.on_transport_message(
            InboundMessage(
                topic=msg.topic,
                payload=bytes(msg.payload),
                qos=msg.qos,
                retain=bool(msg.retain),
                received_at=datetime.now(timezone.utc),
            )
        )

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        refused = [rc for rc in reason_code_list if rc.is_failure]
        error = TransportError(f"Subscription refused: {refused[0]}") if refused else None
        self._ack(mid, error)

    def _on_unsubscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        refused = [rc for rc in reason_code_list if rc.is_failure]
        error = TransportError(f"Unsubscribe refused: {refused[0]}") if refused else None
        self._ack(mid, error)

    def _on_publish(self, client, userdata, mid, reason_code, properties) -> None:
        error = None
        if reason_code is not None and reason_code.is_failure:
            error = TransportError(f"Publish refused: {reason_code}")
        self._ack(mid, error)


def _settle(fut: Future, error: Optional[BaseException]) -> None:
    if fut.done():
        return
    if error is None:
        fut.set_result(None)
    else:
        fut.set_exception(error)
