"""
Pytest configuration and shared fixtures
"""
import os
import sys
from concurrent.futures import Future

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from galgo_mqtt.config import BrokerConfig  # noqa: E402
from galgo_mqtt.errors import DuplicateTopicError, TopicNotFoundError  # noqa: E402
from galgo_mqtt.storage import Subscription  # noqa: E402


class FakeTransport:
    """Transport double: records every call, acks immediately unless auto_ack is False."""

    def __init__(self, config, listener, *, last_will=None, auto_ack=True):
        self.config = config
        self.listener = listener
        self.last_will = last_will
        self.auto_ack = auto_ack
        self.connect_calls = 0
        self.ended = False
        self.calls = []  # ordered: ("subscribe", topic, qos) / ("unsubscribe", topic) / ("publish", ...) / ("end",)
        self.pending = []
        self.fail_publish = False

    def _future(self, error=None):
        fut = Future()
        if error is not None:
            fut.set_exception(error)
        elif self.auto_ack:
            fut.set_result(None)
        else:
            self.pending.append(fut)
        return fut

    def connect(self):
        self.connect_calls += 1

    def subscribe(self, topic, qos):
        self.calls.append(("subscribe", topic, qos))
        return self._future()

    def unsubscribe(self, topic):
        self.calls.append(("unsubscribe", topic))
        return self._future()

    def publish(self, topic, payload, qos=0, retain=False):
        self.calls.append(("publish", topic, payload, qos, retain))
        if self.fail_publish:
            raise RuntimeError("socket gone")
        return self._future()

    def end(self):
        self.ended = True
        self.calls.append(("end",))

    # test helpers
    @property
    def subscribes(self):
        return [c for c in self.calls if c[0] == "subscribe"]

    @property
    def unsubscribes(self):
        return [c for c in self.calls if c[0] == "unsubscribe"]

    @property
    def publishes(self):
        return [c for c in self.calls if c[0] == "publish"]

    def emit_connected(self, session_resumed=False):
        self.listener.on_transport_connected(session_resumed)

    def emit_message(self, message):
        self.listener.on_transport_message(message)

    def emit_error(self, error):
        self.listener.on_transport_error(error)

    def emit_closed(self, unexpected=True):
        self.listener.on_transport_closed(unexpected)


class FakeTransportFactory:
    def __init__(self):
        self.created = []
        self.auto_ack = True

    def __call__(self, config, listener, *, last_will=None):
        t = FakeTransport(config, listener, last_will=last_will, auto_ack=self.auto_ack)
        self.created.append(t)
        return t

    @property
    def last(self):
        return self.created[-1]

    @property
    def connection_attempts(self):
        return sum(t.connect_calls for t in self.created)


class InMemoryStorage:
    """Storage double keeping topics in a dict and messages in a list."""

    def __init__(self, subscriptions=()):
        self.topics = {s.topic: s for s in subscriptions}
        self.appended = []
        self.fail_appends = False
        self.fail_listing = False

    def list_active_subscriptions(self):
        if self.fail_listing:
            raise RuntimeError("database is locked")
        return [s for s in self.topics.values() if s.active]

    def append_message(self, topic, payload, qos, retain, timestamp):
        if self.fail_appends:
            raise RuntimeError("disk full")
        self.appended.append((topic, payload, qos, retain, timestamp))

    def add_subscription(self, sub):
        if sub.topic in self.topics:
            raise DuplicateTopicError(f"Topic already exists: {sub.topic}")
        self.topics[sub.topic] = sub
        return sub

    def update_subscription(self, topic, *, active=None, **kwargs):
        if topic not in self.topics:
            raise TopicNotFoundError(f"Topic not found: {topic}")
        cur = self.topics[topic]
        new = Subscription(
            topic=topic,
            qos=cur.qos,
            retained=cur.retained,
            active=cur.active if active is None else active,
            description=cur.description,
        )
        self.topics[topic] = new
        return new

    def delete_subscription(self, topic):
        if topic not in self.topics:
            raise TopicNotFoundError(f"Topic not found: {topic}")
        return self.topics.pop(topic)


class FakeExecutor:
    """Runs submitted work inline so storage writes are observable immediately."""

    def __init__(self, *a, **k):
        self.submitted = 0

    def submit(self, fn, *args):
        self.submitted += 1
        fn(*args)

    def shutdown(self, *a, **k):
        pass


@pytest.fixture
def sync_executor(monkeypatch):
    monkeypatch.setattr("galgo_mqtt.connection.ThreadPoolExecutor", FakeExecutor)


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def default_subscriptions():
    return [
        Subscription(topic="sensors/+/+", qos=0, active=True),
        Subscription(topic="galgo/status", qos=1, retained=True, active=True),
        Subscription(topic="galgo/commands", qos=1, active=False),
    ]


@pytest.fixture
def storage(default_subscriptions):
    return InMemoryStorage(default_subscriptions)


@pytest.fixture
def broker_config():
    return BrokerConfig(address="mqtt://broker:1883", client_id="fixed-1")


@pytest.fixture
def mock_env(monkeypatch, tmp_path):
    """Set up mock environment variables"""
    env_vars = {
        'MQTT_BROKER': 'mqtt://test.mqtt.local:1883',
        'MQTT_CLIENT_ID': 'galgo-test',
        'MQTT_USERNAME': 'admin',
        'MQTT_PASSWORD': 'secret',
        'GALGO_DB_PATH': str(tmp_path / 'galgo.db'),
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def make_storage():
    return InMemoryStorage


@pytest.fixture
def manager(storage, transport_factory, sync_executor):
    from galgo_mqtt.connection import ConnectionManager

    m = ConnectionManager(
        storage,
        transport_factory,
        status_topic="galgo/status",
        resubscribe_delay_s=0,
    )
    yield m
    m.close()
