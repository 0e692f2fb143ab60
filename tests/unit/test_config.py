from __future__ import annotations

import pytest

from galgo_mqtt.config import BrokerConfig, ConfigError, load_config, parse_address

KEYS = [
    "MQTT_BROKER",
    "MQTT_CLIENT_ID",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_CONNECT_TIMEOUT_MS",
    "MQTT_RECONNECT_PERIOD_MS",
    "MQTT_KEEPALIVE",
    "MQTT_CLEAN_SESSION",
    "MQTT_STATUS_TOPIC",
    "MQTT_RESUBSCRIBE_DELAY_MS",
    "GALGO_DB_PATH",
    "GALGO_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in KEYS:
        monkeypatch.delenv(k, raising=False)


def test_defaults_when_env_is_empty():
    cfg = load_config(dotenv_enabled=False)

    assert cfg.broker.address == "mqtt://localhost:1883"
    assert cfg.broker.client_id == "galgo-school-server"
    assert cfg.broker.username is None
    assert cfg.broker.password is None
    assert cfg.broker.connect_timeout_ms == 4000
    assert cfg.broker.reconnect_interval_ms == 1000
    assert cfg.broker.keepalive_s == 60
    assert cfg.broker.clean_session is True
    assert cfg.status_topic == "galgo/status"
    assert cfg.resubscribe_delay_ms == 1000
    assert cfg.db_path == "data/galgo.db"
    assert cfg.log_level is None
    assert cfg.version


def test_valid_env_loads(mock_env, monkeypatch):
    monkeypatch.setenv("MQTT_CONNECT_TIMEOUT_MS", "10000")
    monkeypatch.setenv("MQTT_RECONNECT_PERIOD_MS", "5000")
    monkeypatch.setenv("MQTT_CLEAN_SESSION", "false")
    monkeypatch.setenv("MQTT_RESUBSCRIBE_DELAY_MS", "0")

    cfg = load_config(dotenv_enabled=False)

    assert cfg.broker.address == "mqtt://test.mqtt.local:1883"
    assert cfg.broker.client_id == "galgo-test"
    assert cfg.broker.username == "admin"
    assert cfg.broker.password == "secret"
    assert cfg.broker.connect_timeout_ms == 10000
    assert cfg.broker.reconnect_interval_ms == 5000
    assert cfg.broker.clean_session is False
    assert cfg.resubscribe_delay_ms == 0
    assert cfg.db_path == mock_env["GALGO_DB_PATH"]


def test_client_id_is_stable_across_loads():
    a = load_config(dotenv_enabled=False)
    b = load_config(dotenv_enabled=False)
    assert a.broker.client_id == b.broker.client_id


def test_password_not_in_repr(mock_env):
    cfg = load_config(dotenv_enabled=False)
    assert "secret" not in repr(cfg.broker)


def test_invalid_integer_raises(monkeypatch):
    monkeypatch.setenv("MQTT_KEEPALIVE", "soon")
    with pytest.raises(ConfigError) as exc:
        load_config(dotenv_enabled=False)
    assert "Invalid integer for MQTT_KEEPALIVE" in str(exc.value)


def test_zero_reconnect_period_raises(monkeypatch):
    monkeypatch.setenv("MQTT_RECONNECT_PERIOD_MS", "0")
    with pytest.raises(ConfigError) as exc:
        load_config(dotenv_enabled=False)
    assert "MQTT_RECONNECT_PERIOD_MS must be >= 1" in str(exc.value)


def test_invalid_boolean_raises(monkeypatch):
    monkeypatch.setenv("MQTT_CLEAN_SESSION", "perhaps")
    with pytest.raises(ConfigError):
        load_config(dotenv_enabled=False)


def test_wildcard_status_topic_raises(monkeypatch):
    monkeypatch.setenv("MQTT_STATUS_TOPIC", "galgo/#")
    with pytest.raises(ConfigError):
        load_config(dotenv_enabled=False)


def test_dotenv_file_fills_missing_values(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    (tmp_path / ".env").write_text("MQTT_CLIENT_ID=from-dotenv\nMQTT_BROKER=mqtt://dotenv:1884\n")
    monkeypatch.setenv("MQTT_BROKER", "mqtt://process:1883")
    # register MQTT_CLIENT_ID for cleanup; load_dotenv writes it into os.environ
    monkeypatch.setenv("MQTT_CLIENT_ID", "placeholder")
    monkeypatch.delenv("MQTT_CLIENT_ID")

    cfg = load_config()

    assert cfg.broker.client_id == "from-dotenv"
    # process environment wins over env files
    assert cfg.broker.address == "mqtt://process:1883"


@pytest.mark.parametrize(
    "address,host,port,tls,transport",
    [
        ("mqtt://broker:1883", "broker", 1883, False, "tcp"),
        ("mqtt://broker", "broker", 1883, False, "tcp"),
        ("tcp://10.0.0.5:1999", "10.0.0.5", 1999, False, "tcp"),
        ("mqtts://broker", "broker", 8883, True, "tcp"),
        ("ssl://broker:8884", "broker", 8884, True, "tcp"),
        ("ws://broker:9001", "broker", 9001, False, "websockets"),
        ("wss://broker", "broker", 443, True, "websockets"),
    ],
)
def test_parse_address(address, host, port, tls, transport):
    ep = parse_address(address)
    assert (ep.host, ep.port, ep.tls, ep.transport) == (host, port, tls, transport)


@pytest.mark.parametrize(
    "address",
    ["", "broker:1883", "http://broker:80", "mqtt://:1883", "mqtt://broker:0", "mqtt://broker:70000", "mqtt://broker:abc"],
)
def test_parse_address_rejects(address):
    with pytest.raises(ConfigError):
        parse_address(address)


def test_broker_config_validates_on_construction():
    with pytest.raises(ConfigError):
        BrokerConfig(address="mqtt://broker:1883", client_id="  ")
    with pytest.raises(ConfigError):
        BrokerConfig(address="mqtt://broker:1883", connect_timeout_ms=0)
    with pytest.raises(ConfigError):
        BrokerConfig(address="nonsense")
