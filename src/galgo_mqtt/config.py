"""
Galgo MQTT Core configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/galgo/mqtt-core.env (system install)
2) ~/.config/galgo-mqtt-core/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlsplit

DEFAULT_BROKER = "mqtt://localhost:1883"
DEFAULT_CLIENT_ID = "galgo-school-server"
DEFAULT_STATUS_TOPIC = "galgo/status"
DEFAULT_DB_PATH = "data/galgo.db"

# scheme -> (default port, tls, paho transport)
_SCHEMES = {
    "mqtt": (1883, False, "tcp"),
    "tcp": (1883, False, "tcp"),
    "mqtts": (8883, True, "tcp"),
    "ssl": (8883, True, "tcp"),
    "ws": (80, False, "websockets"),
    "wss": (443, True, "websockets"),
}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _package_version() -> str:
    try:
        return _pkg_version("galgo-mqtt-core")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/galgo/mqtt-core.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "galgo-mqtt-core" / ".env"

    # 3) project override
    yield Path(".env")


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _env_int(key: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    value = _parse_int(key, raw.strip())
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    raw = raw.strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    scheme: str
    host: str
    port: int
    tls: bool
    transport: str  # "tcp" or "websockets"
    path: str = ""


def parse_address(address: str) -> BrokerAddress:
    """
    Split scheme://host:port into its parts, filling in the scheme's default port.
    Raises ConfigError for unknown schemes, a missing host or a port out of range.
    """
    if not isinstance(address, str) or not address.strip():
        raise ConfigError("Broker address must be a non-empty string")
    parts = urlsplit(address.strip())
    scheme = parts.scheme.lower()
    if scheme not in _SCHEMES:
        raise ConfigError(
            f"Unsupported broker scheme in {address!r}; allowed: {', '.join(sorted(_SCHEMES))}"
        )
    if not parts.hostname:
        raise ConfigError(f"Broker address has no host: {address!r}")
    default_port, tls, transport = _SCHEMES[scheme]
    try:
        port = parts.port if parts.port is not None else default_port
    except ValueError as exc:
        raise ConfigError(f"Invalid port in broker address: {address!r}") from exc
    if not (1 <= port <= 65535):
        raise ConfigError(f"Broker port out of range: {port}")
    return BrokerAddress(
        scheme=scheme,
        host=parts.hostname,
        port=port,
        tls=tls,
        transport=transport,
        path=parts.path if transport == "websockets" else "",
    )


@dataclass(frozen=True, slots=True)
class BrokerConfig:
    """
    Everything needed to open one broker session.

    client_id is fixed (never regenerated per process) so a new connection
    evicts the broker's session for the previous one instead of piling up.
    """

    address: str
    client_id: str = DEFAULT_CLIENT_ID
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    connect_timeout_ms: int = 4000
    reconnect_interval_ms: int = 1000
    keepalive_s: int = 60
    clean_session: bool = True

    def __post_init__(self) -> None:
        parse_address(self.address)
        if not isinstance(self.client_id, str) or not self.client_id.strip():
            raise ConfigError("client_id must be a non-empty string")
        if self.connect_timeout_ms <= 0:
            raise ConfigError("connect_timeout_ms must be > 0")
        if self.reconnect_interval_ms <= 0:
            raise ConfigError("reconnect_interval_ms must be > 0")
        if self.keepalive_s < 0:
            raise ConfigError("keepalive_s must be >= 0")

    @property
    def endpoint(self) -> BrokerAddress:
        return parse_address(self.address)


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    broker: BrokerConfig
    status_topic: str
    resubscribe_delay_ms: int
    db_path: str
    log_level: Optional[str]
    version: str


def load_config(*, dotenv_enabled: bool = True) -> ServiceConfig:
    """
    Load config by reading env files (if python-dotenv is installed) and then
    validating environment variables. Every variable has a default.

    Returns an immutable ServiceConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        try:
            from dotenv import load_dotenv  # type: ignore
        except Exception:
            load_dotenv = None  # type: ignore

        if load_dotenv is not None:
            for p in _env_paths():
                if p.is_file():
                    # do not override existing env vars; later files can fill missing
                    load_dotenv(p, override=False)

    broker = BrokerConfig(
        address=os.getenv("MQTT_BROKER") or DEFAULT_BROKER,
        client_id=os.getenv("MQTT_CLIENT_ID") or DEFAULT_CLIENT_ID,
        username=os.getenv("MQTT_USERNAME") or None,
        password=os.getenv("MQTT_PASSWORD") or None,
        connect_timeout_ms=_env_int("MQTT_CONNECT_TIMEOUT_MS", 4000, minimum=1),
        reconnect_interval_ms=_env_int("MQTT_RECONNECT_PERIOD_MS", 1000, minimum=1),
        keepalive_s=_env_int("MQTT_KEEPALIVE", 60),
        clean_session=_env_bool("MQTT_CLEAN_SESSION", True),
    )

    status_topic = os.getenv("MQTT_STATUS_TOPIC") or DEFAULT_STATUS_TOPIC
    if "+" in status_topic or "#" in status_topic:
        raise ConfigError(f"MQTT_STATUS_TOPIC must not contain wildcards: {status_topic!r}")

    return ServiceConfig(
        broker=broker,
        status_topic=status_topic,
        resubscribe_delay_ms=_env_int("MQTT_RESUBSCRIBE_DELAY_MS", 1000),
        db_path=os.getenv("GALGO_DB_PATH") or DEFAULT_DB_PATH,
        log_level=os.getenv("GALGO_LOG_LEVEL") or None,
        version=_package_version(),
    )
