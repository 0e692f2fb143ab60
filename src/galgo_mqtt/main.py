"""
Galgo MQTT Core entrypoint.

CLI:
  galgo-mqtt run                         -> connect to the broker and log messages until stopped
  galgo-mqtt topics                      -> list stored topic filters
  galgo-mqtt add-topic FILTER [--qos N]  -> store a topic filter (subscribed on next connect)
  galgo-mqtt remove-topic FILTER         -> delete a stored topic filter
  galgo-mqtt messages [--topic T]        -> print the newest stored messages
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional

from galgo_mqtt.core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

CONNECT_WAIT_S = 5.0


def get_version_string() -> str:
    try:
        return pkg_version("galgo-mqtt-core")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass
class Runtime:
    shutdown: threading.Event
    manager: Optional[object] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _open_storage():
    from galgo_mqtt.config import load_config
    from galgo_mqtt.storage import SQLiteStorage

    cfg = load_config()
    return cfg, SQLiteStorage(cfg.db_path)


def run_service() -> int:
    """
    Runtime mode: open storage, connect, block until SIGINT/SIGTERM, disconnect.
    Returns process exit code.
    """
    from galgo_mqtt.config import ConfigError, load_config
    from galgo_mqtt.connection import ConnectionManager
    from galgo_mqtt.errors import StorageError
    from galgo_mqtt.storage import SQLiteStorage

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    configure_logging(cfg.log_level)

    try:
        storage = SQLiteStorage(cfg.db_path)
        storage.seed_defaults()
    except StorageError as exc:
        logger.error("Storage unavailable: %s", exc)
        return 1

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("Galgo MQTT Core")
    logger.info("Version: %s", get_version_string())
    logger.info("Broker: %s", cfg.broker.address)
    logger.info("Client ID: %s", cfg.broker.client_id)
    logger.info("Database: %s", cfg.db_path)
    logger.info("============================================================")

    manager = ConnectionManager(
        storage,
        status_topic=cfg.status_topic,
        resubscribe_delay_s=cfg.resubscribe_delay_ms / 1000.0,
    )
    rt.manager = manager

    if not manager.connect(cfg.broker):
        logger.error("MQTT connection could not be started")
        manager.close()
        return 1

    if not manager.wait_until_connected(CONNECT_WAIT_S):
        logger.warning(
            "Connection not established after %.0f seconds; retrying in background",
            CONNECT_WAIT_S,
        )

    logger.info("Service running (shutdown via SIGINT/SIGTERM)")

    try:
        while not rt.shutdown.is_set():
            rt.shutdown.wait(0.5)
    finally:
        _shutdown(rt)

    return 0


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")
    if rt.manager:
        try:
            rt.manager.close()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("MQTT disconnected")


def _cmd_topics() -> int:
    _, storage = _open_storage()
    for sub in storage.list_subscriptions():
        flags = []
        if sub.active:
            flags.append("active")
        if sub.retained:
            flags.append("retained")
        print(f"{sub.topic}\tqos={sub.qos}\t{','.join(flags) or '-'}\t{sub.description or ''}")
    return 0


def _cmd_add_topic(args: argparse.Namespace) -> int:
    from galgo_mqtt.errors import DuplicateTopicError
    from galgo_mqtt.storage import Subscription
    from galgo_mqtt.topics import TopicFilterError, validate_topic_filter

    try:
        validate_topic_filter(args.filter)
    except TopicFilterError as exc:
        print(f"error: {exc}")
        return 2
    _, storage = _open_storage()
    try:
        storage.add_subscription(
            Subscription(
                topic=args.filter,
                qos=args.qos,
                retained=args.retained,
                active=not args.inactive,
                description=args.description,
            )
        )
    except DuplicateTopicError as exc:
        print(f"error: {exc}")
        return 1
    print(f"added {args.filter}")
    return 0


def _cmd_remove_topic(args: argparse.Namespace) -> int:
    from galgo_mqtt.errors import TopicNotFoundError

    _, storage = _open_storage()
    try:
        storage.delete_subscription(args.filter)
    except TopicNotFoundError as exc:
        print(f"error: {exc}")
        return 1
    print(f"removed {args.filter}")
    return 0


def _cmd_messages(args: argparse.Namespace) -> int:
    _, storage = _open_storage()
    for msg in storage.list_messages(topic=args.topic, limit=args.limit):
        print(f"{msg.timestamp}\t{msg.topic}\tqos={msg.qos}\t{msg.message}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="galgo-mqtt")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Connect to the broker and run until stopped")
    sub.add_parser("topics", help="List stored topic filters")

    add = sub.add_parser("add-topic", help="Store a topic filter")
    add.add_argument("filter", help="Topic filter, may contain + and #")
    add.add_argument("--qos", type=int, choices=(0, 1, 2), default=0)
    add.add_argument("--retained", action="store_true")
    add.add_argument("--inactive", action="store_true", help="Store without subscribing")
    add.add_argument("--description", default=None)

    rm = sub.add_parser("remove-topic", help="Delete a stored topic filter")
    rm.add_argument("filter")

    msgs = sub.add_parser("messages", help="Print the newest stored messages")
    msgs.add_argument("--topic", default=None, help="Only messages on this exact topic")
    msgs.add_argument("--limit", type=int, default=50)

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_service())
    if args.cmd == "topics":
        raise SystemExit(_cmd_topics())
    if args.cmd == "add-topic":
        raise SystemExit(_cmd_add_topic(args))
    if args.cmd == "remove-topic":
        raise SystemExit(_cmd_remove_topic(args))
    if args.cmd == "messages":
        raise SystemExit(_cmd_messages(args))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
