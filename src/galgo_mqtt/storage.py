"""
Persistent topic table and message log.

SQLite file with two tables:
    mqtt_topics    one row per topic filter (qos, retained, active flags)
    mqtt_messages  append-only log of every inbound message

A fresh connection is opened per call, so the store can be used from the paho
network thread, the storage worker and the CLI at the same time. Each call is
a single statement and relies on SQLite's own atomicity.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Protocol

from galgo_mqtt.errors import DuplicateTopicError, StorageError, TopicNotFoundError

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS mqtt_topics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        topic TEXT NOT NULL UNIQUE,
        description TEXT,
        qos INTEGER DEFAULT 0,
        retained BOOLEAN DEFAULT 0,
        active BOOLEAN DEFAULT 1,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mqtt_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        topic TEXT NOT NULL,
        message TEXT,
        qos INTEGER,
        retain BOOLEAN,
        timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_mqtt_messages_topic ON mqtt_messages (topic)",
)

DEFAULT_TOPICS = (
    ("sensors/+/+", "All sensor readings", 0, False),
    ("galgo/status", "Galgo system status", 1, True),
    ("galgo/commands", "Commands for the Galgo system", 1, False),
)


@dataclass(frozen=True, slots=True)
class Subscription:
    topic: str
    qos: int = 0
    retained: bool = False
    active: bool = True
    description: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes
    qos: int
    retain: bool
    received_at: datetime

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class StoredMessage:
    id: int
    topic: str
    message: str
    qos: int
    retain: bool
    timestamp: str


class Storage(Protocol):
    """
    What the connection manager needs from persistence. Only the first two
    methods are used on the connection path; the rest back add_topic and friends.
    """

    def list_active_subscriptions(self) -> list[Subscription]: ...

    def append_message(
        self, topic: str, payload: str, qos: int, retain: bool, timestamp: datetime
    ) -> None: ...

    def add_subscription(self, sub: Subscription) -> Subscription: ...

    def update_subscription(self, topic: str, *, active: Optional[bool] = None) -> Subscription: ...

    def delete_subscription(self, topic: str) -> Subscription: ...


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        topic=row["topic"],
        qos=int(row["qos"] or 0),
        retained=bool(row["retained"]),
        active=bool(row["active"]),
        description=row["description"],
        id=row["id"],
    )


class SQLiteStorage:
    """
    SQLite-backed Storage. Creates the parent directory and the schema on init.
    All sqlite3 errors surface as StorageError.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                for stmt in _SCHEMA:
                    conn.execute(stmt)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Failed to initialise database {self.path}: {exc}") from exc

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(str(self.path), timeout=5.0)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def seed_defaults(self) -> int:
        """Insert the default topics if the table is empty. Returns rows inserted."""
        try:
            with self._connect() as conn:
                count = conn.execute("SELECT COUNT(*) FROM mqtt_topics").fetchone()[0]
                if count:
                    return 0
                conn.executemany(
                    "INSERT INTO mqtt_topics (topic, description, qos, retained) VALUES (?, ?, ?, ?)",
                    DEFAULT_TOPICS,
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to seed default topics: {exc}") from exc
        logger.info("Inserted %d default topics", len(DEFAULT_TOPICS))
        return len(DEFAULT_TOPICS)

    # -------------------------
    # Topic table
    # -------------------------
    def list_subscriptions(self) -> list[Subscription]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM mqtt_topics ORDER BY created_at DESC, id DESC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list topics: {exc}") from exc
        return [_row_to_subscription(r) for r in rows]

    def list_active_subscriptions(self) -> list[Subscription]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM mqtt_topics WHERE active = 1 ORDER BY id"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list active topics: {exc}") from exc
        return [_row_to_subscription(r) for r in rows]

    def get_subscription(self, topic: str) -> Optional[Subscription]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM mqtt_topics WHERE topic = ?", (topic,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read topic {topic}: {exc}") from exc
        return _row_to_subscription(row) if row else None

    def add_subscription(self, sub: Subscription) -> Subscription:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "INSERT INTO mqtt_topics (topic, description, qos, retained, active) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (sub.topic, sub.description, sub.qos, sub.retained, sub.active),
                )
                new_id = cur.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateTopicError(f"Topic already exists: {sub.topic}") from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to add topic {sub.topic}: {exc}") from exc
        return Subscription(
            topic=sub.topic,
            qos=sub.qos,
            retained=sub.retained,
            active=sub.active,
            description=sub.description,
            id=new_id,
        )

    def update_subscription(
        self,
        topic: str,
        *,
        qos: Optional[int] = None,
        retained: Optional[bool] = None,
        active: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> Subscription:
        """Update the given fields of a stored topic. Raises TopicNotFoundError."""
        fields = {
            "qos": qos,
            "retained": retained,
            "active": active,
            "description": description,
        }
        updates = {k: v for k, v in fields.items() if v is not None}
        assignments = "".join(f"{k} = ?, " for k in updates)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"UPDATE mqtt_topics SET {assignments}updated_at = CURRENT_TIMESTAMP "
                    "WHERE topic = ?",
                    (*updates.values(), topic),
                )
                if cur.rowcount == 0:
                    raise TopicNotFoundError(f"Topic not found: {topic}")
                row = conn.execute(
                    "SELECT * FROM mqtt_topics WHERE topic = ?", (topic,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to update topic {topic}: {exc}") from exc
        return _row_to_subscription(row)

    def delete_subscription(self, topic: str) -> Subscription:
        """Delete a stored topic and return what was deleted. Raises TopicNotFoundError."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM mqtt_topics WHERE topic = ?", (topic,)
                ).fetchone()
                if row is None:
                    raise TopicNotFoundError(f"Topic not found: {topic}")
                conn.execute("DELETE FROM mqtt_topics WHERE id = ?", (row["id"],))
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete topic {topic}: {exc}") from exc
        return _row_to_subscription(row)

    # -------------------------
    # Message log
    # -------------------------
    def append_message(
        self, topic: str, payload: str, qos: int, retain: bool, timestamp: datetime
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO mqtt_messages (topic, message, qos, retain, timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (topic, payload, qos, retain, timestamp.astimezone(timezone.utc).isoformat()),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to store message on {topic}: {exc}") from exc

    def list_messages(self, topic: Optional[str] = None, limit: int = 50) -> list[StoredMessage]:
        """Newest first, optionally restricted to one exact topic."""
        query = "SELECT * FROM mqtt_messages"
        params: list = []
        if topic:
            query += " WHERE topic = ?"
            params.append(topic)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(max(0, int(limit)))
        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list messages: {exc}") from exc
        return [
            StoredMessage(
                id=r["id"],
                topic=r["topic"],
                message=r["message"],
                qos=int(r["qos"] or 0),
                retain=bool(r["retain"]),
                timestamp=r["timestamp"],
            )
            for r in rows
        ]
