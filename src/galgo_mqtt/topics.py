"""
MQTT topic filters and the liveness status payload.

Filters may use '+' (one whole level) and '#' (last whole level only).
Publish topics never contain wildcards.
Status payload: {"status": "online"|"offline", "timestamp": ..., "clientId": ...}
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

_MAX_TOPIC_BYTES = 65535


class TopicFilterError(ValueError):
    """Raised when a topic filter or topic name is malformed."""


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_common(value: str, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicFilterError(f"{what} must be a non-empty string")
    if "\x00" in value:
        raise TopicFilterError(f"{what} must not contain NUL characters")
    if len(value.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise TopicFilterError(f"{what} is longer than {_MAX_TOPIC_BYTES} bytes")
    return value


def validate_topic_filter(topic_filter: str) -> str:
    _validate_common(topic_filter, "topic filter")
    levels = topic_filter.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise TopicFilterError(
                f"topic filter '{topic_filter}' is invalid; '#' must be the last whole level"
            )
        if "+" in level and level != "+":
            raise TopicFilterError(
                f"topic filter '{topic_filter}' is invalid; '+' must occupy a whole level"
            )
    return topic_filter


def validate_topic_name(topic: str) -> str:
    _validate_common(topic, "topic")
    if "+" in topic or "#" in topic:
        raise TopicFilterError(f"topic '{topic}' must not contain wildcards")
    return topic


def topic_matches(topic_filter: str, topic: str) -> bool:
    """
    True if topic is matched by topic_filter under MQTT wildcard rules.
    Filters starting with a wildcard do not match '$'-prefixed topics.
    """
    if topic.startswith("$") and topic_filter[:1] in ("+", "#"):
        return False
    f_levels = topic_filter.split("/")
    t_levels = topic.split("/")
    for i, f in enumerate(f_levels):
        if f == "#":
            return True
        if i >= len(t_levels):
            return False
        if f != "+" and f != t_levels[i]:
            return False
    return len(f_levels) == len(t_levels)


def build_status_payload(status: str, client_id: str) -> str:
    if status not in (STATUS_ONLINE, STATUS_OFFLINE):
        raise ValueError(f"unknown status: {status!r}")
    return json.dumps({
        "status": status,
        "timestamp": _utc_iso(),
        "clientId": client_id,
    })
