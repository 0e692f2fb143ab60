"""
Error taxonomy for the connection manager.

NotConnectedError is the only error returned to direct callers of
subscribe/unsubscribe/publish. TransportError and StorageError are logged and
handed to error listeners; they never break MQTT delivery.
"""

from __future__ import annotations


class GalgoMQTTError(RuntimeError):
    """Base class for connection-manager errors."""


class NotConnectedError(GalgoMQTTError):
    """Raised when an operation needs an active broker session and there is none."""

    def __init__(self, message: str = "MQTT client not connected") -> None:
        super().__init__(message)


class TransportError(GalgoMQTTError):
    """DNS, auth or network failure reported by the broker transport."""


class StorageError(GalgoMQTTError):
    """Raised when the topic table or message log cannot be read or written."""


class DuplicateTopicError(StorageError):
    """Raised when adding a topic filter that is already stored."""


class TopicNotFoundError(StorageError):
    """Raised when updating or deleting a topic filter that is not stored."""
