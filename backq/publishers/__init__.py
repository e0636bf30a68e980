"""Publishers enqueue messages for workers."""

from .base import (
    ProcessPublisher,
    Publisher,
    QueuePublisher,
    SerializedPublisher,
    resolve_publisher,
)

__all__ = [
    "ProcessPublisher",
    "Publisher",
    "QueuePublisher",
    "SerializedPublisher",
    "resolve_publisher",
]
