"""Object store implementations."""

from gastown.operator.store.base import (
    AlreadyExistsError,
    ConflictError,
    EventType,
    ObjectNotFoundError,
    ObjectStore,
    WatchEvent,
)
from gastown.operator.store.memory import InMemoryObjectStore

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "EventType",
    "InMemoryObjectStore",
    "ObjectNotFoundError",
    "ObjectStore",
    "WatchEvent",
]
