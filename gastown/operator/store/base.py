"""Object store interface.

The operator never owns durable state.  Every resource lives in an external
declarative-object store reached through get/list/create/update/delete and
a change-event stream.  Controllers depend only on this protocol so the
reconcile logic can be exercised against the in-memory implementation.

Semantics the controllers rely on:

- ``update`` writes ``metadata`` and ``spec``; ``update_status`` writes only
  ``status``.  Both reject a stale ``resourceVersion`` with ``ConflictError``.
- ``delete`` of an object that still carries finalizers only stamps
  ``deletionTimestamp``.  The object disappears once an ``update`` removes
  its last finalizer.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, TypeVar, runtime_checkable

from gastown.operator.models.meta import Resource

R = TypeVar("R", bound=Resource)


class ObjectNotFoundError(LookupError):
    """Raised when an object does not exist."""


class AlreadyExistsError(ValueError):
    """Raised by ``create`` when an object with the same name exists."""


class ConflictError(ValueError):
    """Raised when a write carries a stale ``resourceVersion``."""


class EventType(StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    obj: Resource


@runtime_checkable
class ObjectStore(Protocol):
    async def get(self, cls: type[R], name: str, namespace: str | None = None) -> R:
        """Return a copy of the object.  Raises ``ObjectNotFoundError``."""
        ...

    async def list(
        self,
        cls: type[R],
        *,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[R]:
        """List objects of one kind, optionally filtered by namespace and labels."""
        ...

    async def create(self, obj: R) -> R:
        """Create an object.  Raises ``AlreadyExistsError``."""
        ...

    async def update(self, obj: R) -> R:
        """Write metadata and spec.  Raises ``ConflictError`` / ``ObjectNotFoundError``."""
        ...

    async def update_status(self, obj: R) -> R:
        """Write status only.  Raises ``ConflictError`` / ``ObjectNotFoundError``."""
        ...

    async def delete(self, cls: type[R], name: str, namespace: str | None = None) -> None:
        """Request deletion.  Raises ``ObjectNotFoundError``."""
        ...

    def watch(self) -> AsyncIterator[WatchEvent]:
        """Stream change events for every kind until the consumer stops iterating."""
        ...
