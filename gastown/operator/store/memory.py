"""In-memory object store.

Reference implementation of ``ObjectStore`` used by tests, ``gastown run``
without a cluster, and local development.  Objects are held as deep copies
so callers can never mutate stored state without a write.

Deleting an object also deletes its dependents (objects whose
``ownerReferences`` carry its uid), mirroring background garbage
collection in a cluster.

The store can be seeded from a directory of JSON manifests::

    store = InMemoryObjectStore()
    await store.load_manifests("deploy/manifests")

Each file may hold a single object, a JSON list, or a ``{"items": [...]}``
list document.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger

from gastown.operator.models import parse_resource
from gastown.operator.models.meta import Resource, object_key, utcnow
from gastown.operator.store.base import (
    AlreadyExistsError,
    ConflictError,
    EventType,
    ObjectNotFoundError,
    R,
    WatchEvent,
)

DEFAULT_NAMESPACE = "default"


class InMemoryObjectStore:
    """Dict-backed implementation of the ObjectStore protocol."""

    def __init__(self) -> None:
        self._objects: dict[str, Resource] = {}
        self._version = 0
        self._watchers: set[asyncio.Queue[WatchEvent]] = set()

    # -- Keys ------------------------------------------------------------------

    @staticmethod
    def _key(cls: type[Resource], name: str, namespace: str | None) -> str:
        kind = cls.model_fields["kind"].default
        if not cls.namespaced:
            namespace = None
        elif namespace is None:
            namespace = DEFAULT_NAMESPACE
        return object_key(kind, name, namespace)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _lookup(self, cls: type[Resource], name: str, namespace: str | None) -> Resource:
        stored = self._objects.get(self._key(cls, name, namespace))
        if stored is None:
            kind = cls.model_fields["kind"].default
            msg = f'{kind} "{name}" not found'
            raise ObjectNotFoundError(msg)
        return stored

    def _check_version(self, obj: Resource, stored: Resource) -> None:
        incoming = obj.metadata.resource_version
        if incoming is not None and incoming != stored.metadata.resource_version:
            msg = (
                f"{obj.kind} {obj.name!r}: resourceVersion {incoming} is stale "
                f"(current {stored.metadata.resource_version})"
            )
            raise ConflictError(msg)

    # -- Read ------------------------------------------------------------------

    async def get(self, cls: type[R], name: str, namespace: str | None = None) -> R:
        return self._lookup(cls, name, namespace).model_copy(deep=True)  # type: ignore[return-value]

    async def list(
        self,
        cls: type[R],
        *,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[R]:
        kind = cls.model_fields["kind"].default
        result: list[R] = []
        for stored in self._objects.values():
            if stored.kind != kind:
                continue
            if namespace is not None and cls.namespaced and stored.namespace != namespace:
                continue
            if labels and any(stored.metadata.labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(stored.model_copy(deep=True))  # type: ignore[arg-type]
        result.sort(key=lambda o: o.key)
        return result

    # -- Write -----------------------------------------------------------------

    async def create(self, obj: R) -> R:
        stored = obj.model_copy(deep=True)
        meta = stored.metadata
        if not type(stored).namespaced:
            meta.namespace = None
        elif meta.namespace is None:
            meta.namespace = DEFAULT_NAMESPACE

        key = stored.key
        if key in self._objects:
            msg = f'{stored.kind} "{stored.name}" already exists'
            raise AlreadyExistsError(msg)

        meta.uid = meta.uid or str(uuid.uuid4())
        meta.generation = 1
        meta.creation_timestamp = utcnow()
        meta.deletion_timestamp = None
        meta.resource_version = self._next_version()
        self._objects[key] = stored
        self._emit(EventType.ADDED, stored)
        return stored.model_copy(deep=True)

    async def update(self, obj: R) -> R:
        stored = self._lookup(type(obj), obj.name, obj.namespace)
        self._check_version(obj, stored)

        updated = stored.model_copy(deep=True)
        incoming = obj.metadata
        updated.metadata.labels = dict(incoming.labels)
        updated.metadata.annotations = dict(incoming.annotations)
        updated.metadata.finalizers = list(incoming.finalizers)
        updated.metadata.owner_references = [ref.model_copy() for ref in incoming.owner_references]

        for field in _spec_fields(obj):
            old, new = getattr(stored, field), getattr(obj, field)
            if old != new:
                setattr(updated, field, _copy(new))
                if field == "spec":
                    updated.metadata.generation += 1

        return self._commit(updated)

    async def update_status(self, obj: R) -> R:
        stored = self._lookup(type(obj), obj.name, obj.namespace)
        self._check_version(obj, stored)
        if "status" not in type(obj).model_fields:
            return stored.model_copy(deep=True)  # type: ignore[return-value]

        updated = stored.model_copy(deep=True)
        updated.status = obj.status.model_copy(deep=True)  # type: ignore[attr-defined]
        return self._commit(updated)

    async def delete(self, cls: type[R], name: str, namespace: str | None = None) -> None:
        stored = self._lookup(cls, name, namespace)
        if stored.metadata.finalizers:
            if stored.metadata.deletion_timestamp is None:
                updated = stored.model_copy(deep=True)
                updated.metadata.deletion_timestamp = utcnow()
                self._commit(updated)
            return
        self._remove(stored)

    def _commit(self, updated: Resource) -> Any:
        # A deleting object is released once its last finalizer is gone
        if updated.metadata.deletion_timestamp is not None and not updated.metadata.finalizers:
            self._remove(updated)
            return updated.model_copy(deep=True)

        updated.metadata.resource_version = self._next_version()
        self._objects[updated.key] = updated
        self._emit(EventType.MODIFIED, updated)
        return updated.model_copy(deep=True)

    def _remove(self, obj: Resource) -> None:
        removed = self._objects.pop(obj.key, None)
        if removed is None:
            return
        self._emit(EventType.DELETED, removed)

        uid = removed.metadata.uid
        dependents = [
            o for o in self._objects.values() if any(ref.uid == uid for ref in o.metadata.owner_references)
        ]
        for dependent in dependents:
            logger.debug("Store: collecting {} owned by {}", dependent.key, removed.key)
            if dependent.metadata.finalizers:
                if dependent.metadata.deletion_timestamp is None:
                    updated = dependent.model_copy(deep=True)
                    updated.metadata.deletion_timestamp = utcnow()
                    self._commit(updated)
            else:
                self._remove(dependent)

    # -- Watch -----------------------------------------------------------------

    def _emit(self, event_type: EventType, obj: Resource) -> None:
        if not self._watchers:
            return
        event = WatchEvent(type=event_type, obj=obj.model_copy(deep=True))
        for queue in self._watchers:
            queue.put_nowait(event)

    async def watch(self) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        self._watchers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)

    # -- Seeding ---------------------------------------------------------------

    async def load_manifests(self, directory: str | Path) -> int:
        """Create every object found in ``*.json`` files under ``directory``.

        Objects that already exist are left untouched.  Returns the number of
        objects created.
        """
        documents = await to_thread.run_sync(partial(_read_manifests, Path(directory)))
        created = 0
        for path, data in documents:
            try:
                obj = parse_resource(data)
            except ValueError as exc:
                logger.warning("Manifests: skipping invalid object in {}: {}", path, exc)
                continue
            try:
                await self.create(obj)
            except AlreadyExistsError:
                logger.debug("Manifests: {} already exists", obj.key)
                continue
            created += 1
        logger.info("Manifests: loaded {} objects from {}", created, directory)
        return created


# -- Helpers -------------------------------------------------------------------


def _spec_fields(obj: Resource) -> list[str]:
    """Top-level fields written by ``update``: everything except the envelope and status."""
    skip = {"api_version", "kind", "metadata", "status"}
    return [name for name in type(obj).model_fields if name not in skip]


def _copy(value: Any) -> Any:
    if hasattr(value, "model_copy"):
        return value.model_copy(deep=True)
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        return list(value)
    return value


def _read_manifests(directory: Path) -> list[tuple[Path, dict[str, Any]]]:
    """Read manifest documents (runs in a worker thread)."""
    documents: list[tuple[Path, dict[str, Any]]] = []
    for path in sorted(directory.glob("*.json")):
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            data = data["items"]
        items = data if isinstance(data, list) else [data]
        documents.extend((path, item) for item in items if isinstance(item, dict))
    return documents
