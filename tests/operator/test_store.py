"""Tests for InMemoryObjectStore: versions, finalizers, cascade and watch."""

from __future__ import annotations

import asyncio
import json

import pytest

from gastown.operator.models import HealthMonitor, Worker, Workspace
from gastown.operator.store.base import (
    AlreadyExistsError,
    ConflictError,
    EventType,
    ObjectNotFoundError,
)
from gastown.operator.store.memory import InMemoryObjectStore
from tests.factories import make_monitor, make_worker, make_workspace


async def test_create_and_get(store: InMemoryObjectStore) -> None:
    created = await store.create(make_worker())

    assert created.namespace == "default"
    assert created.metadata.uid
    assert created.metadata.generation == 1
    assert created.metadata.resource_version is not None

    fetched = await store.get(Worker, "toast")
    assert fetched.key == "Polecat/default/toast"
    assert fetched.spec.rig == "demo"


async def test_cluster_scoped_kind_has_no_namespace(store: InMemoryObjectStore) -> None:
    ws = make_workspace()
    ws.metadata.namespace = "ignored"
    created = await store.create(ws)

    assert created.namespace is None
    assert created.key == "Rig/demo"
    assert (await store.get(Workspace, "demo", "anything")).name == "demo"


async def test_create_duplicate(store: InMemoryObjectStore) -> None:
    await store.create(make_worker())
    with pytest.raises(AlreadyExistsError):
        await store.create(make_worker())


async def test_get_missing(store: InMemoryObjectStore) -> None:
    with pytest.raises(ObjectNotFoundError):
        await store.get(Worker, "nope")


async def test_get_returns_copy(store: InMemoryObjectStore) -> None:
    await store.create(make_worker())
    fetched = await store.get(Worker, "toast")
    fetched.spec.rig = "mutated"

    assert (await store.get(Worker, "toast")).spec.rig == "demo"


async def test_list_filters(store: InMemoryObjectStore) -> None:
    await store.create(make_worker("a"))
    await store.create(make_worker("b", namespace="other"))
    labelled = make_worker("c")
    labelled.metadata.labels = {"team": "x"}
    await store.create(labelled)

    assert [w.name for w in await store.list(Worker)] == ["a", "c", "b"]
    assert [w.name for w in await store.list(Worker, namespace="other")] == ["b"]
    assert [w.name for w in await store.list(Worker, labels={"team": "x"})] == ["c"]
    assert await store.list(HealthMonitor) == []


async def test_update_bumps_generation_only_on_spec_change(store: InMemoryObjectStore) -> None:
    created = await store.create(make_worker())

    created.metadata.labels["x"] = "y"
    relabelled = await store.update(created)
    assert relabelled.metadata.generation == 1
    assert relabelled.metadata.labels == {"x": "y"}

    relabelled.spec.task_description = "fix the bug"
    changed = await store.update(relabelled)
    assert changed.metadata.generation == 2
    assert changed.spec.task_description == "fix the bug"


async def test_update_ignores_status(store: InMemoryObjectStore) -> None:
    created = await store.create(make_worker())
    created.status.branch = "feature/x"
    updated = await store.update(created)
    assert updated.status.branch is None


async def test_update_status_ignores_spec(store: InMemoryObjectStore) -> None:
    created = await store.create(make_worker())
    created.status.branch = "feature/x"
    created.spec.task_description = "ignored"
    updated = await store.update_status(created)

    assert updated.status.branch == "feature/x"
    assert updated.spec.task_description is None
    assert updated.metadata.generation == 1


async def test_stale_resource_version_conflicts(store: InMemoryObjectStore) -> None:
    created = await store.create(make_worker())
    stale = created.model_copy(deep=True)

    created.status.branch = "a"
    await store.update_status(created)

    stale.status.branch = "b"
    with pytest.raises(ConflictError):
        await store.update_status(stale)
    with pytest.raises(ConflictError):
        await store.update(stale)

    # No version means last write wins.
    stale.metadata.resource_version = None
    assert (await store.update_status(stale)).status.branch == "b"


async def test_delete_without_finalizers(store: InMemoryObjectStore) -> None:
    await store.create(make_worker())
    await store.delete(Worker, "toast")
    with pytest.raises(ObjectNotFoundError):
        await store.get(Worker, "toast")


async def test_delete_with_finalizer_waits_for_release(store: InMemoryObjectStore) -> None:
    worker = make_worker()
    worker.metadata.finalizers = ["gastown.io/polecat-cleanup"]
    await store.create(worker)

    await store.delete(Worker, "toast")
    pending = await store.get(Worker, "toast")
    assert pending.is_deleting

    # A second delete keeps the original timestamp.
    await store.delete(Worker, "toast")
    assert (await store.get(Worker, "toast")).metadata.deletion_timestamp == pending.metadata.deletion_timestamp

    pending.remove_finalizer("gastown.io/polecat-cleanup")
    await store.update(pending)
    with pytest.raises(ObjectNotFoundError):
        await store.get(Worker, "toast")


async def test_delete_cascades_to_owned_objects(store: InMemoryObjectStore) -> None:
    ws = await store.create(make_workspace())
    monitor = make_monitor()
    monitor.metadata.owner_references = [ws.owner_reference()]
    await store.create(monitor)

    guarded = make_worker("guarded")
    guarded.metadata.owner_references = [ws.owner_reference()]
    guarded.metadata.finalizers = ["keep"]
    await store.create(guarded)

    await store.delete(Workspace, "demo")

    with pytest.raises(ObjectNotFoundError):
        await store.get(HealthMonitor, "demo-witness", "gastown-system")
    assert (await store.get(Worker, "guarded")).is_deleting


async def test_watch_streams_events(store: InMemoryObjectStore) -> None:
    events = store.watch()
    first = asyncio.ensure_future(anext(events))
    await asyncio.sleep(0)

    created = await store.create(make_worker())
    added = await asyncio.wait_for(first, timeout=1)
    assert added.type == EventType.ADDED
    assert added.obj.name == "toast"

    created.status.branch = "b"
    await store.update_status(created)
    await store.delete(Worker, "toast")

    modified = await asyncio.wait_for(anext(events), timeout=1)
    deleted = await asyncio.wait_for(anext(events), timeout=1)
    assert modified.type == EventType.MODIFIED
    assert deleted.type == EventType.DELETED
    await events.aclose()


async def test_load_manifests(store: InMemoryObjectStore, tmp_path) -> None:
    (tmp_path / "rig.json").write_text(json.dumps(make_workspace().to_wire()))
    (tmp_path / "polecats.json").write_text(
        json.dumps({"items": [make_worker("a").to_wire(), make_worker("b").to_wire()]})
    )
    (tmp_path / "bad.json").write_text(json.dumps([{"kind": "Unknown", "metadata": {"name": "x"}}]))
    (tmp_path / "notes.txt").write_text("ignored")

    assert await store.load_manifests(tmp_path) == 3
    assert (await store.get(Workspace, "demo")).spec.git_url == "git@github.com:org/demo.git"
    assert len(await store.list(Worker)) == 2

    # Loading again creates nothing new.
    assert await store.load_manifests(tmp_path) == 0
