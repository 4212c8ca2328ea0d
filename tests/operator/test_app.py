"""HTTP tests for probes, metrics and the object API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from types import SimpleNamespace
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from gastown.operator.app import app
from gastown.operator.health import HealthChecker
from gastown.operator.store.memory import InMemoryObjectStore
from tests.factories import make_worker


@pytest.fixture
def health() -> HealthChecker:
    return HealthChecker()


@pytest.fixture
async def client(store: InMemoryObjectStore, health: HealthChecker) -> AsyncIterator[AsyncClient]:
    """The lifespan does not run under ``ASGITransport``; state is pre-set here."""
    app.state.store = store
    app.state.health = health
    app.state.manager = SimpleNamespace(running=True)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.manager = None


def rig_manifest(**spec: Any) -> dict[str, Any]:
    return {
        "apiVersion": "gastown.gastown.io/v1alpha1",
        "kind": "Rig",
        "metadata": {"name": "demo"},
        "spec": {"gitURL": "git@github.com:org/demo.git", "beadsPrefix": "dm-", **spec},
    }


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


async def test_healthz(client: AsyncClient) -> None:
    resp = await client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_readyz(client: AsyncClient) -> None:
    resp = await client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_readyz_without_manager(client: AsyncClient) -> None:
    app.state.manager = None

    resp = await client.get("/readyz")

    assert resp.status_code == 503
    assert resp.json() == {"status": "controller manager not running"}


async def test_readyz_when_gt_unhealthy(client: AsyncClient, health: HealthChecker) -> None:
    health.set_tool_healthy(False)

    resp = await client.get("/readyz")

    assert resp.status_code == 503
    assert resp.json() == {"status": "gt CLI is not healthy"}


async def test_metrics(client: AsyncClient) -> None:
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "gastown_reconcile_total" in resp.text


# ---------------------------------------------------------------------------
# Object API
# ---------------------------------------------------------------------------


async def test_apply_creates_then_updates(client: AsyncClient) -> None:
    resp = await client.put("/api/objects/Rig", json=rig_manifest())
    assert resp.status_code == 200
    created = resp.json()
    assert created["metadata"]["name"] == "demo"
    assert "namespace" not in created["metadata"]

    resp = await client.put("/api/objects/Rig", json=rig_manifest(beadsPrefix="de-"))
    assert resp.status_code == 200
    updated = resp.json()
    assert updated["spec"]["beadsPrefix"] == "de-"
    assert updated["metadata"]["generation"] == created["metadata"]["generation"] + 1


async def test_apply_rejects_stale_resource_version(client: AsyncClient) -> None:
    await client.put("/api/objects/Rig", json=rig_manifest())
    manifest = rig_manifest(beadsPrefix="de-")
    manifest["metadata"]["resourceVersion"] = "999"

    resp = await client.put("/api/objects/Rig", json=manifest)

    assert resp.status_code == 409


@pytest.mark.parametrize(
    ("kind", "body", "status_code"),
    [
        ("Rig", {**rig_manifest(), "kind": "Polecat"}, 400),
        ("Rig", {"kind": "Rig", "metadata": {"name": "demo"}, "spec": {}}, 400),
        ("Mayor", rig_manifest(), 404),
    ],
)
async def test_apply_rejects_bad_bodies(client: AsyncClient, kind: str, body: dict[str, Any], status_code: int) -> None:
    resp = await client.put(f"/api/objects/{kind}", json=body)
    assert resp.status_code == status_code


async def test_list_and_get(client: AsyncClient, store: InMemoryObjectStore) -> None:
    await store.create(make_worker("toast"))
    await store.create(make_worker("nux", namespace="team-b"))

    resp = await client.get("/api/objects/Polecat")
    assert [o["metadata"]["name"] for o in resp.json()] == ["toast", "nux"]

    resp = await client.get("/api/objects/Polecat", params={"namespace": "team-b"})
    assert [o["metadata"]["name"] for o in resp.json()] == ["nux"]

    resp = await client.get("/api/objects/Polecat/toast")
    assert resp.status_code == 200
    assert resp.json()["spec"]["rig"] == "demo"

    resp = await client.get("/api/objects/Polecat/missing")
    assert resp.status_code == 404


async def test_delete(client: AsyncClient) -> None:
    await client.put("/api/objects/Rig", json=rig_manifest())

    resp = await client.delete("/api/objects/Rig/demo")
    assert resp.status_code == 204
    assert (await client.get("/api/objects/Rig/demo")).status_code == 404

    resp = await client.delete("/api/objects/Rig/demo")
    assert resp.status_code == 404
