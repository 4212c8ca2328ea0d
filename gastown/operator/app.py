from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, status
from fastapi.routing import APIRouter
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from gastown.operator.controllers import (
    BatchReconciler,
    HealthMonitorReconciler,
    IssueStoreReconciler,
    MergeQueueReconciler,
    Reconciler,
    WorkerReconciler,
    WorkspaceReconciler,
)
from gastown.operator.deps import Health
from gastown.operator.gt.client import GTClient
from gastown.operator.health import HealthChecker
from gastown.operator.log import setup_logging
from gastown.operator.manager import Manager
from gastown.operator.settings import GastownSettings, get_settings
from gastown.operator.store.base import ObjectStore
from gastown.operator.store.memory import InMemoryObjectStore


def build_reconcilers(store: ObjectStore, settings: GastownSettings, gt: GTClient | None) -> Sequence[Reconciler]:
    """One reconciler per resource kind, sharing the store and gt client."""
    return [
        WorkspaceReconciler(store, settings),
        WorkerReconciler(store, settings, gt=gt),
        BatchReconciler(store, settings, gt=gt),
        HealthMonitorReconciler(store, settings, gt=gt),
        MergeQueueReconciler(store, settings),
        IssueStoreReconciler(store, settings, gt=gt),
    ]


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, json=settings.log_json)
    logger.info(
        "Gastown operator starting (host={}, port={}, namespace={})",
        settings.host,
        settings.port,
        settings.namespace,
    )

    # -- Initialise state fields (tests may pre-populate them) ------------------
    store = getattr(_app.state, "store", None)
    if store is None:
        store = InMemoryObjectStore()
        if settings.manifests_dir:
            await store.load_manifests(settings.manifests_dir)
        else:
            logger.warning("GASTOWN_MANIFESTS_DIR not set -- starting with an empty store")
    _app.state.store = store

    health = getattr(_app.state, "health", None) or HealthChecker()
    _app.state.health = health

    gt = GTClient.from_settings(settings, health=health)
    logger.info("gt CLI: {} (town root={})", gt.gt_path, gt.town_root or "<unset>")

    # -- Controller manager ----------------------------------------------------
    manager = Manager(store, build_reconcilers(store, settings, gt), settings=settings)
    _app.state.manager = manager
    await manager.start()

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("Gastown operator shutting down")
    await manager.stop()


app = FastAPI(title="Gastown Operator", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Probes and metrics
# ---------------------------------------------------------------------------


@app.get("/healthz")
async def healthz(health: Health) -> dict[str, str]:
    _, detail = health.liveness()
    return {"status": detail}


@app.get("/readyz")
async def readyz(health: Health, response: Response) -> dict[str, str]:
    ready, detail = health.readiness()
    manager: Manager | None = getattr(app.state, "manager", None)
    if ready and (manager is None or not manager.running):
        ready, detail = False, "controller manager not running"
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": detail}


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# API router -- object endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")

from gastown.operator.routers.objects import router as objects_router  # noqa: E402

api.include_router(objects_router)

app.include_router(api)
