"""FastAPI dependency injection for the object store and probes.

Usage in route handlers::

    @router.get("/things")
    async def list_things(store: Store) -> list[dict]:
        ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from gastown.operator.health import HealthChecker
from gastown.operator.store.base import ObjectStore


def get_store(request: Request) -> ObjectStore:
    store: ObjectStore | None = request.app.state.store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Object store not initialised.",
        )
    return store


def get_health(request: Request) -> HealthChecker:
    return request.app.state.health


Store = Annotated[ObjectStore, Depends(get_store)]
Health = Annotated[HealthChecker, Depends(get_health)]
