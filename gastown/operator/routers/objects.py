"""Object endpoints over the store: list, get, apply, delete.

``kind`` is the wire kind (``Rig``, ``Polecat``, ``Convoy``, ...).
Namespaced kinds default to the store's default namespace.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, HTTPException, status
from loguru import logger

from gastown.operator.deps import Store
from gastown.operator.models import RESOURCE_TYPES, Resource, parse_resource
from gastown.operator.store.base import AlreadyExistsError, ConflictError, ObjectNotFoundError

router = APIRouter(prefix="/objects", tags=["objects"])


def _resource_type(kind: str) -> type[Resource]:
    cls = RESOURCE_TYPES.get(kind)
    if cls is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Unknown kind '{kind}'.")
    return cls


@router.get("/{kind}")
async def list_objects(
    kind: str,
    store: Store,
    namespace: str | None = None,
) -> list[dict[str, Any]]:
    """List objects of one kind, optionally in one namespace."""
    cls = _resource_type(kind)
    return [obj.to_wire() for obj in await store.list(cls, namespace=namespace)]


@router.get("/{kind}/{name}")
async def get_object(kind: str, name: str, store: Store, namespace: str | None = None) -> dict[str, Any]:
    cls = _resource_type(kind)
    try:
        obj = await store.get(cls, name, namespace)
    except ObjectNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return obj.to_wire()


@router.put("/{kind}")
async def apply_object(kind: str, body: Annotated[dict[str, Any], Body()], store: Store) -> dict[str, Any]:
    """Create the object, or update its metadata and spec if it exists."""
    _resource_type(kind)
    if body.get("kind", kind) != kind:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=f"Body kind '{body.get('kind')}' does not match '{kind}'.")
    try:
        obj = parse_resource({**body, "kind": kind})
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        created = await store.create(obj)
    except AlreadyExistsError:
        pass
    else:
        logger.info("API: created {}", created.key)
        return created.to_wire()

    try:
        current = await store.get(type(obj), obj.name, obj.namespace)
        if obj.metadata.resource_version is None:
            obj.metadata.resource_version = current.metadata.resource_version
        updated = await store.update(obj)
    except ObjectNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    logger.info("API: updated {}", updated.key)
    return updated.to_wire()


@router.delete("/{kind}/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_object(kind: str, name: str, store: Store, namespace: str | None = None) -> None:
    """Request deletion.  Objects with finalizers go away once their controllers release them."""
    cls = _resource_type(kind)
    try:
        await store.delete(cls, name, namespace)
    except ObjectNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    logger.info("API: deletion requested for {} {}", kind, name)
