"""Shared reconciler plumbing: requests, results, constants and the base class.

A reconciler converges one object per call.  It reads the object from the
store, acts on it and returns a ``Result`` telling the manager when to look
again.  Raising is reserved for failures the manager should retry through
the backoff service; expected conditions (a missing spec, a refused
termination) are written to status and returned as a requeue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from loguru import logger

from gastown.operator import errors
from gastown.operator.models.enums import ConditionType
from gastown.operator.models.meta import Resource, find_condition, is_condition_true, object_key, set_condition
from gastown.operator.settings import GastownSettings, get_settings
from gastown.operator.store.base import ConflictError, ObjectNotFoundError, ObjectStore, R

# -- Requeue intervals (seconds) -----------------------------------------------

REQUEUE_SHORT = 10.0
REQUEUE_DEFAULT = 30.0
REQUEUE_LONG = 60.0

# -- Finalizers ----------------------------------------------------------------

POLECAT_FINALIZER = "gastown.io/polecat-cleanup"
RIG_FINALIZER = "gastown.io/rig-cleanup"
WITNESS_FINALIZER = "gastown.io/witness-cleanup"
REFINERY_FINALIZER = "gastown.io/refinery-cleanup"
BEADSTORE_FINALIZER = "gastown.io/beadstore-cleanup"

# -- Labels and annotations ----------------------------------------------------

LABEL_RIG_OWNER = "gastown.io/rig-owner"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY_RIG_CONTROLLER = "rig-controller"

STUCK_ANNOTATION = "gastown.io/stuck-since"
"""Set on a Worker by the Health-Monitor while the worker shows no progress."""


@dataclass(frozen=True)
class Request:
    """Identifies one object to reconcile."""

    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class Result:
    requeue: bool = False
    """Reconcile again immediately (after a metadata write)."""

    requeue_after: float | None = None


async def get_or_none(store: ObjectStore, cls: type[R], name: str, namespace: str | None = None) -> R | None:
    try:
        return await store.get(cls, name, namespace)
    except ObjectNotFoundError:
        return None


class Reconciler:
    """Base class for every controller.

    Subclasses set ``name`` (the metrics label), ``resource`` (the primary
    kind) and optionally ``watches``: secondary kinds whose events are
    mapped to primary requests by ``map_event``.
    """

    name: ClassVar[str]
    resource: ClassVar[type[Resource]]
    watches: ClassVar[tuple[type[Resource], ...]] = ()
    max_concurrent: ClassVar[int] = 1

    def __init__(self, store: ObjectStore, settings: GastownSettings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    @property
    def kind(self) -> str:
        return self.resource.model_fields["kind"].default

    def key(self, request: Request) -> str:
        namespace = request.namespace if self.resource.namespaced else None
        return object_key(self.kind, request.name, namespace)

    async def reconcile(self, request: Request) -> Result:
        raise NotImplementedError

    async def map_event(self, obj: Resource) -> list[Request]:
        """Map a secondary object to the primary requests it affects."""
        return []

    def cleanup(self, live_keys: set[str]) -> None:
        """Drop per-object state for keys that no longer exist."""

    # -- Shared helpers --------------------------------------------------------

    async def ensure_finalizer(self, obj: R, finalizer: str) -> bool:
        """Add ``finalizer`` and persist it.  Returns True if a write happened."""
        if not obj.add_finalizer(finalizer):
            return False
        logger.info("{}: adding finalizer {}", obj.key, finalizer)
        await self.store.update(obj)
        return True

    async def release_finalizer(self, obj: R, finalizer: str) -> None:
        if obj.remove_finalizer(finalizer):
            logger.info("{}: cleanup complete, removing finalizer {}", obj.key, finalizer)
            await self.store.update(obj)

    async def report_error(self, request: Request, err: BaseException) -> None:
        """Record a failed reconcile as ``Degraded=True`` on the object."""
        try:
            obj: Any = await self.store.get(self.resource, request.name, request.namespace)
        except ObjectNotFoundError:
            return
        status = getattr(obj, "status", None)
        if status is None or not hasattr(status, "conditions"):
            return
        set_condition(
            status.conditions,
            ConditionType.DEGRADED,
            True,
            errors.to_condition_reason(err),
            str(err),
            generation=obj.metadata.generation,
        )
        try:
            await self.store.update_status(obj)
        except (ConflictError, ObjectNotFoundError) as exc:
            logger.debug("{}: could not record error condition: {}", obj.key, exc)

    async def clear_error(self, request: Request) -> None:
        """Flip a ``Degraded`` left by ``report_error`` back to False.

        Degraded conditions a reconciler sets itself (a failed pod, a pod
        that could not be built) carry their own reasons and are left alone.
        """
        try:
            obj: Any = await self.store.get(self.resource, request.name, request.namespace)
        except ObjectNotFoundError:
            return
        conditions = getattr(getattr(obj, "status", None), "conditions", None)
        if conditions is None or not is_condition_true(conditions, ConditionType.DEGRADED):
            return
        previous = find_condition(conditions, ConditionType.DEGRADED).reason
        if not errors.is_error_reason(previous):
            return
        set_condition(
            conditions,
            ConditionType.DEGRADED,
            False,
            "Reconciled",
            "Reconcile succeeded",
            generation=obj.metadata.generation,
        )
        try:
            await self.store.update_status(obj)
        except (ConflictError, ObjectNotFoundError) as exc:
            logger.debug("{}: could not clear error condition: {}", obj.key, exc)
        else:
            logger.info("{}: recovered from {}", obj.key, previous)
