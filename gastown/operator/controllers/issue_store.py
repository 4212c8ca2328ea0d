"""Issue-Store (``BeadStore``) reconciler.

Checks that the referenced workspace exists and mirrors the open issue
count reported by ``gt rig status``.
"""

from __future__ import annotations

from loguru import logger

from gastown.operator import errors
from gastown.operator.controllers.base import (
    BEADSTORE_FINALIZER,
    REQUEUE_DEFAULT,
    REQUEUE_LONG,
    Reconciler,
    Request,
    Result,
    get_or_none,
)
from gastown.operator.gt.client import GTClient
from gastown.operator.models.enums import ConditionType, IssueStorePhase
from gastown.operator.models.issue_store import IssueStore
from gastown.operator.models.meta import Resource, set_condition, utcnow
from gastown.operator.models.workspace import Workspace
from gastown.operator.settings import GastownSettings
from gastown.operator.store.base import ObjectStore


class IssueStoreReconciler(Reconciler):
    name = "beadstore"
    resource = IssueStore
    watches = (Workspace,)

    def __init__(
        self,
        store: ObjectStore,
        settings: GastownSettings | None = None,
        *,
        gt: GTClient | None = None,
    ) -> None:
        super().__init__(store, settings)
        self.gt = gt

    async def map_event(self, obj: Resource) -> list[Request]:
        if not isinstance(obj, Workspace):
            return []
        return [Request(s.name, s.namespace) for s in await self.store.list(IssueStore) if s.spec.rig_ref == obj.name]

    async def reconcile(self, request: Request) -> Result:
        issue_store = await get_or_none(self.store, IssueStore, request.name, request.namespace)
        if issue_store is None:
            return Result()

        if issue_store.is_deleting:
            await self.release_finalizer(issue_store, BEADSTORE_FINALIZER)
            return Result()

        if await self.ensure_finalizer(issue_store, BEADSTORE_FINALIZER):
            return Result(requeue=True)

        spec = issue_store.spec
        status = issue_store.status
        generation = issue_store.metadata.generation
        logger.info("Reconciling BeadStore {} (rig={}, prefix={})", issue_store.key, spec.rig_ref, spec.prefix)

        if await get_or_none(self.store, Workspace, spec.rig_ref) is None:
            logger.info("BeadStore {}: rig {} not found", issue_store.key, spec.rig_ref)
            status.phase = IssueStorePhase.PENDING
            set_condition(
                status.conditions,
                ConditionType.READY,
                False,
                "RigNotFound",
                f'Rig "{spec.rig_ref}" not found',
                generation=generation,
            )
            await self.store.update_status(issue_store)
            return Result(requeue_after=REQUEUE_DEFAULT)

        try:
            issue_count = await self._issue_count(spec.rig_ref)
        except errors.GastownError as exc:
            logger.error("BeadStore {}: sync failed: {}", issue_store.key, exc)
            status.phase = IssueStorePhase.ERROR
            set_condition(
                status.conditions,
                ConditionType.SYNCED,
                False,
                errors.to_condition_reason(exc),
                str(exc),
                generation=generation,
            )
            await self.store.update_status(issue_store)
            return Result(requeue_after=REQUEUE_LONG)

        status.phase = IssueStorePhase.SYNCED
        status.last_sync_time = utcnow()
        status.issue_count = issue_count
        set_condition(
            status.conditions,
            ConditionType.SYNCED,
            True,
            "SyncSucceeded",
            f"Successfully synced {issue_count} issues",
            generation=generation,
        )
        set_condition(status.conditions, ConditionType.READY, True, "Ready", "BeadStore is ready", generation=generation)
        await self.store.update_status(issue_store)

        logger.info("BeadStore {} synced (issueCount={})", issue_store.key, issue_count)
        return Result(requeue_after=spec.sync_interval.total_seconds())

    async def _issue_count(self, rig: str) -> int:
        if self.gt is None:
            raise errors.validation("no gt client configured")
        rig_status = await self.gt.rig_status(rig)
        return rig_status.open_beads
