"""Workspace (``Rig``) reconciler: cascading provisioning and readiness.

On first reconcile a workspace gets exactly one Health-Monitor
(``{rig}-witness``) and one Merge-Queue (``{rig}-refinery``) in the
operator namespace.  Creation is idempotent by name and recorded in the
workspace status flags.

Deletion is two-phase: the workspace finalizer stays in place while the
children are deleted, and is released only once both are confirmed gone.

Readiness is evaluated in a fixed order and the first failing check
supplies the reason:

1. Health-Monitor phase is Active, else ``WitnessNotReady``.
2. Merge-Queue phase is not Error, else ``RefineryError``.
3. At least one worker is Done or Working, else ``NoPolecatActivity``.
"""

from __future__ import annotations

from collections import Counter

from loguru import logger

from gastown.operator import errors, metrics
from gastown.operator.controllers.base import (
    LABEL_MANAGED_BY,
    LABEL_RIG_OWNER,
    MANAGED_BY_RIG_CONTROLLER,
    REFINERY_FINALIZER,
    REQUEUE_DEFAULT,
    REQUEUE_SHORT,
    RIG_FINALIZER,
    WITNESS_FINALIZER,
    Reconciler,
    Request,
    Result,
    get_or_none,
)
from gastown.operator.models.batch import Batch
from gastown.operator.models.enums import (
    BatchPhase,
    ConditionType,
    MergeQueuePhase,
    MonitorPhase,
    WorkerPhase,
    WorkspacePhase,
)
from gastown.operator.models.health_monitor import HealthMonitor, HealthMonitorSpec
from gastown.operator.models.merge_queue import MergeQueue, MergeQueueSpec
from gastown.operator.models.meta import ObjectMeta, Resource, set_condition
from gastown.operator.models.worker import Worker
from gastown.operator.models.workspace import Workspace
from gastown.operator.store.base import AlreadyExistsError, ObjectNotFoundError

SYNC_INTERVAL = REQUEUE_DEFAULT


class WorkspaceReconciler(Reconciler):
    name = "rig"
    resource = Workspace
    watches = (Worker, HealthMonitor, MergeQueue, Batch)
    max_concurrent = 3

    async def map_event(self, obj: Resource) -> list[Request]:
        if isinstance(obj, Worker):
            return [Request(obj.spec.rig)]
        if isinstance(obj, HealthMonitor | MergeQueue):
            owner = obj.metadata.labels.get(LABEL_RIG_OWNER) or obj.spec.rig_ref
            return [Request(owner)]
        if isinstance(obj, Batch) and obj.spec.rig_ref:
            return [Request(obj.spec.rig_ref)]
        return []

    @property
    def child_namespace(self) -> str:
        return self.settings.namespace

    async def reconcile(self, request: Request) -> Result:
        workspace = await get_or_none(self.store, Workspace, request.name)
        if workspace is None:
            return Result()

        logger.info("Reconciling Rig {}", workspace.name)

        if workspace.is_deleting:
            return await self._handle_deletion(workspace)

        if await self.ensure_finalizer(workspace, RIG_FINALIZER):
            return Result(requeue=True)

        try:
            await self._ensure_children(workspace)
        except errors.GastownError as exc:
            logger.error("Rig {}: failed to ensure child resources: {}", workspace.name, exc)
            workspace.status.phase = WorkspacePhase.DEGRADED
            self._condition(workspace, False, "ChildCreationFailed", str(exc))
            await self.store.update_status(workspace)
            await self._record_phases()
            return Result(requeue_after=REQUEUE_DEFAULT)

        workers = [w for w in await self.store.list(Worker) if w.spec.rig == workspace.name]
        batches = await self.store.list(Batch)
        workspace.status.polecat_count = len(workers)
        workspace.status.active_convoys = sum(
            1
            for b in batches
            if b.status.phase == BatchPhase.IN_PROGRESS and b.spec.rig_ref in (None, workspace.name)
        )

        ready, reason, message = await self._readiness(workspace, workers)
        self._condition(workspace, ready, reason, message)
        if ready:
            workspace.status.phase = WorkspacePhase.READY
        elif reason == "RefineryError":
            workspace.status.phase = WorkspacePhase.DEGRADED
        else:
            workspace.status.phase = WorkspacePhase.INITIALIZING

        await self.store.update_status(workspace)
        counts = Counter(w.status.phase.value for w in workers)
        metrics.update_polecat_phases(workspace.name, {p.value: counts.get(p.value, 0) for p in WorkerPhase})
        await self._record_phases()

        logger.info(
            "Rig {} reconciled (phase={}, polecats={}, convoys={})",
            workspace.name,
            workspace.status.phase,
            workspace.status.polecat_count,
            workspace.status.active_convoys,
        )
        return Result(requeue_after=SYNC_INTERVAL)

    def _condition(self, workspace: Workspace, status: bool, reason: str, message: str = "") -> None:
        set_condition(
            workspace.status.conditions,
            ConditionType.READY,
            status,
            reason,
            message,
            generation=workspace.metadata.generation,
        )

    # -- Children --------------------------------------------------------------

    def _child_meta(self, workspace: Workspace, name: str, finalizer: str) -> ObjectMeta:
        return ObjectMeta(
            name=name,
            namespace=self.child_namespace,
            labels={
                LABEL_RIG_OWNER: workspace.name,
                LABEL_MANAGED_BY: MANAGED_BY_RIG_CONTROLLER,
            },
            finalizers=[finalizer],
            owner_references=[workspace.owner_reference()],
        )

    async def _create_child(self, child: HealthMonitor | MergeQueue, workspace: Workspace) -> None:
        try:
            await self.store.create(child)
        except AlreadyExistsError:
            logger.info("{} {} already exists", child.kind, child.name)
        else:
            logger.info("Created {} {} for Rig {}", child.kind, child.name, workspace.name)

    async def _ensure_children(self, workspace: Workspace) -> None:
        status = workspace.status
        changed = False
        if status.child_namespace is None:
            status.child_namespace = self.child_namespace
            changed = True

        try:
            if not status.witness_created:
                witness = HealthMonitor(
                    metadata=self._child_meta(workspace, workspace.witness_name, WITNESS_FINALIZER),
                    spec=HealthMonitorSpec(rig_ref=workspace.name),
                )
                await self._create_child(witness, workspace)
                status.witness_created = True
                changed = True

            if not status.refinery_created:
                refinery = MergeQueue(
                    metadata=self._child_meta(workspace, workspace.refinery_name, REFINERY_FINALIZER),
                    spec=MergeQueueSpec(rig_ref=workspace.name, target_branch="main"),
                )
                await self._create_child(refinery, workspace)
                status.refinery_created = True
                changed = True
        except (ValueError, LookupError) as exc:
            raise errors.transient(exc, f"failed to create children of rig {workspace.name}") from exc
        finally:
            # Persist whatever was created, even if the second child failed
            if changed:
                updated = await self.store.update_status(workspace)
                workspace.metadata.resource_version = updated.metadata.resource_version

    async def _readiness(self, workspace: Workspace, workers: list[Worker]) -> tuple[bool, str, str]:
        namespace = workspace.status.child_namespace or self.child_namespace

        witness = await get_or_none(self.store, HealthMonitor, workspace.witness_name, namespace)
        if witness is None or witness.status.phase != MonitorPhase.ACTIVE:
            phase = witness.status.phase if witness is not None else "Missing"
            return False, "WitnessNotReady", f"Witness {workspace.witness_name} is {phase}"

        refinery = await get_or_none(self.store, MergeQueue, workspace.refinery_name, namespace)
        if refinery is not None and refinery.status.phase == MergeQueuePhase.ERROR:
            return False, "RefineryError", f"Refinery {workspace.refinery_name} is in Error"

        if not any(w.status.phase in (WorkerPhase.DONE, WorkerPhase.WORKING) for w in workers):
            return False, "NoPolecatActivity", "No polecat is working or done"

        return True, "Ready", "Rig is ready"

    async def _record_phases(self) -> None:
        workspaces = await self.store.list(Workspace)
        counts = Counter(w.status.phase.value for w in workspaces)
        metrics.update_rig_phases({phase.value: counts.get(phase.value, 0) for phase in WorkspacePhase})

    # -- Deletion --------------------------------------------------------------

    async def _handle_deletion(self, workspace: Workspace) -> Result:
        if not workspace.has_finalizer(RIG_FINALIZER):
            return Result()

        logger.info("Handling Rig {} deletion, cleaning up child resources", workspace.name)
        namespace = workspace.status.child_namespace or self.child_namespace

        remaining = 0
        for cls, name in ((HealthMonitor, workspace.witness_name), (MergeQueue, workspace.refinery_name)):
            child = await get_or_none(self.store, cls, name, namespace)
            if child is None:
                continue
            remaining += 1
            if not child.is_deleting:
                logger.info("Deleting {} {}", child.kind, name)
                try:
                    await self.store.delete(cls, name, namespace)
                except ObjectNotFoundError:
                    remaining -= 1

        if remaining:
            # Children release their own finalizers; wait for them
            logger.info("Rig {}: waiting for {} child resources to be deleted", workspace.name, remaining)
            return Result(requeue_after=REQUEUE_SHORT)

        await self.release_finalizer(workspace, RIG_FINALIZER)
        return Result()
