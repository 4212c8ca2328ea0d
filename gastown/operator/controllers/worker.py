"""Worker (``Polecat``) reconciler.

Two execution modes share one state machine:

- **kubernetes**: the worker is backed by the Pod ``polecat-{name}``.  The
  Pod is created when work is requested (idempotent by name) and the
  worker's phase is always derived from the Pod's phase.
- **local**: the worker is a gt polecat on the operator host, driven with
  ``gt sling``, ``gt polecat status``, ``reset`` and ``nuke``.

Termination is refused unless the worker's checkout is known to be clean.
The refusal is reported on the ``Ready`` condition (reason
``UncommittedWork``) together with the observed cleanup status, and the
request is retried later.  Deleting the Worker object is the explicit
override: it removes the Pod (or force-nukes the polecat) and releases
the finalizer.
"""

from __future__ import annotations

from loguru import logger

from gastown.operator import errors
from gastown.operator.controllers.base import (
    POLECAT_FINALIZER,
    REQUEUE_DEFAULT,
    REQUEUE_LONG,
    REQUEUE_SHORT,
    STUCK_ANNOTATION,
    Reconciler,
    Request,
    Result,
    get_or_none,
)
from gastown.operator.gt.client import GTClient
from gastown.operator.gt.types import PolecatStatus
from gastown.operator.models.core import Pod
from gastown.operator.models.enums import (
    CleanupStatus,
    ConditionType,
    DesiredState,
    ExecutionMode,
    PodPhase,
    WorkerPhase,
)
from gastown.operator.models.meta import Resource, is_condition_true, set_condition
from gastown.operator.models.worker import Worker
from gastown.operator.pod.builder import AGENT_CONTAINER, PodBuilder, work_branch_for
from gastown.operator.settings import GastownSettings
from gastown.operator.store.base import AlreadyExistsError, ObjectNotFoundError, ObjectStore

SYNC_INTERVAL = REQUEUE_SHORT


class WorkerReconciler(Reconciler):
    name = "polecat"
    resource = Worker
    watches = (Pod,)
    max_concurrent = 5

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
        if isinstance(obj, Pod):
            for ref in obj.metadata.owner_references:
                if ref.kind == self.kind:
                    return [Request(ref.name, obj.namespace)]
        return []

    async def reconcile(self, request: Request) -> Result:
        worker = await get_or_none(self.store, Worker, request.name, request.namespace)
        if worker is None:
            return Result()

        logger.info(
            "Reconciling Polecat {} (mode={}, desiredState={})",
            worker.key,
            worker.spec.execution_mode,
            worker.spec.desired_state,
        )

        if worker.is_deleting:
            return await self._handle_deletion(worker)

        if await self.ensure_finalizer(worker, POLECAT_FINALIZER):
            return Result(requeue=True)

        if worker.spec.execution_mode == ExecutionMode.KUBERNETES:
            return await self._reconcile_kubernetes(worker)
        return await self._reconcile_local(worker)

    # -- Helpers ---------------------------------------------------------------

    @staticmethod
    def _condition(worker: Worker, condition_type: str, status: bool, reason: str, message: str = "") -> None:
        set_condition(
            worker.status.conditions,
            condition_type,
            status,
            reason,
            message,
            generation=worker.metadata.generation,
        )

    async def _write_status(self, worker: Worker) -> None:
        await self.store.update_status(worker)

    def _require_gt(self) -> GTClient:
        if self.gt is None:
            raise errors.permanent(None, "local execution mode requires a gt client")
        return self.gt

    # ---------------------------------------------------------------------------
    # Kubernetes mode
    # ---------------------------------------------------------------------------

    async def _reconcile_kubernetes(self, worker: Worker) -> Result:
        if worker.spec.kubernetes is None:
            worker.status.phase = WorkerPhase.STUCK
            self._condition(
                worker,
                ConditionType.READY,
                False,
                "MissingKubernetesSpec",
                "kubernetes spec is required when executionMode is kubernetes",
            )
            await self._write_status(worker)
            return Result(requeue_after=REQUEUE_LONG)

        pod = await get_or_none(self.store, Pod, worker.pod_name, worker.namespace)

        desired = worker.spec.desired_state
        if desired == DesiredState.TERMINATED:
            return await self._terminate_kubernetes(worker, pod)
        if pod is not None:
            return await self._sync_from_pod(worker, pod)
        if desired == DesiredState.WORKING:
            return await self._create_pod(worker)

        self._mark_idle(worker)
        await self._write_status(worker)
        return Result()

    async def _create_pod(self, worker: Worker) -> Result:
        builder = PodBuilder(worker, self.settings)
        try:
            pod = builder.build()
        except errors.GastownError as exc:
            logger.error("Polecat {}: pod build failed: {}", worker.key, exc)
            worker.status.phase = WorkerPhase.STUCK
            self._condition(worker, ConditionType.READY, False, "PodBuildFailed", str(exc))
            self._condition(worker, ConditionType.DEGRADED, True, "PodBuildFailed", str(exc))
            await self._write_status(worker)
            return Result(requeue_after=REQUEUE_DEFAULT)

        logger.info(
            "Creating Pod {} for Polecat {} (bead={}, repo={})",
            pod.name,
            worker.key,
            worker.spec.bead_id,
            worker.spec.kubernetes.git_repository if worker.spec.kubernetes else None,
        )
        try:
            await self.store.create(pod)
        except AlreadyExistsError:
            # A previous attempt got this far; the Pod is ours by name
            logger.info("Pod {} already exists", pod.name)

        config = worker.spec.agent_config
        worker.status.pod_name = pod.name
        worker.status.phase = WorkerPhase.WORKING
        worker.status.assigned_bead = worker.spec.bead_id
        worker.status.branch = work_branch_for(worker)
        worker.status.agent = worker.spec.agent
        worker.status.agent_image = builder.agent_image
        worker.status.agent_model = builder.strategy.model_name(config) if config is not None and config.model else None
        worker.status.cleanup_status = None
        self._condition(worker, ConditionType.READY, True, "PodCreated", "Pod created successfully")
        self._condition(worker, ConditionType.WORKING, True, "Working", "Polecat is working on assigned bead")
        self._condition(worker, ConditionType.PROGRESSING, True, "PodCreated", "Waiting for the pod to start")
        self._condition(worker, ConditionType.DEGRADED, False, "PodCreated")
        await self._write_status(worker)
        return Result(requeue_after=SYNC_INTERVAL)

    def _apply_pod_phase(self, worker: Worker, pod: Pod) -> None:
        """Derive the worker phase and conditions from ``pod``."""
        worker.status.pod_name = pod.name
        worker.status.assigned_bead = worker.spec.bead_id
        if pod.status.start_time is not None:
            worker.status.last_activity = pod.status.start_time

        phase = pod.status.phase
        if phase == PodPhase.PENDING:
            worker.status.phase = WorkerPhase.WORKING
            self._condition(worker, ConditionType.READY, True, "PodPending", "Pod is pending")
            self._condition(worker, ConditionType.PROGRESSING, True, "PodPending", "Pod is pending")
            self._condition(worker, ConditionType.DEGRADED, False, "PodPending")
        elif phase == PodPhase.RUNNING:
            worker.status.session_active = True
            self._condition(worker, ConditionType.READY, True, "PodRunning", "Pod is running")
            self._condition(worker, ConditionType.WORKING, True, "Working", "Agent is working")
            self._condition(worker, ConditionType.DEGRADED, False, "PodRunning")
            stuck_since = worker.metadata.annotations.get(STUCK_ANNOTATION)
            if stuck_since:
                worker.status.phase = WorkerPhase.STUCK
                self._condition(
                    worker,
                    ConditionType.PROGRESSING,
                    False,
                    "NoProgress",
                    f"No progress observed since {stuck_since}",
                )
            else:
                worker.status.phase = WorkerPhase.WORKING
                self._condition(worker, ConditionType.PROGRESSING, True, "Working", "Agent is working")
        elif phase == PodPhase.SUCCEEDED:
            worker.status.phase = WorkerPhase.DONE
            worker.status.session_active = False
            self._condition(worker, ConditionType.READY, True, "PodSucceeded", "Pod completed successfully")
            self._condition(worker, ConditionType.WORKING, False, "Completed", "Work completed")
            self._condition(worker, ConditionType.PROGRESSING, False, "Completed", "Work completed")
            self._condition(worker, ConditionType.AVAILABLE, True, "Completed", "Work completed")
            self._condition(worker, ConditionType.DEGRADED, False, "PodSucceeded")
        elif phase == PodPhase.FAILED:
            worker.status.phase = WorkerPhase.STUCK
            worker.status.session_active = False
            self._condition(worker, ConditionType.READY, False, "PodFailed", "Pod failed")
            self._condition(worker, ConditionType.WORKING, False, "Failed", "Work failed")
            self._condition(worker, ConditionType.PROGRESSING, False, "Failed", "Work failed")
            self._condition(worker, ConditionType.AVAILABLE, False, "Failed", "Work failed")
            self._condition(worker, ConditionType.DEGRADED, True, "PodFailed", "Pod failed")

        if pod.status.phase in (PodPhase.SUCCEEDED, PodPhase.FAILED):
            worker.status.cleanup_status = pod_cleanup_status(pod)

    async def _sync_from_pod(self, worker: Worker, pod: Pod) -> Result:
        self._apply_pod_phase(worker, pod)
        await self._write_status(worker)
        logger.info(
            "Synced Polecat {} from Pod {} (podPhase={}, phase={})",
            worker.key,
            pod.name,
            pod.status.phase,
            worker.status.phase,
        )
        if pod.status.phase in (PodPhase.SUCCEEDED, PodPhase.FAILED):
            return Result()
        return Result(requeue_after=SYNC_INTERVAL)

    async def _terminate_kubernetes(self, worker: Worker, pod: Pod | None) -> Result:
        cleanup = pod_cleanup_status(pod)
        if pod is not None:
            self._apply_pod_phase(worker, pod)
        worker.status.cleanup_status = cleanup

        if cleanup != CleanupStatus.CLEAN:
            return await self._refuse_termination(worker, cleanup)

        if pod is not None:
            logger.info("Deleting Pod {} for terminated Polecat {}", pod.name, worker.key)
            try:
                await self.store.delete(Pod, pod.name, pod.namespace)
            except ObjectNotFoundError:
                pass

        worker.status.session_active = False
        worker.status.pod_name = None
        self._mark_terminated(worker)
        await self._write_status(worker)
        logger.info("Polecat {} terminated (kubernetes mode)", worker.key)
        return Result()

    # ---------------------------------------------------------------------------
    # Local mode
    # ---------------------------------------------------------------------------

    async def _reconcile_local(self, worker: Worker) -> Result:
        desired = worker.spec.desired_state
        if desired == DesiredState.WORKING:
            return await self._ensure_working_local(worker)
        if desired == DesiredState.TERMINATED:
            return await self._terminate_local(worker)
        return await self._ensure_idle_local(worker)

    async def _polecat_exists(self, worker: Worker) -> bool:
        gt = self._require_gt()
        try:
            return await gt.polecat_exists(worker.spec.rig, worker.name)
        except errors.GastownError as exc:
            raise errors.wrap(exc, "failed to check polecat existence") from exc

    async def _ensure_working_local(self, worker: Worker) -> Result:
        gt = self._require_gt()
        exists = await self._polecat_exists(worker)

        if not exists and worker.spec.bead_id:
            logger.info("Creating polecat via gt sling (bead={}, rig={})", worker.spec.bead_id, worker.spec.rig)
            try:
                await gt.sling(worker.spec.bead_id, worker.spec.rig)
            except errors.GastownError as exc:
                worker.status.phase = WorkerPhase.STUCK
                self._condition(worker, ConditionType.READY, False, "SlingFailed", str(exc))
                await self._write_status(worker)
                return Result(requeue_after=REQUEUE_DEFAULT)

        try:
            status = await gt.polecat_status(worker.spec.rig, worker.name)
        except errors.GastownError as exc:
            logger.error("Polecat {}: failed to get status from gt CLI: {}", worker.key, exc)
            self._condition(worker, ConditionType.READY, False, errors.to_condition_reason(exc), str(exc))
            await self._write_status(worker)
            return Result(requeue_after=REQUEUE_DEFAULT)

        self._apply_gt_status(worker, status)
        self._condition(worker, ConditionType.READY, True, "Synced", "Successfully synced with gt CLI")
        self._condition(worker, ConditionType.WORKING, True, "Working", "Polecat is working on assigned bead")
        self._condition(worker, ConditionType.DEGRADED, False, "Synced")
        if worker.status.phase == WorkerPhase.DONE:
            self._condition(worker, ConditionType.PROGRESSING, False, "Completed", "Work completed")
            self._condition(worker, ConditionType.AVAILABLE, True, "Completed", "Work completed")
        elif worker.status.phase == WorkerPhase.STUCK:
            self._condition(worker, ConditionType.PROGRESSING, False, "NoProgress", "Polecat reports no progress")
        else:
            self._condition(worker, ConditionType.PROGRESSING, True, "Working", "Polecat is working")
        await self._write_status(worker)

        logger.info(
            "Polecat {} reconciled (phase={}, bead={}, sessionActive={})",
            worker.key,
            worker.status.phase,
            worker.status.assigned_bead,
            worker.status.session_active,
        )
        return Result(requeue_after=SYNC_INTERVAL)

    async def _ensure_idle_local(self, worker: Worker) -> Result:
        gt = self._require_gt()
        if await self._polecat_exists(worker):
            try:
                status = await gt.polecat_status(worker.spec.rig, worker.name)
            except errors.GastownError as exc:
                logger.warning("Polecat {}: status unavailable: {}", worker.key, exc)
                return Result(requeue_after=REQUEUE_DEFAULT)

            if status.phase == WorkerPhase.WORKING or status.assigned_bead:
                logger.info("Resetting polecat {} to idle", worker.key)
                try:
                    await gt.polecat_reset(worker.spec.rig, worker.name)
                except errors.GastownError as exc:
                    logger.error("Polecat {}: reset failed: {}", worker.key, exc)
                    self._condition(worker, ConditionType.READY, False, "ResetFailed", str(exc))
                    await self._write_status(worker)
                    return Result(requeue_after=REQUEUE_DEFAULT)

            self._apply_gt_status(worker, status)

        self._mark_idle(worker)
        await self._write_status(worker)
        return Result(requeue_after=SYNC_INTERVAL)

    async def _terminate_local(self, worker: Worker) -> Result:
        gt = self._require_gt()
        if await self._polecat_exists(worker):
            try:
                status = await gt.polecat_status(worker.spec.rig, worker.name)
                cleanup = parse_cleanup_status(status.cleanup_status)
            except errors.GastownError as exc:
                logger.warning("Polecat {}: cleanup status unavailable: {}", worker.key, exc)
                cleanup = CleanupStatus.UNKNOWN
            worker.status.cleanup_status = cleanup

            if cleanup != CleanupStatus.CLEAN:
                return await self._refuse_termination(worker, cleanup)

            logger.info("Terminating polecat {}", worker.key)
            try:
                await gt.polecat_nuke(worker.spec.rig, worker.name)
            except errors.GastownError as exc:
                logger.error("Polecat {}: nuke failed: {}", worker.key, exc)
                self._condition(worker, ConditionType.READY, False, "NukeFailed", str(exc))
                await self._write_status(worker)
                return Result(requeue_after=REQUEUE_DEFAULT)

        worker.status.session_active = False
        worker.status.assigned_bead = None
        self._mark_terminated(worker)
        await self._write_status(worker)
        logger.info("Polecat {} terminated", worker.key)
        return Result()

    def _apply_gt_status(self, worker: Worker, status: PolecatStatus) -> None:
        try:
            worker.status.phase = WorkerPhase(status.phase)
        except ValueError:
            logger.warning("Polecat {}: unknown phase {!r} from gt", worker.key, status.phase)
        if worker.status.phase == WorkerPhase.WORKING and worker.metadata.annotations.get(STUCK_ANNOTATION):
            worker.status.phase = WorkerPhase.STUCK
        worker.status.assigned_bead = status.assigned_bead
        worker.status.branch = status.branch
        worker.status.worktree_path = status.worktree_path
        worker.status.tmux_session = status.tmux_session
        worker.status.session_active = status.session_active
        worker.status.cleanup_status = parse_cleanup_status(status.cleanup_status)
        if status.last_activity is not None:
            worker.status.last_activity = status.last_activity

    # -- Shared transitions ----------------------------------------------------

    def _mark_idle(self, worker: Worker) -> None:
        worker.status.phase = WorkerPhase.IDLE
        self._condition(worker, ConditionType.READY, True, "Idle", "Polecat is idle and ready for work")
        self._condition(worker, ConditionType.WORKING, False, "Idle", "No work assigned")
        self._condition(worker, ConditionType.PROGRESSING, False, "Idle", "No work assigned")

    def _mark_terminated(self, worker: Worker) -> None:
        worker.status.phase = WorkerPhase.TERMINATED
        self._condition(worker, ConditionType.READY, True, "Terminated", "Polecat has been terminated")
        self._condition(worker, ConditionType.WORKING, False, "Terminated", "Polecat has been terminated")
        self._condition(worker, ConditionType.PROGRESSING, False, "Terminated", "Polecat has been terminated")

    async def _refuse_termination(self, worker: Worker, cleanup: CleanupStatus) -> Result:
        logger.warning("Polecat {}: refusing to terminate (cleanupStatus={})", worker.key, cleanup)
        self._condition(
            worker,
            ConditionType.READY,
            False,
            "UncommittedWork",
            f"Polecat workspace is not clean (cleanupStatus={cleanup}); refusing to terminate",
        )
        await self._write_status(worker)
        return Result(requeue_after=REQUEUE_LONG)

    # ---------------------------------------------------------------------------
    # Deletion
    # ---------------------------------------------------------------------------

    async def _handle_deletion(self, worker: Worker) -> Result:
        if not worker.has_finalizer(POLECAT_FINALIZER):
            return Result()

        logger.info("Handling Polecat {} deletion, cleaning up resources", worker.key)
        try:
            if worker.spec.execution_mode == ExecutionMode.KUBERNETES:
                await self._cleanup_kubernetes(worker)
            else:
                await self._cleanup_local(worker)
        except errors.GastownError as exc:
            logger.error("Polecat {}: cleanup failed: {}", worker.key, exc)
            return Result(requeue_after=REQUEUE_DEFAULT)

        await self.release_finalizer(worker, POLECAT_FINALIZER)
        return Result()

    async def _cleanup_kubernetes(self, worker: Worker) -> None:
        try:
            await self.store.delete(Pod, worker.pod_name, worker.namespace)
        except ObjectNotFoundError:
            logger.info("Pod {} already deleted", worker.pod_name)
        else:
            logger.info("Deleted Pod {} for Polecat cleanup", worker.pod_name)

    async def _cleanup_local(self, worker: Worker) -> None:
        gt = self._require_gt()
        if not await self._polecat_exists(worker):
            logger.info("Polecat {} already cleaned up", worker.key)
            return
        # Deleting the object is the explicit override, so force
        logger.info("Nuking polecat {}/{} via gt CLI", worker.spec.rig, worker.name)
        await gt.polecat_nuke(worker.spec.rig, worker.name, force=True)


# ---------------------------------------------------------------------------
# Cleanup status
# ---------------------------------------------------------------------------


def parse_cleanup_status(value: str | None) -> CleanupStatus:
    if not value:
        return CleanupStatus.UNKNOWN
    try:
        return CleanupStatus(value.strip())
    except ValueError:
        return CleanupStatus.UNKNOWN


def pod_cleanup_status(pod: Pod | None) -> CleanupStatus:
    """Cleanup status of a worker Pod.

    No Pod means nothing can be lost.  A Pod that has not finished cannot
    vouch for its checkout, so it is ``unknown``.  A finished agent container
    reports its status through the termination message.
    """
    if pod is None:
        return CleanupStatus.CLEAN
    if pod.status.phase not in (PodPhase.SUCCEEDED, PodPhase.FAILED):
        return CleanupStatus.UNKNOWN
    container = pod.status.container_status(AGENT_CONTAINER)
    if container is None or container.state.terminated is None:
        return CleanupStatus.UNKNOWN
    return parse_cleanup_status(container.state.terminated.message)


def is_degraded(worker: Worker) -> bool:
    return is_condition_true(worker.status.conditions, ConditionType.DEGRADED)
