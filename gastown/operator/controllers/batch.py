"""Batch (``Convoy``) reconciler.

A batch's progress is derived from the workers assigned to its tracked
tasks:

- worker ``Done`` -> completed;
- worker ``Degraded=True`` -> failed;
- worker ``Working``/``Stuck``, or a task dispatched earlier that has not
  finished -> active;
- anything else -> pending.

Phases: Pending (nothing started), InProgress, Complete (every task
completed) and Failed (nothing pending or active, at least one failure).

When the batch names a workspace (``rigRef``) and a gt client is
configured, the batch is registered with ``convoy create`` and pending
tasks are dispatched with ``sling``, never more than ``parallelism`` in
flight.  Slung tasks run as gt polecats with no Worker object, so their
completion is read back from ``convoy status``.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Collection

from loguru import logger

from gastown.operator import errors, metrics
from gastown.operator.controllers.base import REQUEUE_DEFAULT, Reconciler, Request, Result, get_or_none
from gastown.operator.controllers.worker import is_degraded
from gastown.operator.gt.client import GTClient
from gastown.operator.models.batch import Batch
from gastown.operator.models.enums import BatchPhase, ConditionType, WorkerPhase
from gastown.operator.models.meta import Resource, set_condition, utcnow
from gastown.operator.models.worker import Worker
from gastown.operator.settings import GastownSettings
from gastown.operator.store.base import ObjectStore

SYNC_INTERVAL = REQUEUE_DEFAULT


def worker_bead(worker: Worker) -> str | None:
    return worker.spec.bead_id or worker.status.assigned_bead


def derive_progress(
    batch: Batch,
    workers: list[Worker],
    reported_done: Collection[str] = (),
) -> tuple[list[str], list[str], list[str], list[str]]:
    """Split the tracked tasks into (completed, failed, active, pending).

    ``reported_done`` holds tasks the issue tracker already reports as
    closed; slung tasks run as gt polecats and may never have a Worker.
    """
    by_bead: dict[str, Worker] = {}
    for worker in workers:
        bead = worker_bead(worker)
        if bead is not None:
            by_bead[bead] = worker

    dispatched = set(batch.status.active_beads)
    completed: list[str] = []
    failed: list[str] = []
    active: list[str] = []
    pending: list[str] = []
    for bead in batch.spec.tracked_beads:
        worker = by_bead.get(bead)
        if bead in reported_done or (worker is not None and worker.status.phase == WorkerPhase.DONE):
            completed.append(bead)
        elif worker is not None and is_degraded(worker):
            failed.append(bead)
        elif (worker is not None and worker.status.phase in (WorkerPhase.WORKING, WorkerPhase.STUCK)) or (
            bead in dispatched
        ):
            active.append(bead)
        else:
            pending.append(bead)
    return completed, failed, active, pending


def determine_phase(tracked: int, completed: int, failed: int, active: int, pending: int) -> BatchPhase:
    if completed == tracked:
        return BatchPhase.COMPLETE
    if failed and not pending and not active:
        return BatchPhase.FAILED
    if completed or failed or active:
        return BatchPhase.IN_PROGRESS
    return BatchPhase.PENDING


class BatchReconciler(Reconciler):
    name = "convoy"
    resource = Batch
    watches = (Worker,)
    max_concurrent = 2

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
        if not isinstance(obj, Worker):
            return []
        bead = worker_bead(obj)
        if bead is None:
            return []
        return [Request(b.name, b.namespace) for b in await self.store.list(Batch) if bead in b.spec.tracked_beads]

    async def reconcile(self, request: Request) -> Result:
        batch = await get_or_none(self.store, Batch, request.name, request.namespace)
        if batch is None:
            return Result()

        status = batch.status
        if status.phase == BatchPhase.COMPLETE and status.completed_at is not None:
            return Result()

        logger.info("Reconciling Convoy {} (trackedBeads={})", batch.key, len(batch.spec.tracked_beads))
        generation = batch.metadata.generation
        dispatching = bool(batch.spec.rig_ref) and self.gt is not None

        if dispatching and status.beads_convoy_id is None:
            try:
                status.beads_convoy_id = await self.gt.convoy_create(batch.spec.description, batch.spec.tracked_beads)
            except errors.GastownError as exc:
                logger.error("Convoy {}: failed to create convoy in beads: {}", batch.key, exc)
                set_condition(
                    status.conditions, ConditionType.READY, False, "CreateFailed", str(exc), generation=generation
                )
                await self.store.update_status(batch)
                return Result(requeue_after=SYNC_INTERVAL)
            logger.info("Convoy {} created in beads (id={})", batch.key, status.beads_convoy_id)

        reported_done: set[str] = set()
        if dispatching:
            try:
                convoy = await self.gt.convoy_status(status.beads_convoy_id)
            except errors.GastownError as exc:
                logger.error("Convoy {}: failed to get convoy status from gt: {}", batch.key, exc)
                set_condition(
                    status.conditions,
                    ConditionType.READY,
                    False,
                    errors.to_condition_reason(exc),
                    str(exc),
                    generation=generation,
                )
                await self.store.update_status(batch)
                return Result(requeue_after=SYNC_INTERVAL)
            if convoy.phase == BatchPhase.COMPLETE:
                reported_done.update(batch.spec.tracked_beads)
            else:
                reported_done.update(convoy.completed)

        workers = await self.store.list(Worker)
        if batch.spec.rig_ref:
            workers = [w for w in workers if w.spec.rig == batch.spec.rig_ref]
        completed, failed, active, pending = derive_progress(batch, workers, reported_done)

        ready_reason, ready_message = "Synced", "Progress derived from polecats"
        if dispatching:
            try:
                await self._dispatch(batch, active, pending)
            except errors.GastownError as exc:
                logger.error("Convoy {}: dispatch failed: {}", batch.key, exc)
                ready_reason, ready_message = "DispatchFailed", str(exc)

        tracked = len(batch.spec.tracked_beads)
        phase = determine_phase(tracked, len(completed), len(failed), len(active), len(pending))
        now = utcnow()
        finished = phase == BatchPhase.COMPLETE and status.completed_at is None

        status.phase = phase
        status.progress = f"{len(completed)}/{tracked}"
        status.completed_beads = completed
        status.failed_beads = failed
        status.active_beads = active
        status.pending_beads = pending
        if phase != BatchPhase.PENDING and status.started_at is None:
            status.started_at = now

        set_condition(
            status.conditions,
            ConditionType.READY,
            ready_reason != "DispatchFailed",
            ready_reason,
            ready_message,
            generation=generation,
        )
        if finished:
            status.completed_at = now
            set_condition(
                status.conditions,
                ConditionType.COMPLETE,
                True,
                "Complete",
                "All tracked beads completed",
                generation=generation,
            )
        elif phase != BatchPhase.COMPLETE:
            set_condition(
                status.conditions,
                ConditionType.COMPLETE,
                False,
                str(phase),
                f"Progress: {status.progress}",
                generation=generation,
            )

        await self.store.update_status(batch)
        await self._record_phases()

        if finished and batch.spec.notify_on_complete:
            await self._notify(batch)

        logger.info("Convoy {} reconciled (phase={}, progress={})", batch.key, status.phase, status.progress)
        if phase == BatchPhase.COMPLETE:
            return Result()
        return Result(requeue_after=SYNC_INTERVAL)

    async def _dispatch(self, batch: Batch, active: list[str], pending: list[str]) -> None:
        """Sling pending tasks until ``parallelism`` are in flight.  Mutates both lists."""
        assert self.gt is not None
        assert batch.spec.rig_ref is not None
        limit = batch.spec.parallelism or len(batch.spec.tracked_beads)
        while pending and len(active) < limit:
            bead = pending[0]
            await self.gt.sling(bead, batch.spec.rig_ref)
            logger.info("Convoy {}: dispatched {} to rig {}", batch.key, bead, batch.spec.rig_ref)
            pending.pop(0)
            active.append(bead)

    async def _notify(self, batch: Batch) -> None:
        address = batch.spec.notify_on_complete
        if self.gt is None or address is None:
            logger.warning("Convoy {}: no gt client configured, completion notice not sent", batch.key)
            return
        completed = batch.status.completed_beads
        subject = f"Convoy Complete: {batch.spec.description}"
        message = f"Convoy {batch.name} has completed.\n\nCompleted beads: {len(completed)}\n\n{', '.join(completed)}"
        try:
            await self.gt.mail_send(address, subject, message)
        except errors.GastownError as exc:
            logger.error("Convoy {}: failed to send completion notification to {}: {}", batch.key, address, exc)
        else:
            logger.info("Convoy {}: sent completion notification to {}", batch.key, address)

    async def _record_phases(self) -> None:
        batches = await self.store.list(Batch)
        counts = Counter(b.status.phase.value for b in batches)
        metrics.update_convoy_phases({phase.value: counts.get(phase.value, 0) for phase in BatchPhase})
