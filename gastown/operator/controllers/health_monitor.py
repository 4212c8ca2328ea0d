"""Health-Monitor (``Witness``) reconciler.

Every ``healthCheckInterval`` the monitor classifies the workers of its
workspace:

- ``Done`` -> succeeded;
- ``Degraded=True`` -> failed;
- ``Working`` or ``Stuck`` -> running, and also stuck when the worker's
  last activity is older than ``stuckThreshold``.

The stuck classification is pushed to the worker as the
``gastown.io/stuck-since`` annotation, which the worker reconciler turns
into the Stuck phase.  The annotation is removed once the worker shows
activity again.

Stuck and failed workers are escalated to ``escalationTarget``.  Each
worker follows a fixed schedule (immediately, then 1, 2, 4 and 8 minutes
after the previous escalation) and starts over once it is healthy.  On top
of that, a per-monitor breaker built on the backoff service stops
escalating after ``max_retries`` rounds until the whole workspace is
healthy again.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from gastown.operator import errors
from gastown.operator.backoff import BackoffCalculator
from gastown.operator.controllers.base import (
    STUCK_ANNOTATION,
    WITNESS_FINALIZER,
    Reconciler,
    Request,
    Result,
    get_or_none,
)
from gastown.operator.controllers.worker import is_degraded
from gastown.operator.gt.client import GTClient
from gastown.operator.models.enums import ConditionType, EscalationTarget, MonitorPhase, WorkerPhase
from gastown.operator.models.health_monitor import HealthMonitor, WorkersSummary
from gastown.operator.models.meta import Resource, set_condition, utcnow
from gastown.operator.models.worker import Worker
from gastown.operator.settings import GastownSettings
from gastown.operator.store.base import ConflictError, ObjectNotFoundError, ObjectStore

ESCALATION_SCHEDULE = (0.0, 60.0, 120.0, 240.0, 480.0)
"""Seconds to wait after the previous escalation, by attempt number."""


# ---------------------------------------------------------------------------
# Escalation schedule
# ---------------------------------------------------------------------------


@dataclass
class _Escalation:
    attempts: int
    last: float


class EscalationTracker:
    """Per-worker escalation rate limiter.

    Attempt 1 is immediate; attempt ``n`` is allowed once
    ``ESCALATION_SCHEDULE[n - 1]`` seconds have passed since attempt
    ``n - 1``.  Later attempts stay at the last (capped) delay.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._state: dict[str, _Escalation] = {}

    @staticmethod
    def delay_after(attempts: int) -> float:
        return ESCALATION_SCHEDULE[min(attempts, len(ESCALATION_SCHEDULE) - 1)]

    def should_escalate(self, key: str) -> bool:
        with self._lock:
            state = self._state.get(key)
            if state is None:
                return True
            return self._clock() - state.last >= self.delay_after(state.attempts)

    def record(self, key: str) -> int:
        """Count an escalation for ``key``.  Returns the attempt number."""
        now = self._clock()
        with self._lock:
            state = self._state.get(key)
            if state is None:
                state = self._state[key] = _Escalation(attempts=0, last=now)
            state.attempts += 1
            state.last = now
            return state.attempts

    def attempts(self, key: str) -> int:
        with self._lock:
            state = self._state.get(key)
            return state.attempts if state is not None else 0

    def reset(self, key: str) -> None:
        with self._lock:
            self._state.pop(key, None)

    def cleanup(self, active_keys: Iterable[str]) -> int:
        active = set(active_keys)
        with self._lock:
            stale = [key for key in self._state if key not in active]
            for key in stale:
                del self._state[key]
        return len(stale)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerHealth:
    worker: Worker
    running: bool = False
    succeeded: bool = False
    failed: bool = False
    stuck: bool = False

    @property
    def healthy(self) -> bool:
        return not (self.failed or self.stuck)


def classify(worker: Worker, stuck_threshold: float, now: datetime) -> WorkerHealth:
    phase = worker.status.phase
    if phase == WorkerPhase.DONE:
        return WorkerHealth(worker, succeeded=True)
    if is_degraded(worker):
        return WorkerHealth(worker, failed=True)
    if phase in (WorkerPhase.WORKING, WorkerPhase.STUCK):
        last = worker.status.last_activity or worker.metadata.creation_timestamp
        stuck = last is not None and (now - last).total_seconds() > stuck_threshold
        return WorkerHealth(worker, running=True, stuck=stuck)
    return WorkerHealth(worker)


def summarize(health: list[WorkerHealth]) -> WorkersSummary:
    return WorkersSummary(
        total=len(health),
        running=sum(h.running for h in health),
        succeeded=sum(h.succeeded for h in health),
        failed=sum(h.failed for h in health),
        stuck=sum(h.stuck for h in health),
    )


def determine_phase(summary: WorkersSummary) -> MonitorPhase:
    if summary.stuck or summary.failed:
        return MonitorPhase.DEGRADED
    if summary.running:
        return MonitorPhase.ACTIVE
    return MonitorPhase.PENDING


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class HealthMonitorReconciler(Reconciler):
    name = "witness"
    resource = HealthMonitor
    watches = (Worker,)
    max_concurrent = 2

    def __init__(
        self,
        store: ObjectStore,
        settings: GastownSettings | None = None,
        *,
        gt: GTClient | None = None,
        backoff: BackoffCalculator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(store, settings)
        self.gt = gt
        if backoff is None:
            backoff = BackoffCalculator(
                self.settings.backoff_base,
                self.settings.backoff_max,
                self.settings.backoff_max_retries,
            )
        self.backoff = backoff
        self._clock = clock
        self._trackers: dict[str, EscalationTracker] = {}

    def tracker(self, monitor_key: str) -> EscalationTracker:
        tracker = self._trackers.get(monitor_key)
        if tracker is None:
            tracker = self._trackers[monitor_key] = EscalationTracker(self._clock)
        return tracker

    def cleanup(self, live_keys: set[str]) -> None:
        self.backoff.cleanup(live_keys)
        for key in [k for k in self._trackers if k not in live_keys]:
            del self._trackers[key]

    async def map_event(self, obj: Resource) -> list[Request]:
        if not isinstance(obj, Worker):
            return []
        return [
            Request(m.name, m.namespace) for m in await self.store.list(HealthMonitor) if m.spec.rig_ref == obj.spec.rig
        ]

    async def reconcile(self, request: Request) -> Result:
        monitor = await get_or_none(self.store, HealthMonitor, request.name, request.namespace)
        if monitor is None:
            return Result()

        if monitor.is_deleting:
            self._trackers.pop(monitor.key, None)
            self.backoff.reset_retries(monitor.key)
            await self.release_finalizer(monitor, WITNESS_FINALIZER)
            return Result()

        if await self.ensure_finalizer(monitor, WITNESS_FINALIZER):
            return Result(requeue=True)

        logger.info("Reconciling Witness {} (rigRef={})", monitor.key, monitor.spec.rig_ref)
        interval = monitor.spec.health_check_interval.total_seconds()
        threshold = monitor.spec.stuck_threshold.total_seconds()
        now = utcnow()

        workers = [w for w in await self.store.list(Worker) if w.spec.rig == monitor.spec.rig_ref]
        health = [classify(w, threshold, now) for w in workers]
        summary = summarize(health)

        monitor.status.phase = determine_phase(summary)
        monitor.status.last_check_time = now
        monitor.status.polecats_summary = summary

        await self._publish_stuck(health)

        tracker = self.tracker(monitor.key)
        tracker.cleanup(h.worker.key for h in health)
        for h in health:
            if h.healthy:
                tracker.reset(h.worker.key)

        generation = monitor.metadata.generation
        conditions = monitor.status.conditions
        if summary.stuck or summary.failed:
            set_condition(
                conditions,
                ConditionType.READY,
                False,
                "IssuesDetected",
                "Stuck or failed polecats detected",
                generation=generation,
            )
            await self._escalate(monitor, [h for h in health if not h.healthy], tracker)
        else:
            set_condition(
                conditions,
                ConditionType.READY,
                True,
                "AllHealthy",
                "All polecats are healthy",
                generation=generation,
            )
            self.backoff.reset_retries(monitor.key)
        set_condition(conditions, ConditionType.DEGRADED, False, "HealthCheckSucceeded", generation=generation)
        await self.store.update_status(monitor)

        logger.info(
            "Witness {} health check complete (total={}, running={}, succeeded={}, failed={}, stuck={})",
            monitor.key,
            summary.total,
            summary.running,
            summary.succeeded,
            summary.failed,
            summary.stuck,
        )
        return Result(requeue_after=interval)

    # -- Stuck signal ----------------------------------------------------------

    async def _publish_stuck(self, health: list[WorkerHealth]) -> None:
        """Write or clear the stuck annotation on every worker whose state changed."""
        for h in health:
            worker = h.worker
            annotated = STUCK_ANNOTATION in worker.metadata.annotations
            if h.stuck == annotated:
                continue
            if h.stuck:
                since = worker.status.last_activity or worker.metadata.creation_timestamp or utcnow()
                worker.metadata.annotations[STUCK_ANNOTATION] = since.isoformat()
                logger.warning("Polecat {} shows no progress since {}", worker.key, since)
            else:
                del worker.metadata.annotations[STUCK_ANNOTATION]
                logger.info("Polecat {} is making progress again", worker.key)
            try:
                await self.store.update(worker)
            except (ConflictError, ObjectNotFoundError) as exc:
                # The next health check retries
                logger.debug("Polecat {}: stuck annotation not written: {}", worker.key, exc)

    # -- Escalation ------------------------------------------------------------

    async def _escalate(self, monitor: HealthMonitor, unhealthy: list[WorkerHealth], tracker: EscalationTracker) -> None:
        due = [h for h in unhealthy if tracker.should_escalate(h.worker.key)]
        if not due:
            return
        if self.backoff.should_give_up(monitor.key):
            logger.warning(
                "Witness {}: circuit breaker open after {} escalations, skipping",
                monitor.key,
                self.backoff.get_retry_count(monitor.key),
            )
            return

        for h in due:
            tracker.record(h.worker.key)
        self.backoff.get_backoff_result(monitor.key)
        logger.info(
            "Witness {}: escalation attempt {} ({} polecats)",
            monitor.key,
            self.backoff.get_retry_count(monitor.key),
            len(due),
        )

        summary = monitor.status.polecats_summary
        subject = f"Health Alert: Witness {monitor.namespace}.{monitor.name} detected issues"
        lines = [
            f"Rig: {monitor.spec.rig_ref}",
            f"Phase: {monitor.status.phase}",
            f"Stuck Polecats: {summary.stuck}",
            f"Failed Polecats: {summary.failed}",
            f"Running: {summary.running}/{summary.total}",
        ]
        lines.extend(
            f"- {h.worker.name}: {'failed' if h.failed else 'stuck'} (attempt {tracker.attempts(h.worker.key)})"
            for h in due
        )
        await self._send(monitor, subject, "\n".join(lines))

    async def _send(self, monitor: HealthMonitor, subject: str, message: str) -> None:
        target = monitor.spec.escalation_target or EscalationTarget.MAYOR
        if target == EscalationTarget.MAYOR:
            if self.gt is None:
                logger.warning("Witness {}: no gt client configured, escalation not sent", monitor.key)
                return
            try:
                await self.gt.mail_send(target, subject, message)
            except errors.GastownError as exc:
                logger.error("Witness {}: failed to send escalation mail to mayor: {}", monitor.key, exc)
            else:
                logger.info("Witness {}: escalation mail sent to mayor", monitor.key)
        elif target in (EscalationTarget.SLACK, EscalationTarget.EMAIL):
            logger.warning("Witness {}: {} escalation is not implemented", monitor.key, target)
        else:
            logger.warning("Witness {}: unknown escalation target {!r}", monitor.key, target)
