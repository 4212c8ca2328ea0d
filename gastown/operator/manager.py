"""Controller manager: work queues, watch fan-out, resync and retries.

Each reconciler gets a ``Controller`` with its own work queue and
``max_concurrent`` worker tasks.  The queue de-duplicates requests and
never hands the same object to two workers at once; a request added while
its object is being reconciled is processed again once the running pass
finishes.

One watch stream feeds every controller.  Events for a controller's
primary kind enqueue that object, except status-only updates (nothing in
generation, deletion, finalizers, labels or annotations changed), which
would otherwise make every status write trigger another reconcile.
Events for a watched secondary kind are mapped to primary requests by the
reconciler.

Failed reconciles are recorded as a ``Degraded`` condition on the object
and, when the error is retryable, retried after the shared backoff delay
until the retry ceiling is reached.  A successful reconcile resets the
object's retry count and clears the ``Degraded`` condition an earlier
failure recorded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from gastown.operator import errors, metrics
from gastown.operator.backoff import BackoffCalculator
from gastown.operator.controllers.base import Reconciler, Request
from gastown.operator.log import reconcile_context
from gastown.operator.models.meta import Resource
from gastown.operator.settings import GastownSettings, get_settings
from gastown.operator.store.base import ConflictError, EventType, ObjectStore, WatchEvent
from gastown.operator.store.memory import DEFAULT_NAMESPACE

logger = logging.getLogger(__name__)

CONFLICT_RETRY_DELAY = 1.0

Fingerprint = tuple[object, ...]


def fingerprint(obj: Resource) -> Fingerprint:
    """Everything about an object a reconciler reacts to, status excluded."""
    meta = obj.metadata
    return (
        meta.generation,
        meta.deletion_timestamp is not None,
        tuple(meta.finalizers),
        tuple(sorted(meta.annotations.items())),
        tuple(sorted(meta.labels.items())),
    )


# ---------------------------------------------------------------------------
# Work queue
# ---------------------------------------------------------------------------


class WorkQueue:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Request] = asyncio.Queue()
        self._queued: set[Request] = set()
        self._processing: set[Request] = set()
        self._dirty: set[Request] = set()
        self._timers: dict[Request, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._queued)

    def add(self, request: Request) -> None:
        if request in self._queued:
            return
        if request in self._processing:
            self._dirty.add(request)
            return
        self._queued.add(request)
        self._queue.put_nowait(request)

    def add_after(self, request: Request, delay: float) -> None:
        """Add ``request`` after ``delay`` seconds.  An earlier pending timer wins."""
        if delay <= 0:
            self.add(request)
            return
        loop = asyncio.get_running_loop()
        existing = self._timers.get(request)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[request] = loop.call_later(delay, self._fire, request)

    def _fire(self, request: Request) -> None:
        self._timers.pop(request, None)
        self.add(request)

    async def get(self) -> Request:
        request = await self._queue.get()
        self._queued.discard(request)
        self._processing.add(request)
        return request

    def done(self, request: Request) -> None:
        self._processing.discard(request)
        if request in self._dirty:
            self._dirty.discard(request)
            self.add(request)

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class Controller:
    """Drives one reconciler: queue, workers and error handling."""

    def __init__(self, reconciler: Reconciler, backoff: BackoffCalculator) -> None:
        self.reconciler = reconciler
        self.backoff = backoff
        self.queue = WorkQueue()
        self._fingerprints: dict[str, Fingerprint] = {}
        self._workers: list[asyncio.Task[None]] = []

    @property
    def name(self) -> str:
        return self.reconciler.name

    def request_for(self, name: str, namespace: str | None) -> Request:
        if not self.reconciler.resource.namespaced:
            return Request(name)
        return Request(name, namespace or DEFAULT_NAMESPACE)

    def enqueue(self, request: Request, delay: float | None = None) -> None:
        request = self.request_for(request.name, request.namespace)
        if delay:
            self.queue.add_after(request, delay)
        else:
            self.queue.add(request)

    # -- Events ----------------------------------------------------------------

    async def handle_event(self, event: WatchEvent) -> None:
        obj = event.obj
        if isinstance(obj, self.reconciler.resource):
            key = obj.key
            if event.type == EventType.DELETED:
                self._fingerprints.pop(key, None)
                self.backoff.reset_retries(key)
                return
            current = fingerprint(obj)
            if event.type == EventType.MODIFIED and self._fingerprints.get(key) == current:
                return
            self._fingerprints[key] = current
            self.enqueue(Request(obj.name, obj.namespace))
        elif isinstance(obj, self.reconciler.watches):
            try:
                requests = await self.reconciler.map_event(obj)
            except Exception:
                logger.exception("[%s] failed to map %s event for %s", self.name, event.type, obj.key)
                return
            for request in requests:
                self.enqueue(request)

    # -- Workers ---------------------------------------------------------------

    def start(self) -> None:
        for index in range(self.reconciler.max_concurrent):
            self._workers.append(asyncio.create_task(self._work(), name=f"{self.name}-worker-{index}"))

    async def stop(self) -> None:
        self.queue.shutdown()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()

    async def _work(self) -> None:
        while True:
            request = await self.queue.get()
            try:
                await self.process(request)
            finally:
                self.queue.done(request)

    async def process(self, request: Request) -> None:
        """Run one reconcile and schedule the follow-up."""
        key = self.reconciler.key(request)
        timer = metrics.ReconcileTimer(self.name)
        try:
            with reconcile_context(self.name, key):
                result = await self.reconciler.reconcile(request)
        except ConflictError as exc:
            # Someone else wrote the object first; read it again shortly
            logger.debug("[%s] %s: write conflict, requeueing: %s", self.name, key, exc)
            timer.record_result(metrics.ReconcileResult.REQUEUE)
            self.queue.add_after(request, CONFLICT_RETRY_DELAY)
        except Exception as exc:
            timer.record_result(metrics.ReconcileResult.ERROR)
            await self._handle_error(request, key, exc)
        else:
            self.backoff.reset_retries(key)
            try:
                await self.reconciler.clear_error(request)
            except Exception:
                logger.exception("[%s] %s: failed to clear error condition", self.name, key)
            if result.requeue:
                timer.record_result(metrics.ReconcileResult.REQUEUE)
                self.queue.add(request)
            elif result.requeue_after:
                timer.record_result(metrics.ReconcileResult.REQUEUE)
                self.queue.add_after(request, result.requeue_after)
            else:
                timer.record_result(metrics.ReconcileResult.SUCCESS)
        finally:
            timer.observe_duration()

    async def _handle_error(self, request: Request, key: str, exc: Exception) -> None:
        metrics.record_error(self.name, errors.error_type_of(exc))
        try:
            await self.reconciler.report_error(request, exc)
        except Exception:
            logger.exception("[%s] %s: failed to record error condition", self.name, key)

        if errors.is_retryable(exc) and not self.backoff.should_give_up(key):
            delay = self.backoff.get_backoff_result(key)
            logger.warning(
                "[%s] %s: reconcile failed, retry %d in %.0fs: %s",
                self.name,
                key,
                self.backoff.get_retry_count(key),
                delay,
                exc,
            )
            self.queue.add_after(request, delay)
        elif errors.is_retryable(exc):
            logger.error(
                "[%s] %s: giving up after %d retries: %s", self.name, key, self.backoff.get_retry_count(key), exc
            )
        else:
            logger.error("[%s] %s: reconcile failed: %s", self.name, key, exc, exc_info=exc)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class Manager:
    def __init__(
        self,
        store: ObjectStore,
        reconcilers: Sequence[Reconciler],
        *,
        settings: GastownSettings | None = None,
        backoff: BackoffCalculator | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        if backoff is None:
            backoff = BackoffCalculator(
                self.settings.backoff_base,
                self.settings.backoff_max,
                self.settings.backoff_max_retries,
            )
        self.backoff = backoff
        self.controllers = [Controller(r, self.backoff) for r in reconcilers]
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def controller(self, name: str) -> Controller:
        for controller in self.controllers:
            if controller.name == name:
                return controller
        raise KeyError(name)

    async def start(self) -> None:
        if self._tasks:
            return
        logger.info("Manager starting %d controllers", len(self.controllers))
        for controller in self.controllers:
            controller.start()
        self._tasks = [
            asyncio.create_task(self._watch(), name="manager-watch"),
            asyncio.create_task(self._resync_loop(), name="manager-resync"),
            asyncio.create_task(self._cleanup_loop(), name="manager-backoff-cleanup"),
        ]
        # Let the watch subscribe before anyone writes
        await asyncio.sleep(0)

    async def stop(self) -> None:
        logger.info("Manager stopping")
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        for controller in self.controllers:
            await controller.stop()

    # -- Loops -----------------------------------------------------------------

    async def _watch(self) -> None:
        async for event in self.store.watch():
            for controller in self.controllers:
                await controller.handle_event(event)

    async def _resync_loop(self) -> None:
        while True:
            await self.resync()
            await asyncio.sleep(self.settings.resync_interval)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.backoff_cleanup_interval)
            await self.cleanup()

    async def resync(self) -> None:
        """Enqueue every primary object of every controller."""
        for controller in self.controllers:
            for obj in await self.store.list(controller.reconciler.resource):
                controller.enqueue(Request(obj.name, obj.namespace))

    async def cleanup(self) -> int:
        """Forget backoff state of objects that no longer exist."""
        live: set[str] = set()
        for controller in self.controllers:
            live.update(obj.key for obj in await self.store.list(controller.reconciler.resource))
        removed = self.backoff.cleanup(live)
        for controller in self.controllers:
            controller.reconciler.cleanup(live)
        if removed:
            logger.debug("Backoff cleanup removed %d stale entries (%d tracked)", removed, len(self.backoff))
        return removed
