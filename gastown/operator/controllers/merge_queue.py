"""Merge-Queue (``Refinery``) reconciler.

The queue holds the workspace's workers that finished successfully
(``Available=True``), report a branch and have not been through the queue
yet (no ``Merged`` condition), oldest completion first.  Each pass takes up
to ``parallelism`` items and runs the merge workflow for each in its own
temporary clone.

Per-item outcomes:

- merged: ``Merged=True``; the item leaves the queue.
- tests failed: ``Merged=False/TestsFailed``; the item leaves the queue
  and processing continues.
- conflict: ``Merged=False/Conflict`` and the worker is listed in
  ``status.conflicts``.  The queue goes to Error and stops until the
  operator resolves the branch and clears the worker's ``Merged``
  condition (or deletes the worker).
- any other git failure: the item stays queued and the pass fails with
  a transient error, so it is retried through the backoff service.  It
  is counted as failed once, on its first failed attempt.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger

from gastown.operator import errors, metrics
from gastown.operator.controllers.base import (
    REFINERY_FINALIZER,
    REQUEUE_DEFAULT,
    REQUEUE_LONG,
    Reconciler,
    Request,
    Result,
    get_or_none,
)
from gastown.operator.gitops.client import GitClient, GitCommandError, remove_file, write_ssh_key
from gastown.operator.gitops.merge import MergeOptions, MergeOutcome, MergeResult, validate_test_command
from gastown.operator.models.core import Secret
from gastown.operator.models.enums import ConditionType, MergeQueuePhase
from gastown.operator.models.merge_queue import MergeQueue
from gastown.operator.models.meta import Resource, find_condition, is_condition_true, set_condition, utcnow
from gastown.operator.models.worker import Worker
from gastown.operator.models.workspace import Workspace
from gastown.operator.pod.known_hosts import git_host, is_ssh_url, resolve_known_hosts
from gastown.operator.settings import GastownSettings
from gastown.operator.store.base import ConflictError, ObjectNotFoundError, ObjectStore

IDLE_INTERVAL = REQUEUE_DEFAULT
PROCESSING_INTERVAL = 5.0

SSH_KEY_NAMES = ("ssh-privatekey", "id_rsa", "id_ed25519", "identity")

GitClientFactory = Callable[..., Any]
"""``factory(repo_dir, git_url, *, ssh_key_path, known_hosts)`` -> GitClient-like."""


class MergeSetupError(Exception):
    """The queue cannot run any merge until its configuration is fixed."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


def find_merge_ready(workers: list[Worker]) -> list[Worker]:
    """Workers waiting for a merge, ordered by completion time."""
    ready = [
        w
        for w in workers
        if is_condition_true(w.status.conditions, ConditionType.AVAILABLE)
        and w.status.branch
        and find_condition(w.status.conditions, ConditionType.MERGED) is None
    ]

    def completed_at(worker: Worker) -> Any:
        condition = find_condition(worker.status.conditions, ConditionType.AVAILABLE)
        return (condition.last_transition_time if condition else utcnow(), worker.name)

    return sorted(ready, key=completed_at)


class MergeQueueReconciler(Reconciler):
    name = "refinery"
    resource = MergeQueue
    watches = (Worker,)

    def __init__(
        self,
        store: ObjectStore,
        settings: GastownSettings | None = None,
        *,
        git_factory: GitClientFactory | None = None,
    ) -> None:
        super().__init__(store, settings)
        self.git_factory = git_factory or GitClient

    async def map_event(self, obj: Resource) -> list[Request]:
        if not isinstance(obj, Worker):
            return []
        return [Request(q.name, q.namespace) for q in await self.store.list(MergeQueue) if q.spec.rig_ref == obj.spec.rig]

    async def reconcile(self, request: Request) -> Result:
        queue = await get_or_none(self.store, MergeQueue, request.name, request.namespace)
        if queue is None:
            return Result()

        rig = queue.spec.rig_ref
        if queue.is_deleting:
            metrics.update_queue_length(rig, 0)
            await self.release_finalizer(queue, REFINERY_FINALIZER)
            return Result()

        if await self.ensure_finalizer(queue, REFINERY_FINALIZER):
            return Result(requeue=True)

        logger.info("Reconciling Refinery {} (rigRef={})", queue.key, rig)
        status = queue.status

        try:
            validate_test_command(queue.spec.test_command)
        except errors.GastownError as exc:
            status.phase = MergeQueuePhase.ERROR
            self._condition(queue, ConditionType.READY, False, "InvalidTestCommand", str(exc))
            await self.store.update_status(queue)
            return Result()

        workers = [w for w in await self.store.list(Worker) if w.spec.rig == rig]
        pending = find_merge_ready(workers)
        status.conflicts = _open_conflicts(status.conflicts, workers)
        pending_names = {w.name for w in pending}
        status.retrying = [name for name in status.retrying if name in pending_names]
        status.queue_length = len(pending)
        status.merges_summary.pending = len(pending)
        metrics.update_queue_length(rig, len(pending))

        if status.conflicts:
            status.phase = MergeQueuePhase.ERROR
            status.current_merge = None
            self._condition(
                queue,
                ConditionType.READY,
                False,
                "MergeConflict",
                f"Merge conflicts need operator action: {', '.join(status.conflicts)}",
            )
            self._condition(queue, ConditionType.PROCESSING, False, "MergeConflict")
            await self.store.update_status(queue)
            return Result(requeue_after=IDLE_INTERVAL)

        if not pending:
            status.phase = MergeQueuePhase.IDLE
            status.current_merge = None
            self._condition(queue, ConditionType.READY, True, "Idle", "No merges pending")
            self._condition(queue, ConditionType.PROCESSING, False, "Idle")
            await self.store.update_status(queue)
            return Result(requeue_after=IDLE_INTERVAL)

        batch = pending[: queue.spec.parallelism]
        status.phase = MergeQueuePhase.PROCESSING
        status.current_merge = ", ".join(w.name for w in batch)
        self._condition(queue, ConditionType.READY, True, "Processing", "Processing merges")
        self._condition(queue, ConditionType.PROCESSING, True, "Processing", f"Processing merge for {status.current_merge}")
        queue = await self.store.update_status(queue)
        status = queue.status

        try:
            results = await self._run_batch(queue, batch)
        except MergeSetupError as exc:
            logger.error("Refinery {}: {}", queue.key, exc)
            status.phase = MergeQueuePhase.ERROR
            status.current_merge = None
            self._condition(queue, ConditionType.READY, False, exc.reason, str(exc))
            self._condition(queue, ConditionType.PROCESSING, False, exc.reason)
            await self.store.update_status(queue)
            return Result(requeue_after=REQUEUE_LONG)

        failures: list[str] = []
        marks: list[tuple[Worker, tuple[bool, str, str]]] = []
        for worker, result in zip(batch, results, strict=True):
            mark = self._record_result(queue, worker, result, failures)
            if mark is not None:
                marks.append((worker, mark))
        done = len(marks)

        status.current_merge = None
        status.queue_length = len(pending) - done
        status.merges_summary.pending = status.queue_length
        metrics.update_queue_length(rig, status.queue_length)
        self._condition(queue, ConditionType.PROCESSING, False, "BatchComplete")
        if status.conflicts:
            status.phase = MergeQueuePhase.ERROR
            self._condition(
                queue,
                ConditionType.READY,
                False,
                "MergeConflict",
                f"Merge conflicts need operator action: {', '.join(status.conflicts)}",
            )
        else:
            status.phase = MergeQueuePhase.PROCESSING if status.queue_length else MergeQueuePhase.IDLE
            self._condition(queue, ConditionType.READY, True, "Ready", "Merge queue is processing")
        await self.store.update_status(queue)

        # Counts are persisted even if marking a worker fails
        for worker, (merged, reason, message) in marks:
            await self._mark_worker(worker, merged, reason, message)

        logger.info(
            "Refinery {} pass complete (phase={}, queueLength={}, succeeded={}, failed={})",
            queue.key,
            status.phase,
            status.queue_length,
            status.merges_summary.succeeded,
            status.merges_summary.failed,
        )

        if failures:
            raise errors.transient(None, f"merge failed: {'; '.join(failures)}")
        if status.queue_length and not status.conflicts:
            return Result(requeue_after=PROCESSING_INTERVAL)
        return Result(requeue_after=IDLE_INTERVAL)

    def _condition(self, queue: MergeQueue, condition_type: str, status: bool, reason: str, message: str = "") -> None:
        set_condition(
            queue.status.conditions,
            condition_type,
            status,
            reason,
            message,
            generation=queue.metadata.generation,
        )

    # -- Merging ---------------------------------------------------------------

    async def _run_batch(self, queue: MergeQueue, batch: list[Worker]) -> list[MergeResult]:
        workspace = await get_or_none(self.store, Workspace, queue.spec.rig_ref)
        if workspace is None:
            raise MergeSetupError("RigNotFound", f"rig {queue.spec.rig_ref} not found")
        git_url = workspace.spec.git_url

        known_hosts: list[str] = []
        if is_ssh_url(git_url):
            host = git_host(git_url)
            resolved = resolve_known_hosts(host, self.settings.ssh_known_hosts) if host else None
            if resolved is None:
                raise MergeSetupError(
                    "UnknownGitHost",
                    f"no verified host key for {host}; add it to GASTOWN_SSH_KNOWN_HOSTS",
                )
            known_hosts = resolved

        key_path = await self._write_ssh_key(queue)
        try:
            return list(
                await asyncio.gather(*(self._merge_one(queue, git_url, key_path, known_hosts, w) for w in batch))
            )
        finally:
            if key_path is not None:
                await remove_file(key_path)

    async def _write_ssh_key(self, queue: MergeQueue) -> str | None:
        ref = queue.spec.git_secret_ref
        if ref is None:
            return None
        try:
            secret = await self.store.get(Secret, ref.name, queue.namespace)
        except ObjectNotFoundError as exc:
            raise MergeSetupError("SecretNotFound", f"git secret {ref.name} not found") from exc
        for key in SSH_KEY_NAMES:
            data = secret.decoded(key)
            if data is not None:
                return await write_ssh_key(data)
        raise MergeSetupError("SSHKeyNotFound", f"no SSH key found in secret {ref.name}")

    async def _merge_one(
        self,
        queue: MergeQueue,
        git_url: str,
        key_path: str | None,
        known_hosts: list[str],
        worker: Worker,
    ) -> MergeResult:
        branch = worker.status.branch or ""
        logger.info(
            "Refinery {}: merging {} ({} -> {})",
            queue.key,
            worker.name,
            branch,
            queue.spec.target_branch,
        )
        timer = metrics.MergeTimer(queue.spec.rig_ref)
        workdir = await to_thread.run_sync(partial(tempfile.mkdtemp, prefix="refinery-merge-"))
        try:
            client = self.git_factory(Path(workdir) / "repo", git_url, ssh_key_path=key_path, known_hosts=known_hosts)
            async with client:
                try:
                    await client.clone()
                except GitCommandError as exc:
                    result = MergeResult(MergeOutcome.FAILED, error=f"clone failed: {exc}")
                else:
                    result = await client.merge_branch(
                        MergeOptions(
                            source_branch=branch,
                            target_branch=queue.spec.target_branch,
                            test_command=queue.spec.test_command,
                            strategy=queue.spec.strategy,
                            conflict_resolution=queue.spec.conflict_resolution,
                        )
                    )
        finally:
            await to_thread.run_sync(partial(shutil.rmtree, workdir, ignore_errors=True))

        if result.success:
            timer.record_success()
        else:
            timer.record_error()
        for warning in result.warnings:
            logger.warning("Refinery {}: {}: {}", queue.key, worker.name, warning)
        return result

    def _record_result(
        self, queue: MergeQueue, worker: Worker, result: MergeResult, failures: list[str]
    ) -> tuple[bool, str, str] | None:
        """Count one outcome in the queue status.

        Returns the ``Merged`` condition to write on the worker, or None when
        the item stays queued.  A worker that keeps failing is counted once:
        its first failed attempt adds it to ``retrying``, and a later final
        outcome settles it without adding to ``total``.
        """
        status = queue.status
        summary = status.merges_summary
        retried = worker.name in status.retrying

        if result.outcome == MergeOutcome.FAILED:
            failures.append(f"{worker.name}: {result.error}")
            logger.error("Refinery {}: merge of {} failed: {}", queue.key, worker.name, result.error)
            if not retried:
                status.retrying.append(worker.name)
                summary.total += 1
                summary.failed += 1
            return None

        merged = result.outcome == MergeOutcome.MERGED
        if retried:
            status.retrying.remove(worker.name)
            if merged:
                summary.failed -= 1
        else:
            summary.total += 1
            if not merged:
                summary.failed += 1

        branch = worker.status.branch
        target = queue.spec.target_branch
        if merged:
            summary.succeeded += 1
            status.last_merge_time = utcnow()
            logger.info("Refinery {}: merged {} (commit {})", queue.key, worker.name, result.merged_commit)
            return True, "MergeComplete", f"Branch {branch} merged to {target} (commit: {result.merged_commit})"

        if result.outcome == MergeOutcome.TESTS_FAILED:
            logger.warning("Refinery {}: tests failed for {}: {}", queue.key, worker.name, result.error)
            return False, "TestsFailed", result.error or "tests failed"

        metrics.record_conflict(queue.spec.rig_ref)
        logger.warning(
            "Refinery {}: conflict merging {} (resolution={}): {}",
            queue.key,
            worker.name,
            queue.spec.conflict_resolution,
            result.error,
        )
        if worker.name not in status.conflicts:
            status.conflicts.append(worker.name)
        return False, "Conflict", result.error or "merge conflict"

    async def _mark_worker(self, worker: Worker, merged: bool, reason: str, message: str) -> None:
        for _ in range(3):
            try:
                current = await self.store.get(Worker, worker.name, worker.namespace)
            except ObjectNotFoundError:
                return
            set_condition(current.status.conditions, ConditionType.MERGED, merged, reason, message)
            try:
                await self.store.update_status(current)
            except ConflictError:
                continue
            return
        msg = f"could not record merge result on polecat {worker.name}"
        raise errors.transient(None, msg)


def _open_conflicts(conflicts: list[str], workers: list[Worker]) -> list[str]:
    """Conflicts still waiting on the operator."""
    by_name = {w.name: w for w in workers}
    still_open = []
    for name in conflicts:
        worker = by_name.get(name)
        if worker is None:
            continue
        condition = find_condition(worker.status.conditions, ConditionType.MERGED)
        if condition is not None and condition.reason == "Conflict":
            still_open.append(name)
    return still_open
