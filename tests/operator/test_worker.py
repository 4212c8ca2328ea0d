"""Tests for WorkerReconciler in both execution modes."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from gastown.operator import errors
from gastown.operator.backoff import BackoffCalculator
from gastown.operator.controllers.base import POLECAT_FINALIZER, STUCK_ANNOTATION, Request, Result
from gastown.operator.controllers.worker import (
    WorkerReconciler,
    is_degraded,
    parse_cleanup_status,
    pod_cleanup_status,
)
from gastown.operator.gt.types import PolecatStatus
from gastown.operator.manager import Controller
from gastown.operator.models import (
    CleanupStatus,
    ConditionType,
    DesiredState,
    ExecutionMode,
    ObjectMeta,
    Pod,
    PodPhase,
    Worker,
    WorkerPhase,
)
from gastown.operator.models.core import ContainerState, ContainerStateTerminated, ContainerStatus
from gastown.operator.models.meta import OwnerReference, find_condition
from gastown.operator.settings import GastownSettings
from gastown.operator.store.base import ObjectNotFoundError
from gastown.operator.store.memory import InMemoryObjectStore
from tests.factories import make_worker


async def _reconcile(reconciler: WorkerReconciler, name: str = "toast", namespace: str = "default") -> Result:
    result = await reconciler.reconcile(Request(name, namespace))
    while result.requeue:
        result = await reconciler.reconcile(Request(name, namespace))
    return result


async def _set_pod_phase(store: InMemoryObjectStore, phase: PodPhase, cleanup: str | None = None) -> None:
    pod = await store.get(Pod, "polecat-toast", "default")
    pod.status.phase = phase
    pod.status.start_time = datetime(2026, 1, 1, tzinfo=UTC)
    if cleanup is not None:
        pod.status.container_statuses = [
            ContainerStatus(
                name="agent",
                state=ContainerState(terminated=ContainerStateTerminated(exit_code=0, message=cleanup)),
            )
        ]
    await store.update_status(pod)


async def _set_desired(store: InMemoryObjectStore, desired: DesiredState) -> None:
    worker = await store.get(Worker, "toast", "default")
    worker.spec.desired_state = desired
    await store.update(worker)


def _reason(worker: Worker, condition_type: str) -> str | None:
    condition = find_condition(worker.status.conditions, condition_type)
    return condition.reason if condition is not None else None


# ---------------------------------------------------------------------------
# Kubernetes mode
# ---------------------------------------------------------------------------


@pytest.fixture
def reconciler(store: InMemoryObjectStore, settings: GastownSettings) -> WorkerReconciler:
    return WorkerReconciler(store, settings)


async def test_missing_worker_is_noop(reconciler: WorkerReconciler) -> None:
    assert await reconciler.reconcile(Request("ghost", "default")) == Result()


async def test_first_reconcile_adds_finalizer(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True))

    result = await reconciler.reconcile(Request("toast", "default"))

    assert result.requeue is True
    assert (await store.get(Worker, "toast", "default")).has_finalizer(POLECAT_FINALIZER)


async def test_working_creates_pod(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True, bead_id="dm-1", desired_state=DesiredState.WORKING))

    result = await _reconcile(reconciler)

    assert result.requeue_after == 10.0
    pod = await store.get(Pod, "polecat-toast", "default")
    assert pod.metadata.owner_references[0].name == "toast"

    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == WorkerPhase.WORKING
    assert worker.status.pod_name == "polecat-toast"
    assert worker.status.assigned_bead == "dm-1"
    assert worker.status.branch == "feature/dm-1"
    assert _reason(worker, ConditionType.READY) == "PodCreated"

    # Reconciling again does not create a second pod.
    await _reconcile(reconciler)
    assert len(await store.list(Pod)) == 1


async def test_idle_without_pod(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True))

    assert await _reconcile(reconciler) == Result()
    assert await store.list(Pod) == []
    assert (await store.get(Worker, "toast", "default")).status.phase == WorkerPhase.IDLE


async def test_missing_kubernetes_spec(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(execution_mode=ExecutionMode.KUBERNETES, desired_state=DesiredState.WORKING))

    result = await _reconcile(reconciler)

    worker = await store.get(Worker, "toast", "default")
    assert result.requeue_after == 60.0
    assert worker.status.phase == WorkerPhase.STUCK
    assert _reason(worker, ConditionType.READY) == "MissingKubernetesSpec"


@pytest.mark.parametrize(
    ("pod_phase", "worker_phase", "requeue_after"),
    [
        (PodPhase.PENDING, WorkerPhase.WORKING, 10.0),
        (PodPhase.RUNNING, WorkerPhase.WORKING, 10.0),
        (PodPhase.SUCCEEDED, WorkerPhase.DONE, None),
        (PodPhase.FAILED, WorkerPhase.STUCK, None),
    ],
)
async def test_phase_follows_pod(
    store: InMemoryObjectStore,
    reconciler: WorkerReconciler,
    pod_phase: PodPhase,
    worker_phase: WorkerPhase,
    requeue_after: float | None,
) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, pod_phase)

    result = await _reconcile(reconciler)

    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == worker_phase
    assert result.requeue_after == requeue_after
    assert worker.status.last_activity == datetime(2026, 1, 1, tzinfo=UTC)


async def test_failed_pod_marks_degraded(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, PodPhase.FAILED, cleanup="has_uncommitted")

    await _reconcile(reconciler)

    worker = await store.get(Worker, "toast", "default")
    assert _reason(worker, ConditionType.DEGRADED) == "PodFailed"
    assert worker.status.cleanup_status == CleanupStatus.UNCOMMITTED


async def test_stuck_annotation_marks_running_worker_stuck(
    store: InMemoryObjectStore, reconciler: WorkerReconciler
) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, PodPhase.RUNNING)

    worker = await store.get(Worker, "toast", "default")
    worker.metadata.annotations[STUCK_ANNOTATION] = "2026-01-01T00:00:00Z"
    await store.update(worker)
    await _reconcile(reconciler)

    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == WorkerPhase.STUCK
    assert _reason(worker, ConditionType.PROGRESSING) == "NoProgress"


async def test_terminate_refused_with_unpushed_work(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, PodPhase.SUCCEEDED, cleanup="has_unpushed")
    await _set_desired(store, DesiredState.TERMINATED)

    result = await _reconcile(reconciler)

    assert result.requeue_after == 60.0
    assert await store.get(Pod, "polecat-toast", "default")
    worker = await store.get(Worker, "toast", "default")
    assert worker.status.cleanup_status == CleanupStatus.UNPUSHED
    ready = find_condition(worker.status.conditions, ConditionType.READY)
    assert ready.reason == "UncommittedWork"
    assert "has_unpushed" in ready.message


async def test_terminate_refused_while_pod_running(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, PodPhase.RUNNING)
    await _set_desired(store, DesiredState.TERMINATED)

    await _reconcile(reconciler)

    assert await store.get(Pod, "polecat-toast", "default")
    assert (await store.get(Worker, "toast", "default")).status.cleanup_status == CleanupStatus.UNKNOWN


async def test_terminate_clean_worker_deletes_pod(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, PodPhase.SUCCEEDED, cleanup="clean")
    await _set_desired(store, DesiredState.TERMINATED)

    assert await _reconcile(reconciler) == Result()

    with pytest.raises(ObjectNotFoundError):
        await store.get(Pod, "polecat-toast", "default")
    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == WorkerPhase.TERMINATED
    assert worker.status.pod_name is None


async def test_delete_removes_pod_and_releases_finalizer(
    store: InMemoryObjectStore, reconciler: WorkerReconciler
) -> None:
    await store.create(make_worker(kubernetes=True, desired_state=DesiredState.WORKING))
    await _reconcile(reconciler)
    await _set_pod_phase(store, PodPhase.RUNNING)

    await store.delete(Worker, "toast", "default")
    await _reconcile(reconciler)

    # Deletion overrides the clean-checkout guard.
    assert await store.list(Pod) == []
    assert await store.list(Worker) == []


async def test_map_event_routes_pod_to_owner(reconciler: WorkerReconciler) -> None:
    pod = Pod(
        metadata=ObjectMeta(
            name="polecat-toast",
            namespace="team",
            owner_references=[OwnerReference(api_version="v", kind="Polecat", name="toast")],
        )
    )
    assert await reconciler.map_event(pod) == [Request("toast", "team")]
    assert await reconciler.map_event(Pod(metadata=ObjectMeta(name="stray"))) == []


# ---------------------------------------------------------------------------
# Local mode
# ---------------------------------------------------------------------------


@pytest.fixture
def gt() -> AsyncMock:
    gt = AsyncMock()
    gt.polecat_exists.return_value = True
    gt.polecat_status.return_value = PolecatStatus(
        name="toast",
        rig="demo",
        phase="Working",
        assigned_bead="dm-1",
        branch="polecat/toast",
        session_active=True,
        cleanup_status="clean",
    )
    return gt


@pytest.fixture
def local_reconciler(store: InMemoryObjectStore, settings: GastownSettings, gt: AsyncMock) -> WorkerReconciler:
    return WorkerReconciler(store, settings, gt=gt)


async def test_local_working_slings_new_polecat(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    gt.polecat_exists.return_value = False
    await store.create(make_worker(bead_id="dm-1", desired_state=DesiredState.WORKING))

    result = await _reconcile(local_reconciler)

    gt.sling.assert_awaited_once_with("dm-1", "demo")
    assert result.requeue_after == 10.0
    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == WorkerPhase.WORKING
    assert worker.status.branch == "polecat/toast"
    assert worker.status.session_active is True
    assert _reason(worker, ConditionType.READY) == "Synced"


async def test_local_sling_failure_marks_stuck(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    gt.polecat_exists.return_value = False
    gt.sling.side_effect = errors.tool_error(None, "sling dm-1 demo")
    await store.create(make_worker(bead_id="dm-1", desired_state=DesiredState.WORKING))

    result = await _reconcile(local_reconciler)

    assert result.requeue_after == 30.0
    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == WorkerPhase.STUCK
    assert _reason(worker, ConditionType.READY) == "SlingFailed"


async def test_local_existence_check_failure_propagates(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    gt.polecat_exists.side_effect = errors.tool_error(None, "polecat list")
    await store.create(make_worker(desired_state=DesiredState.WORKING))

    with pytest.raises(errors.GastownError) as exc_info:
        await _reconcile(local_reconciler)
    assert errors.is_retryable(exc_info.value)


async def test_local_recovers_from_transient_gt_failure(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    gt.polecat_exists.side_effect = [errors.tool_error(None, "polecat list"), False, False, False]
    await store.create(make_worker())
    controller = Controller(local_reconciler, BackoffCalculator())

    try:
        for _ in range(3):
            await controller.process(Request("toast", "default"))
    finally:
        controller.queue.shutdown()

    worker = await store.get(Worker, "toast", "default")
    assert worker.status.phase == WorkerPhase.IDLE
    degraded = find_condition(worker.status.conditions, ConditionType.DEGRADED)
    assert degraded.status == "False"
    assert degraded.reason == "Reconciled"
    assert not is_degraded(worker)


async def test_local_idle_resets_busy_polecat(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    await store.create(make_worker())

    await _reconcile(local_reconciler)

    gt.polecat_reset.assert_awaited_once_with("demo", "toast")
    assert (await store.get(Worker, "toast", "default")).status.phase == WorkerPhase.IDLE


async def test_local_terminate_clean(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    await store.create(make_worker(desired_state=DesiredState.TERMINATED))

    assert await _reconcile(local_reconciler) == Result()

    gt.polecat_nuke.assert_awaited_once_with("demo", "toast")
    assert (await store.get(Worker, "toast", "default")).status.phase == WorkerPhase.TERMINATED


@pytest.mark.parametrize("cleanup", ["has_uncommitted", "has_unpushed", "unknown", None])
async def test_local_terminate_refused(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock, cleanup: str | None
) -> None:
    gt.polecat_status.return_value = PolecatStatus(name="toast", phase="Done", cleanup_status=cleanup)
    await store.create(make_worker(desired_state=DesiredState.TERMINATED))

    result = await _reconcile(local_reconciler)

    assert result.requeue_after == 60.0
    gt.polecat_nuke.assert_not_awaited()
    assert _reason(await store.get(Worker, "toast", "default"), ConditionType.READY) == "UncommittedWork"


async def test_local_terminate_status_error_counts_as_unknown(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    gt.polecat_status.side_effect = errors.tool_error(None, "polecat status")
    await store.create(make_worker(desired_state=DesiredState.TERMINATED))

    await _reconcile(local_reconciler)

    gt.polecat_nuke.assert_not_awaited()
    assert (await store.get(Worker, "toast", "default")).status.cleanup_status == CleanupStatus.UNKNOWN


async def test_local_delete_force_nukes(
    store: InMemoryObjectStore, local_reconciler: WorkerReconciler, gt: AsyncMock
) -> None:
    await store.create(make_worker())
    await _reconcile(local_reconciler)
    await store.delete(Worker, "toast", "default")

    await _reconcile(local_reconciler)

    gt.polecat_nuke.assert_awaited_once_with("demo", "toast", force=True)
    assert await store.list(Worker) == []


async def test_local_mode_without_gt_is_permanent(store: InMemoryObjectStore, reconciler: WorkerReconciler) -> None:
    await store.create(make_worker(desired_state=DesiredState.WORKING))

    with pytest.raises(errors.GastownError) as exc_info:
        await _reconcile(reconciler)
    assert errors.is_type(exc_info.value, errors.ErrorType.PERMANENT)


# ---------------------------------------------------------------------------
# Cleanup status helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("clean", CleanupStatus.CLEAN),
        (" has_unpushed\n", CleanupStatus.UNPUSHED),
        ("garbage", CleanupStatus.UNKNOWN),
        ("", CleanupStatus.UNKNOWN),
        (None, CleanupStatus.UNKNOWN),
    ],
)
def test_parse_cleanup_status(raw: str | None, expected: CleanupStatus) -> None:
    assert parse_cleanup_status(raw) == expected


def test_pod_cleanup_status_without_pod_is_clean() -> None:
    assert pod_cleanup_status(None) == CleanupStatus.CLEAN
