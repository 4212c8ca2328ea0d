"""Object factories shared by the operator tests."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from gastown.operator.models import (
    ExecutionMode,
    HealthMonitor,
    HealthMonitorSpec,
    MergeQueue,
    MergeQueueSpec,
    ObjectMeta,
    Worker,
    WorkerSpec,
    Workspace,
    WorkspaceSpec,
)
from gastown.operator.models.core import SecretReference
from gastown.operator.models.worker import KubernetesSpec

GIT_URL = "git@github.com:org/demo.git"


def make_workspace(name: str = "demo", git_url: str = GIT_URL) -> Workspace:
    return Workspace(
        metadata=ObjectMeta(name=name),
        spec=WorkspaceSpec(git_url=git_url, beads_prefix="dm-"),
    )


def make_worker(
    name: str = "toast",
    *,
    rig: str = "demo",
    namespace: str = "default",
    kubernetes: bool = False,
    **spec: Any,
) -> Worker:
    if kubernetes:
        spec.setdefault("execution_mode", ExecutionMode.KUBERNETES)
        spec.setdefault(
            "kubernetes",
            KubernetesSpec(git_repository=GIT_URL, git_secret_ref=SecretReference(name="git-creds")),
        )
    return Worker(metadata=ObjectMeta(name=name, namespace=namespace), spec=WorkerSpec(rig=rig, **spec))


def make_monitor(rig: str = "demo", **spec: Any) -> HealthMonitor:
    spec.setdefault("stuck_threshold", timedelta(minutes=15))
    return HealthMonitor(
        metadata=ObjectMeta(name=f"{rig}-witness", namespace="gastown-system"),
        spec=HealthMonitorSpec(rig_ref=rig, **spec),
    )


def make_merge_queue(rig: str = "demo", **spec: Any) -> MergeQueue:
    return MergeQueue(
        metadata=ObjectMeta(name=f"{rig}-refinery", namespace="gastown-system"),
        spec=MergeQueueSpec(rig_ref=rig, **spec),
    )
