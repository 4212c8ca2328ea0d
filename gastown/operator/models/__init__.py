"""Resource models for the gastown operator."""

from __future__ import annotations

from typing import Any

from gastown.operator.models.batch import Batch, BatchSpec, BatchStatus
from gastown.operator.models.core import Pod, Secret
from gastown.operator.models.enums import (
    AgentType,
    BatchPhase,
    CleanupStatus,
    ConditionStatus,
    ConditionType,
    ConflictResolution,
    DesiredState,
    ExecutionMode,
    IssueStorePhase,
    MergeQueuePhase,
    MergeStrategy,
    MonitorPhase,
    PodPhase,
    WorkerPhase,
    WorkspacePhase,
)
from gastown.operator.models.health_monitor import HealthMonitor, HealthMonitorSpec, HealthMonitorStatus
from gastown.operator.models.issue_store import IssueStore, IssueStoreSpec, IssueStoreStatus
from gastown.operator.models.merge_queue import MergeQueue, MergeQueueSpec, MergeQueueStatus
from gastown.operator.models.meta import Condition, ObjectMeta, Resource
from gastown.operator.models.worker import Worker, WorkerSpec, WorkerStatus
from gastown.operator.models.workspace import Workspace, WorkspaceSpec, WorkspaceStatus

RESOURCE_TYPES: dict[str, type[Resource]] = {
    cls.model_fields["kind"].default: cls
    for cls in (Workspace, Worker, Batch, HealthMonitor, MergeQueue, IssueStore, Pod, Secret)
}
"""Wire ``kind`` -> model class."""


def parse_resource(data: dict[str, Any]) -> Resource:
    """Validate a manifest into the model registered for its ``kind``.

    Raises ``ValueError`` for unknown kinds (pydantic's ``ValidationError``
    is itself a ``ValueError``).
    """
    kind = data.get("kind")
    cls = RESOURCE_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        msg = f"Unknown kind: {kind!r}"
        raise ValueError(msg)
    return cls.model_validate(data)


__all__ = [
    "RESOURCE_TYPES",
    "AgentType",
    "Batch",
    "BatchPhase",
    "BatchSpec",
    "BatchStatus",
    "CleanupStatus",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "ConflictResolution",
    "DesiredState",
    "ExecutionMode",
    "HealthMonitor",
    "HealthMonitorSpec",
    "HealthMonitorStatus",
    "IssueStore",
    "IssueStorePhase",
    "IssueStoreSpec",
    "IssueStoreStatus",
    "MergeQueue",
    "MergeQueuePhase",
    "MergeQueueSpec",
    "MergeQueueStatus",
    "MergeStrategy",
    "MonitorPhase",
    "ObjectMeta",
    "Pod",
    "PodPhase",
    "Resource",
    "Secret",
    "Worker",
    "WorkerPhase",
    "WorkerSpec",
    "WorkerStatus",
    "Workspace",
    "WorkspacePhase",
    "WorkspaceSpec",
    "WorkspaceStatus",
    "parse_resource",
]
