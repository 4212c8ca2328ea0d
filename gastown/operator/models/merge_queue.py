"""Merge-Queue (``Refinery``) resource."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from gastown.operator.models.core import SecretReference
from gastown.operator.models.enums import ConflictResolution, MergeQueuePhase, MergeStrategy
from gastown.operator.models.meta import CamelModel, Condition, Resource


class MergeQueueSpec(CamelModel):
    rig_ref: str
    target_branch: str = "main"
    test_command: str | None = None
    parallelism: int = Field(default=1, ge=1)
    git_secret_ref: SecretReference | None = None
    strategy: MergeStrategy = MergeStrategy.REBASE
    conflict_resolution: ConflictResolution = ConflictResolution.MANUAL


class MergesSummary(CamelModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0


class MergeQueueStatus(CamelModel):
    phase: MergeQueuePhase = MergeQueuePhase.IDLE
    queue_length: int = 0
    current_merge: str | None = None
    last_merge_time: datetime | None = None
    merges_summary: MergesSummary = Field(default_factory=MergesSummary)
    conflicts: list[str] = Field(default_factory=list)
    retrying: list[str] = Field(default_factory=list)
    """Workers whose last merge attempt failed and will be retried."""
    conditions: list[Condition] = Field(default_factory=list)


class MergeQueue(Resource):
    kind: Literal["Refinery"] = "Refinery"
    spec: MergeQueueSpec
    status: MergeQueueStatus = Field(default_factory=MergeQueueStatus)
