"""Batch (``Convoy``) resource: a tracked group of tasks."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from gastown.operator.models.enums import BatchPhase
from gastown.operator.models.meta import CamelModel, Condition, Resource


class BatchSpec(CamelModel):
    description: str = Field(min_length=1)
    tracked_beads: list[str] = Field(min_length=1)
    notify_on_complete: str | None = None
    parallelism: int | None = Field(default=None, ge=1)
    rig_ref: str | None = None


class BatchStatus(CamelModel):
    phase: BatchPhase = BatchPhase.PENDING
    progress: str | None = None
    completed_beads: list[str] = Field(default_factory=list)
    pending_beads: list[str] = Field(default_factory=list)
    failed_beads: list[str] = Field(default_factory=list)
    active_beads: list[str] = Field(default_factory=list)
    beads_convoy_id: str | None = Field(default=None, alias="beadsConvoyID")
    started_at: datetime | None = None
    completed_at: datetime | None = None
    conditions: list[Condition] = Field(default_factory=list)


class Batch(Resource):
    kind: Literal["Convoy"] = "Convoy"
    spec: BatchSpec
    status: BatchStatus = Field(default_factory=BatchStatus)
