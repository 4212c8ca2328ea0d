"""Workspace (``Rig``) resource.

A workspace is the cluster-scoped project context.  It owns exactly one
Health-Monitor and one Merge-Queue, created on its first reconcile and
deleted before the workspace itself is released.
"""

from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import Field

from gastown.operator.models.enums import WorkspacePhase
from gastown.operator.models.meta import CamelModel, Condition, Resource


class WorkspaceSettings(CamelModel):
    namepool_theme: str | None = None
    max_polecats: int | None = Field(default=None, ge=1)


class WorkspaceSpec(CamelModel):
    git_url: str = Field(alias="gitURL")
    beads_prefix: str
    local_path: str | None = None
    settings: WorkspaceSettings = Field(default_factory=WorkspaceSettings)


class WorkspaceStatus(CamelModel):
    phase: WorkspacePhase = WorkspacePhase.INITIALIZING
    polecat_count: int = 0
    active_convoys: int = 0
    witness_created: bool = False
    refinery_created: bool = False
    child_namespace: str | None = None
    conditions: list[Condition] = Field(default_factory=list)


class Workspace(Resource):
    namespaced: ClassVar[bool] = False

    kind: Literal["Rig"] = "Rig"
    spec: WorkspaceSpec
    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)

    @property
    def witness_name(self) -> str:
        return f"{self.name}-witness"

    @property
    def refinery_name(self) -> str:
        return f"{self.name}-refinery"
