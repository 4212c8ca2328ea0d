"""Models for the JSON the gt CLI prints with ``--json``.

These mirror gt's output for parsing only; they are never written back.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import ConfigDict, Field

from gastown.operator.models.meta import CamelModel


class _GTModel(CamelModel):
    # gt adds fields over time; tolerate them
    model_config = ConfigDict(extra="ignore")


class RigStatus(_GTModel):
    name: str
    path: str = ""
    polecat_count: int = 0
    active_convoys: int = 0
    open_beads: int = 0


class PolecatInfo(_GTModel):
    name: str
    rig: str = ""
    phase: str = ""
    assigned_bead: str | None = None


class PolecatStatus(_GTModel):
    name: str
    rig: str = ""
    phase: str = ""
    assigned_bead: str | None = None
    branch: str | None = None
    worktree_path: str | None = None
    tmux_session: str | None = None
    session_active: bool = False
    last_activity: datetime | None = None
    cleanup_status: str | None = None


class ConvoyStatus(_GTModel):
    id: str
    description: str = ""
    phase: str = ""
    progress: str = ""
    completed: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
