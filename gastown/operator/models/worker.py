"""Worker (``Polecat``) resource.

A worker is one ephemeral agent execution.  In kubernetes mode it is backed
by exactly one Pod while active, and its observed phase is always derived
from that Pod.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from gastown.operator.models.core import (
    EnvVar,
    LocalObjectReference,
    ResourceRequirements,
    SecretKeyRef,
    SecretReference,
)
from gastown.operator.models.enums import (
    AgentType,
    CleanupStatus,
    DesiredState,
    ExecutionMode,
    LLMProvider,
    WorkerPhase,
)
from gastown.operator.models.meta import CamelModel, Condition, Resource

GIT_REPOSITORY_PATTERN = r"^(git@[a-zA-Z0-9._-]+:|ssh://[a-zA-Z0-9._@-]+/|https?://[a-zA-Z0-9._-]+/)[a-zA-Z0-9._/-]+(\.git)?$"
BRANCH_PATTERN = r"^[a-zA-Z0-9._/-]+$"


class ModelProviderConfig(CamelModel):
    endpoint: str | None = None
    api_key_secret_ref: SecretKeyRef | None = None


class AgentConfig(CamelModel):
    provider: LLMProvider = LLMProvider.LITELLM
    model: str | None = None
    model_provider: ModelProviderConfig | None = None
    image: str | None = None
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    config_map_ref: LocalObjectReference | None = None
    env: list[EnvVar] = Field(default_factory=list)


class KubernetesSpec(CamelModel):
    git_repository: str = Field(pattern=GIT_REPOSITORY_PATTERN)
    git_branch: str = Field(default="main", pattern=BRANCH_PATTERN)
    work_branch: str | None = Field(default=None, pattern=BRANCH_PATTERN)
    git_secret_ref: SecretReference
    claude_creds_secret_ref: SecretReference | None = None
    """OAuth-style credential bundle mounted read-only."""

    api_key_secret_ref: SecretKeyRef | None = None
    """Single API key injected as an environment variable."""

    image: str | None = None
    resources: ResourceRequirements | None = None
    active_deadline_seconds: int = Field(default=3600, ge=1)


class WorkerSpec(CamelModel):
    rig: str
    desired_state: DesiredState = DesiredState.IDLE
    bead_id: str | None = Field(default=None, alias="beadID")
    task_description: str | None = None
    execution_mode: ExecutionMode = ExecutionMode.LOCAL
    kubernetes: KubernetesSpec | None = None
    agent: AgentType = AgentType.OPENCODE
    agent_config: AgentConfig | None = None
    resources: ResourceRequirements | None = None
    ttl_seconds_after_finished: int | None = None
    max_idle_seconds: int | None = None


class WorkerStatus(CamelModel):
    phase: WorkerPhase = WorkerPhase.IDLE
    assigned_bead: str | None = None
    branch: str | None = None
    worktree_path: str | None = None
    tmux_session: str | None = None
    session_active: bool = False
    pod_name: str | None = None
    last_activity: datetime | None = None
    cleanup_status: CleanupStatus | None = None
    agent: AgentType | None = None
    agent_image: str | None = None
    agent_model: str | None = None
    conditions: list[Condition] = Field(default_factory=list)


class Worker(Resource):
    kind: Literal["Polecat"] = "Polecat"
    spec: WorkerSpec
    status: WorkerStatus = Field(default_factory=WorkerStatus)

    @property
    def pod_name(self) -> str:
        """Deterministic name of the execution Pod."""
        return f"polecat-{self.name}"
