"""Core cluster objects the operator reads and writes: Pods and Secrets.

Only the subset of the Pod schema the worker builder emits and the worker
reconciler reads is modelled.  ``to_wire()`` yields a manifest the cluster
API accepts.
"""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Literal

from pydantic import Field

from gastown.operator.models.enums import PodPhase
from gastown.operator.models.meta import CamelModel, Resource

# -- References ----------------------------------------------------------------


class SecretReference(CamelModel):
    name: str


class SecretKeyRef(CamelModel):
    name: str
    key: str


class LocalObjectReference(CamelModel):
    name: str


# -- Containers ----------------------------------------------------------------


class EnvVarSource(CamelModel):
    secret_key_ref: SecretKeyRef | None = None


class EnvVar(CamelModel):
    name: str
    value: str | None = None
    value_from: EnvVarSource | None = None


class VolumeMount(CamelModel):
    name: str
    mount_path: str
    read_only: bool | None = None


class ResourceRequirements(CamelModel):
    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class SeccompProfile(CamelModel):
    type: str = "RuntimeDefault"


class Capabilities(CamelModel):
    drop: list[str] = Field(default_factory=list)


class SecurityContext(CamelModel):
    run_as_non_root: bool | None = None
    run_as_user: int | None = None
    run_as_group: int | None = None
    allow_privilege_escalation: bool | None = None
    read_only_root_filesystem: bool | None = None
    capabilities: Capabilities | None = None
    seccomp_profile: SeccompProfile | None = None


class PodSecurityContext(CamelModel):
    run_as_non_root: bool | None = None
    run_as_user: int | None = None
    run_as_group: int | None = None
    fs_group: int | None = None
    seccomp_profile: SeccompProfile | None = None


class ContainerPort(CamelModel):
    name: str | None = None
    container_port: int
    protocol: str = "TCP"


class Container(CamelModel):
    name: str
    image: str
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    working_dir: str | None = None
    env: list[EnvVar] = Field(default_factory=list)
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    resources: ResourceRequirements | None = None
    security_context: SecurityContext | None = None
    ports: list[ContainerPort] = Field(default_factory=list)
    termination_message_policy: str | None = None

    def env_value(self, name: str) -> str | None:
        for var in self.env:
            if var.name == name:
                return var.value
        return None


# -- Volumes -------------------------------------------------------------------


class EmptyDirVolumeSource(CamelModel):
    pass


class SecretVolumeSource(CamelModel):
    secret_name: str
    default_mode: int | None = None


class Volume(CamelModel):
    name: str
    empty_dir: EmptyDirVolumeSource | None = None
    secret: SecretVolumeSource | None = None


# -- Pod -----------------------------------------------------------------------


class PodSpec(CamelModel):
    restart_policy: str = "Never"
    active_deadline_seconds: int | None = None
    share_process_namespace: bool | None = None
    security_context: PodSecurityContext | None = None
    init_containers: list[Container] = Field(default_factory=list)
    containers: list[Container] = Field(default_factory=list)
    volumes: list[Volume] = Field(default_factory=list)

    def container(self, name: str) -> Container | None:
        for container in [*self.init_containers, *self.containers]:
            if container.name == name:
                return container
        return None


class ContainerStateRunning(CamelModel):
    started_at: datetime | None = None


class ContainerStateTerminated(CamelModel):
    exit_code: int = 0
    reason: str | None = None
    message: str | None = None
    finished_at: datetime | None = None


class ContainerState(CamelModel):
    running: ContainerStateRunning | None = None
    terminated: ContainerStateTerminated | None = None


class ContainerStatus(CamelModel):
    name: str
    state: ContainerState = Field(default_factory=ContainerState)


class PodStatus(CamelModel):
    phase: PodPhase = PodPhase.PENDING
    start_time: datetime | None = None
    container_statuses: list[ContainerStatus] = Field(default_factory=list)

    def container_status(self, name: str) -> ContainerStatus | None:
        for status in self.container_statuses:
            if status.name == name:
                return status
        return None


class Pod(Resource):
    api_version: str = "v1"
    kind: Literal["Pod"] = "Pod"
    spec: PodSpec = Field(default_factory=PodSpec)
    status: PodStatus = Field(default_factory=PodStatus)


# -- Secret --------------------------------------------------------------------


class Secret(Resource):
    """A Secret.  ``data`` values are base64-encoded, as on the wire."""

    api_version: str = "v1"
    kind: Literal["Secret"] = "Secret"
    data: dict[str, str] = Field(default_factory=dict)

    def decoded(self, key: str) -> bytes | None:
        raw = self.data.get(key)
        if raw is None:
            return None
        return base64.b64decode(raw)
