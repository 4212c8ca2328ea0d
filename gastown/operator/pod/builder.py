"""Execution Pod builder for kubernetes-mode workers.

``PodBuilder(worker, settings).build()`` synthesises the complete Pod:

- ``git-init`` init container: SSH setup against pre-verified host keys,
  depth-1 clone of the base branch, work-branch checkout;
- ``agent`` container: home/credential preparation, agent install or
  verification, agent launch, cleanup-status report on exit;
- ``telemetry`` sidecar: Prometheus text metrics served on port 8080.

Every decision is taken here in Python.  The scripts in
:mod:`gastown.operator.pod.scripts` receive only the outcome.
"""

from __future__ import annotations

from gastown.operator import errors
from gastown.operator.models.core import (
    Capabilities,
    Container,
    ContainerPort,
    EmptyDirVolumeSource,
    EnvVar,
    EnvVarSource,
    Pod,
    PodSecurityContext,
    PodSpec,
    ResourceRequirements,
    SeccompProfile,
    SecretKeyRef,
    SecretVolumeSource,
    SecurityContext,
    Volume,
    VolumeMount,
)
from gastown.operator.models.meta import ObjectMeta
from gastown.operator.models.worker import KubernetesSpec, Worker
from gastown.operator.pod import scripts
from gastown.operator.pod.agents import AgentStrategy, get_strategy
from gastown.operator.pod.known_hosts import git_host, resolve_known_hosts
from gastown.operator.settings import GastownSettings, get_settings

# Container names
GIT_INIT_CONTAINER = "git-init"
AGENT_CONTAINER = "agent"
TELEMETRY_CONTAINER = "telemetry"

# Volume names
WORKSPACE_VOLUME = "workspace"
GIT_CREDS_VOLUME = "git-creds"
CLAUDE_CREDS_VOLUME = "claude-creds"
TMP_VOLUME = "tmp"
HOME_VOLUME = "home"
METRICS_VOLUME = "metrics"

# Labels
LABEL_POLECAT = "gastown.io/polecat"
LABEL_RIG = "gastown.io/rig"
LABEL_BEAD = "gastown.io/bead"

NONROOT_ID = 65532
GIT_CREDS_MODE = 0o400

DEFAULT_AGENT_RESOURCES = ResourceRequirements(
    requests={"cpu": "500m", "memory": "1Gi"},
    limits={"cpu": "2", "memory": "4Gi"},
)
TELEMETRY_RESOURCES = ResourceRequirements(
    requests={"cpu": "100m", "memory": "128Mi"},
    limits={"cpu": "200m", "memory": "256Mi"},
)

_PATH = (
    f"{scripts.HOME_PATH}/.npm-global/bin:{scripts.HOME_PATH}/.local/bin:"
    "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
)


def pod_name_for(worker_name: str) -> str:
    return f"polecat-{worker_name}"


def work_branch_for(worker: Worker) -> str:
    """Explicit ``workBranch``, else ``feature/{beadID}``, else ``feature/{worker}``."""
    k8s = worker.spec.kubernetes
    if k8s is not None and k8s.work_branch:
        return k8s.work_branch
    if worker.spec.bead_id:
        return f"feature/{worker.spec.bead_id}"
    return f"feature/{worker.name}"


class PodBuilder:
    def __init__(self, worker: Worker, settings: GastownSettings | None = None) -> None:
        self.worker = worker
        self.settings = settings or get_settings()

    @property
    def k8s(self) -> KubernetesSpec:
        if self.worker.spec.kubernetes is None:
            raise errors.validation("kubernetes spec is required for kubernetes execution mode")
        return self.worker.spec.kubernetes

    @property
    def strategy(self) -> AgentStrategy:
        return get_strategy(self.worker.spec.agent, self.worker.spec.agent_config)

    @property
    def agent_image(self) -> str:
        agent_config = self.worker.spec.agent_config
        if self.k8s.image:
            return self.k8s.image
        if agent_config is not None and agent_config.image:
            return agent_config.image
        return self.settings.claude_image

    def build(self) -> Pod:
        k8s = self.k8s
        bead = self.worker.spec.bead_id or "none"
        return Pod(
            metadata=ObjectMeta(
                name=pod_name_for(self.worker.name),
                namespace=self.worker.namespace,
                labels={
                    LABEL_POLECAT: self.worker.name,
                    LABEL_RIG: self.worker.spec.rig,
                    LABEL_BEAD: bead,
                },
                owner_references=[self.worker.owner_reference()],
            ),
            spec=PodSpec(
                restart_policy="Never",
                active_deadline_seconds=k8s.active_deadline_seconds,
                share_process_namespace=True,
                security_context=self._pod_security_context(),
                init_containers=[self._git_init_container()],
                containers=[self._agent_container(), self._telemetry_container()],
                volumes=self._volumes(),
            ),
        )

    # -- Containers ------------------------------------------------------------

    def _git_init_container(self) -> Container:
        k8s = self.k8s
        host = git_host(k8s.git_repository)
        known_hosts = resolve_known_hosts(host, self.settings.ssh_known_hosts) if host else None
        script = scripts.render_init_script(
            repository=k8s.git_repository,
            branch=k8s.git_branch,
            work_branch=work_branch_for(self.worker),
            ssh=host is not None,
            host=host,
            known_hosts=known_hosts,
        )
        return Container(
            name=GIT_INIT_CONTAINER,
            image=self.settings.git_image,
            command=["/bin/sh", "-c"],
            args=[script],
            security_context=self._security_context(),
            env=[EnvVar(name="HOME", value=scripts.HOME_PATH)],
            volume_mounts=[
                VolumeMount(name=WORKSPACE_VOLUME, mount_path=scripts.WORKSPACE_PATH),
                VolumeMount(name=GIT_CREDS_VOLUME, mount_path=scripts.GIT_CREDS_PATH, read_only=True),
                VolumeMount(name=TMP_VOLUME, mount_path="/tmp"),  # noqa: S108
                VolumeMount(name=HOME_VOLUME, mount_path=scripts.HOME_PATH),
            ],
        )

    def _agent_container(self) -> Container:
        k8s = self.k8s
        strategy = self.strategy
        agent_config = self.worker.spec.agent_config
        oauth_bundle = k8s.claude_creds_secret_ref is not None

        script = scripts.render_main_script(
            agent=self.worker.spec.agent.value,
            binary=strategy.binary,
            launch=strategy.launch_command(agent_config),
            install=strategy.install,
            base_branch=k8s.git_branch,
            oauth_bundle=oauth_bundle,
            git_name=f"{self.worker.name} (gastown polecat)",
            git_email=f"{self.worker.name}@polecat.gastown.local",
        )

        mounts = [
            VolumeMount(name=WORKSPACE_VOLUME, mount_path=scripts.WORKSPACE_PATH),
            VolumeMount(name=GIT_CREDS_VOLUME, mount_path=scripts.GIT_CREDS_PATH, read_only=True),
            VolumeMount(name=TMP_VOLUME, mount_path="/tmp"),  # noqa: S108
            VolumeMount(name=HOME_VOLUME, mount_path=scripts.HOME_PATH),
        ]
        if oauth_bundle:
            mounts.append(VolumeMount(name=CLAUDE_CREDS_VOLUME, mount_path=scripts.CLAUDE_CREDS_PATH, read_only=True))

        return Container(
            name=AGENT_CONTAINER,
            image=self.agent_image,
            command=["/bin/sh", "-c"],
            args=[script],
            working_dir=scripts.REPO_PATH,
            security_context=self._security_context(),
            env=self._agent_env(strategy),
            volume_mounts=mounts,
            resources=self._agent_resources(),
            termination_message_policy="File",
        )

    def _agent_env(self, strategy: AgentStrategy) -> list[EnvVar]:
        worker = self.worker
        agent_config = worker.spec.agent_config
        work_branch = work_branch_for(worker)
        prompt = scripts.render_prompt(
            bead_id=worker.spec.bead_id or "none",
            rig=worker.spec.rig,
            work_branch=work_branch,
            description=worker.spec.task_description,
        )
        env = [
            EnvVar(name="CLAUDE_CONFIG_DIR", value=f"{scripts.HOME_PATH}/.claude"),
            EnvVar(name="GT_ISSUE", value=worker.spec.bead_id or ""),
            EnvVar(name="GT_POLECAT", value=worker.name),
            EnvVar(name="GT_RIG", value=worker.spec.rig),
            EnvVar(name="GT_BRANCH", value=work_branch),
            EnvVar(name="GT_PROMPT", value=prompt),
            EnvVar(name="HOME", value=scripts.HOME_PATH),
            EnvVar(name="NPM_CONFIG_PREFIX", value=f"{scripts.HOME_PATH}/.npm-global"),
            EnvVar(name="PATH", value=_PATH),
        ]

        key_ref = self._api_key_ref()
        if key_ref is not None:
            env.append(
                EnvVar(
                    name=strategy.api_key_env(agent_config),
                    value_from=EnvVarSource(secret_key_ref=key_ref),
                )
            )
        if agent_config is not None and agent_config.model_provider and agent_config.model_provider.endpoint:
            env.append(EnvVar(name=strategy.endpoint_env(agent_config), value=agent_config.model_provider.endpoint))
        if agent_config is not None:
            env.extend(var.model_copy() for var in agent_config.env)
        return env

    def _api_key_ref(self) -> SecretKeyRef | None:
        if self.k8s.api_key_secret_ref is not None:
            return self.k8s.api_key_secret_ref
        agent_config = self.worker.spec.agent_config
        if agent_config is not None and agent_config.model_provider is not None:
            return agent_config.model_provider.api_key_secret_ref
        return None

    def _agent_resources(self) -> ResourceRequirements:
        if self.k8s.resources is not None:
            return self.k8s.resources.model_copy(deep=True)
        if self.worker.spec.resources is not None:
            return self.worker.spec.resources.model_copy(deep=True)
        return DEFAULT_AGENT_RESOURCES.model_copy(deep=True)

    def _telemetry_container(self) -> Container:
        worker = self.worker
        return Container(
            name=TELEMETRY_CONTAINER,
            image=self.settings.telemetry_image,
            command=["/bin/sh", "-c"],
            args=[scripts.render_telemetry_script()],
            security_context=self._security_context(),
            env=[
                EnvVar(name="POLECAT_NAME", value=worker.name),
                EnvVar(name="POLECAT_RIG", value=worker.spec.rig),
                EnvVar(name="POLECAT_BEAD", value=worker.spec.bead_id or "none"),
                EnvVar(name="AGENT_PROCESS_PATTERN", value=self.strategy.process_pattern),
            ],
            ports=[ContainerPort(name="metrics", container_port=scripts.METRICS_PORT)],
            volume_mounts=[
                VolumeMount(name=METRICS_VOLUME, mount_path=scripts.METRICS_PATH),
                VolumeMount(name=TMP_VOLUME, mount_path="/tmp"),  # noqa: S108
            ],
            resources=TELEMETRY_RESOURCES.model_copy(deep=True),
        )

    # -- Volumes ---------------------------------------------------------------

    def _volumes(self) -> list[Volume]:
        k8s = self.k8s
        volumes = [
            Volume(name=WORKSPACE_VOLUME, empty_dir=EmptyDirVolumeSource()),
            Volume(
                name=GIT_CREDS_VOLUME,
                secret=SecretVolumeSource(secret_name=k8s.git_secret_ref.name, default_mode=GIT_CREDS_MODE),
            ),
        ]
        if k8s.claude_creds_secret_ref is not None:
            volumes.append(
                Volume(name=CLAUDE_CREDS_VOLUME, secret=SecretVolumeSource(secret_name=k8s.claude_creds_secret_ref.name))
            )
        volumes.extend(
            Volume(name=name, empty_dir=EmptyDirVolumeSource()) for name in (TMP_VOLUME, HOME_VOLUME, METRICS_VOLUME)
        )
        return volumes

    # -- Security --------------------------------------------------------------

    @staticmethod
    def _pod_security_context() -> PodSecurityContext:
        return PodSecurityContext(
            run_as_non_root=True,
            run_as_user=NONROOT_ID,
            run_as_group=NONROOT_ID,
            fs_group=NONROOT_ID,
            seccomp_profile=SeccompProfile(type="RuntimeDefault"),
        )

    @staticmethod
    def _security_context() -> SecurityContext:
        return SecurityContext(
            run_as_non_root=True,
            run_as_user=NONROOT_ID,
            run_as_group=NONROOT_ID,
            allow_privilege_escalation=False,
            read_only_root_filesystem=True,
            capabilities=Capabilities(drop=["ALL"]),
            seccomp_profile=SeccompProfile(type="RuntimeDefault"),
        )
