"""Shared enumerations used across the operator."""

from __future__ import annotations

from enum import StrEnum

# -- Conditions --------------------------------------------------------------


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(StrEnum):
    READY = "Ready"
    DEGRADED = "Degraded"
    PROGRESSING = "Progressing"
    AVAILABLE = "Available"
    WORKING = "Working"
    PROCESSING = "Processing"
    COMPLETE = "Complete"
    SYNCED = "Synced"
    MERGED = "Merged"


# -- Workspace ---------------------------------------------------------------


class WorkspacePhase(StrEnum):
    INITIALIZING = "Initializing"
    READY = "Ready"
    DEGRADED = "Degraded"


# -- Worker ------------------------------------------------------------------


class DesiredState(StrEnum):
    IDLE = "Idle"
    WORKING = "Working"
    TERMINATED = "Terminated"


class WorkerPhase(StrEnum):
    IDLE = "Idle"
    WORKING = "Working"
    DONE = "Done"
    STUCK = "Stuck"
    TERMINATED = "Terminated"


class CleanupStatus(StrEnum):
    """State of the worker's git checkout, reported before destruction."""

    CLEAN = "clean"
    UNCOMMITTED = "has_uncommitted"
    UNPUSHED = "has_unpushed"
    UNKNOWN = "unknown"


class ExecutionMode(StrEnum):
    LOCAL = "local"
    KUBERNETES = "kubernetes"


class AgentType(StrEnum):
    OPENCODE = "opencode"
    CLAUDE_CODE = "claude-code"
    AIDER = "aider"
    CUSTOM = "custom"


class LLMProvider(StrEnum):
    LITELLM = "litellm"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


# -- Batch -------------------------------------------------------------------


class BatchPhase(StrEnum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETE = "Complete"
    FAILED = "Failed"


# -- Health-Monitor ----------------------------------------------------------


class MonitorPhase(StrEnum):
    PENDING = "Pending"
    ACTIVE = "Active"
    DEGRADED = "Degraded"


class EscalationTarget(StrEnum):
    MAYOR = "mayor"
    SLACK = "slack"
    EMAIL = "email"


# -- Merge-Queue -------------------------------------------------------------


class MergeQueuePhase(StrEnum):
    IDLE = "Idle"
    PROCESSING = "Processing"
    ERROR = "Error"


class MergeStrategy(StrEnum):
    MERGE = "merge"
    REBASE = "rebase"
    SQUASH = "squash"


class ConflictResolution(StrEnum):
    MANUAL = "manual"
    THEIRS = "theirs"
    OURS = "ours"


# -- Issue-Store -------------------------------------------------------------


class IssueStorePhase(StrEnum):
    PENDING = "Pending"
    SYNCED = "Synced"
    ERROR = "Error"


# -- Pod ---------------------------------------------------------------------


class PodPhase(StrEnum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"
