"""Health-Monitor (``Witness``) resource."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal

from pydantic import Field

from gastown.operator.models.enums import MonitorPhase
from gastown.operator.models.meta import CamelModel, Condition, Duration, Resource

DEFAULT_HEALTH_CHECK_INTERVAL = timedelta(seconds=30)
DEFAULT_STUCK_THRESHOLD = timedelta(minutes=15)


class HealthMonitorSpec(CamelModel):
    rig_ref: str
    health_check_interval: Duration = DEFAULT_HEALTH_CHECK_INTERVAL
    stuck_threshold: Duration = DEFAULT_STUCK_THRESHOLD
    escalation_target: str = "mayor"


class WorkersSummary(CamelModel):
    total: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    stuck: int = 0


class HealthMonitorStatus(CamelModel):
    phase: MonitorPhase = MonitorPhase.PENDING
    last_check_time: datetime | None = None
    polecats_summary: WorkersSummary = Field(default_factory=WorkersSummary)
    conditions: list[Condition] = Field(default_factory=list)


class HealthMonitor(Resource):
    kind: Literal["Witness"] = "Witness"
    spec: HealthMonitorSpec
    status: HealthMonitorStatus = Field(default_factory=HealthMonitorStatus)
