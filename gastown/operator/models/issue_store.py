"""Issue-Store (``BeadStore``) resource: sync config for the issue backend."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal

from pydantic import Field

from gastown.operator.models.core import SecretReference
from gastown.operator.models.enums import IssueStorePhase
from gastown.operator.models.meta import CamelModel, Condition, Duration, Resource


class IssueStoreSpec(CamelModel):
    rig_ref: str
    prefix: str = Field(pattern=r"^[a-z]+-$")
    git_secret_ref: SecretReference | None = None
    sync_interval: Duration = timedelta(minutes=5)


class IssueStoreStatus(CamelModel):
    phase: IssueStorePhase = IssueStorePhase.PENDING
    last_sync_time: datetime | None = None
    issue_count: int = 0
    conditions: list[Condition] = Field(default_factory=list)


class IssueStore(Resource):
    kind: Literal["BeadStore"] = "BeadStore"
    spec: IssueStoreSpec
    status: IssueStoreStatus = Field(default_factory=IssueStoreStatus)
