"""Object metadata, conditions and the common resource envelope.

Every stored object is a ``Resource``: ``apiVersion``, ``kind``,
``metadata``, ``spec`` and ``status``.  Field names on the wire are
camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from gastown.operator.models.enums import ConditionStatus

API_GROUP = "gastown.gastown.io"
API_VERSION = f"{API_GROUP}/v1alpha1"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class CamelModel(BaseModel):
    """Base for wire models: camelCase aliases, populate by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> Any:
    """Accept Go-style duration strings (``1h30m``, ``15m``, ``500ms``) and plain seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, int | float):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            msg = "empty duration"
            raise ValueError(msg)
        try:
            return timedelta(seconds=float(text))
        except ValueError:
            pass
        pos = 0
        total = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            pos = match.end()
        if pos != len(text):
            msg = f"invalid duration {value!r}"
            raise ValueError(msg)
        return timedelta(seconds=total)
    return value


def format_duration(value: timedelta) -> str:
    seconds = value.total_seconds()
    if seconds and seconds % 3600 == 0:
        return f"{int(seconds // 3600)}h"
    if seconds and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    if seconds == int(seconds):
        return f"{int(seconds)}s"
    return f"{int(seconds * 1000)}ms"


Duration = Annotated[
    timedelta,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str),
]


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


class OwnerReference(CamelModel):
    api_version: str
    kind: str
    name: str
    uid: str | None = None
    controller: bool = True


class ObjectMeta(CamelModel):
    name: str
    namespace: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    uid: str | None = None
    generation: int = 0
    resource_version: str | None = None
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None


class Condition(CamelModel):
    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    observed_generation: int | None = None
    last_transition_time: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Resource envelope
# ---------------------------------------------------------------------------


class Resource(CamelModel):
    """Common envelope.  Subclasses pin ``kind`` and type ``spec``/``status``."""

    namespaced: ClassVar[bool] = True

    api_version: str = API_VERSION
    kind: str
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return object_key(self.kind, self.metadata.name, self.metadata.namespace)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    # -- Finalizers --------------------------------------------------------------

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add ``finalizer``.  Returns True if the object changed."""
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.metadata.finalizers:
            return False
        self.metadata.finalizers.remove(finalizer)
        return True

    def owner_reference(self) -> OwnerReference:
        """Reference to this object, for use on its children."""
        return OwnerReference(api_version=self.api_version, kind=self.kind, name=self.name, uid=self.metadata.uid)


def object_key(kind: str, name: str, namespace: str | None = None) -> str:
    """Stable string key: ``Kind/name`` or ``Kind/namespace/name``."""
    if namespace:
        return f"{kind}/{namespace}/{name}"
    return f"{kind}/{name}"


# ---------------------------------------------------------------------------
# Condition helpers
# ---------------------------------------------------------------------------


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus | bool,
    reason: str,
    message: str = "",
    *,
    generation: int | None = None,
    now: datetime | None = None,
) -> Condition:
    """Insert or update a condition in place.

    ``lastTransitionTime`` only moves when ``status`` changes, so it records
    when the condition last flipped rather than when it was last written.
    """
    if isinstance(status, bool):
        status = ConditionStatus.TRUE if status else ConditionStatus.FALSE
    existing = find_condition(conditions, condition_type)
    if existing is None:
        condition = Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=generation,
            last_transition_time=now or utcnow(),
        )
        conditions.append(condition)
        return condition

    if existing.status != status:
        existing.last_transition_time = now or utcnow()
    existing.status = status
    existing.reason = reason
    existing.message = message
    existing.observed_generation = generation
    return existing


def remove_condition(conditions: list[Condition], condition_type: str) -> bool:
    for i, condition in enumerate(conditions):
        if condition.type == condition_type:
            del conditions[i]
            return True
    return False
