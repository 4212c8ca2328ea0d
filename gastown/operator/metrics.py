"""Prometheus collectors for the operator.

Collectors are module-level and registered on the default
``prometheus_client`` registry, which ``/metrics`` exposes.  Timers wrap
the common observe-duration + count-result pairs.
"""

from __future__ import annotations

import time
from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram


class ReconcileResult(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    REQUEUE = "requeue"


RECONCILE_TOTAL = Counter(
    "gastown_reconcile_total",
    "Total number of reconciliations by controller and result",
    ["controller", "result"],
)
RECONCILE_DURATION = Histogram(
    "gastown_reconcile_duration_seconds",
    "Duration of reconciliation loops in seconds",
    ["controller"],
    buckets=(0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
RECONCILE_ERRORS = Counter(
    "gastown_reconcile_errors_total",
    "Total number of reconciliation errors by controller and error type",
    ["controller", "error_type"],
)

RIG_PHASE = Gauge("gastown_rig_phase_total", "Number of rigs in each phase", ["phase"])
POLECAT_PHASE = Gauge("gastown_polecat_phase_total", "Number of polecats in each phase by rig", ["rig", "phase"])
CONVOY_PHASE = Gauge("gastown_convoy_phase_total", "Number of convoys in each phase", ["phase"])

GT_CLI_CALLS = Counter(
    "gastown_gt_cli_calls_total",
    "Total number of gt CLI calls by command and result",
    ["command", "result"],
)
GT_CLI_DURATION = Histogram(
    "gastown_gt_cli_duration_seconds",
    "Duration of gt CLI calls in seconds",
    ["command"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

REFINERY_MERGE_TOTAL = Counter(
    "gastown_refinery_merge_total",
    "Total number of merge attempts by rig and result",
    ["rig", "result"],
)
REFINERY_MERGE_DURATION = Histogram(
    "gastown_refinery_merge_duration_seconds",
    "Duration of merge operations in seconds",
    ["rig"],
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)
REFINERY_CONFLICTS = Counter(
    "gastown_refinery_conflicts_total",
    "Total number of merge conflicts by rig",
    ["rig"],
)
REFINERY_QUEUE_LENGTH = Gauge(
    "gastown_refinery_queue_length",
    "Number of items in the merge queue by rig",
    ["rig"],
)


# -- Timers --------------------------------------------------------------------


class ReconcileTimer:
    """Measures one reconcile and records its result."""

    def __init__(self, controller: str) -> None:
        self.controller = controller
        self._start = time.monotonic()

    def observe_duration(self) -> None:
        RECONCILE_DURATION.labels(self.controller).observe(time.monotonic() - self._start)

    def record_result(self, result: ReconcileResult) -> None:
        RECONCILE_TOTAL.labels(self.controller, result.value).inc()


class ToolCallTimer:
    def __init__(self, command: str) -> None:
        self.command = command
        self._start = time.monotonic()

    def _finish(self, result: ReconcileResult) -> None:
        GT_CLI_DURATION.labels(self.command).observe(time.monotonic() - self._start)
        GT_CLI_CALLS.labels(self.command, result.value).inc()

    def record_success(self) -> None:
        self._finish(ReconcileResult.SUCCESS)

    def record_error(self) -> None:
        self._finish(ReconcileResult.ERROR)


class MergeTimer:
    def __init__(self, rig: str) -> None:
        self.rig = rig
        self._start = time.monotonic()

    def _finish(self, result: ReconcileResult) -> None:
        REFINERY_MERGE_DURATION.labels(self.rig).observe(time.monotonic() - self._start)
        REFINERY_MERGE_TOTAL.labels(self.rig, result.value).inc()

    def record_success(self) -> None:
        self._finish(ReconcileResult.SUCCESS)

    def record_error(self) -> None:
        self._finish(ReconcileResult.ERROR)


# -- Helpers -------------------------------------------------------------------


def record_error(controller: str, error_type: str) -> None:
    RECONCILE_ERRORS.labels(controller, error_type).inc()


def record_conflict(rig: str) -> None:
    REFINERY_CONFLICTS.labels(rig).inc()


def update_queue_length(rig: str, length: int) -> None:
    REFINERY_QUEUE_LENGTH.labels(rig).set(length)


def update_rig_phases(counts: dict[str, int]) -> None:
    for phase, count in counts.items():
        RIG_PHASE.labels(phase).set(count)


def update_polecat_phases(rig: str, counts: dict[str, int]) -> None:
    for phase, count in counts.items():
        POLECAT_PHASE.labels(rig, phase).set(count)


def update_convoy_phases(counts: dict[str, int]) -> None:
    for phase, count in counts.items():
        CONVOY_PHASE.labels(phase).set(count)
