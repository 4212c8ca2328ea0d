"""Reconcilers, one per resource kind."""

from gastown.operator.controllers.base import Reconciler, Request, Result
from gastown.operator.controllers.batch import BatchReconciler
from gastown.operator.controllers.health_monitor import HealthMonitorReconciler
from gastown.operator.controllers.issue_store import IssueStoreReconciler
from gastown.operator.controllers.merge_queue import MergeQueueReconciler
from gastown.operator.controllers.worker import WorkerReconciler
from gastown.operator.controllers.workspace import WorkspaceReconciler

__all__ = [
    "BatchReconciler",
    "HealthMonitorReconciler",
    "IssueStoreReconciler",
    "MergeQueueReconciler",
    "Reconciler",
    "Request",
    "Result",
    "WorkerReconciler",
    "WorkspaceReconciler",
]
