"""Reconciliation, orchestration and scheduling of feed syncs."""

from .exceptions import SuspiciousShrinkError, SyncError, SyncInProgressError, SyncTimeoutError
from .orchestrator import SyncOrchestrator, SyncResult
from .reconciler import EventReconciler
from .scheduler import SyncScheduler

__all__ = [
    "EventReconciler",
    "SuspiciousShrinkError",
    "SyncError",
    "SyncInProgressError",
    "SyncOrchestrator",
    "SyncResult",
    "SyncScheduler",
    "SyncTimeoutError",
]
