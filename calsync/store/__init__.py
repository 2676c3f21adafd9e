"""Subscription and event persistence package."""

from .base import SubscriptionStore
from .database import SQLiteSubscriptionStore
from .exceptions import (
    StoreConflictError,
    StoreError,
    StoreTransactionError,
    SubscriptionNotFoundError,
)
from .models import BusyInterval, StoredEvent, Subscription, SyncOutcome, SyncPlan

__all__ = [
    "BusyInterval",
    "SQLiteSubscriptionStore",
    "StoreConflictError",
    "StoreError",
    "StoreTransactionError",
    "StoredEvent",
    "Subscription",
    "SubscriptionNotFoundError",
    "SubscriptionStore",
    "SyncOutcome",
    "SyncPlan",
]
