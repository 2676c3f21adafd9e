"""Sync-specific exceptions."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync orchestration errors."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subscription_id = subscription_id


class SyncInProgressError(SyncError):
    """Exception raised when a sync for the same subscription is already running."""

    def __init__(self, subscription_id: str):
        super().__init__(f"Sync already in progress for subscription {subscription_id}", subscription_id)


class SyncTimeoutError(SyncError):
    """Exception raised when a sync exceeds its overall deadline."""


class SuspiciousShrinkError(SyncError):
    """Exception raised when a plan would delete more events than the guard allows."""

    def __init__(
        self,
        subscription_id: str,
        to_delete: int,
        stored: int,
        max_ratio: float,
    ):
        super().__init__(
            f"Refusing to delete {to_delete} of {stored} stored events "
            f"(limit {max_ratio:.0%}); feed may be truncated",
            subscription_id,
        )
        self.to_delete = to_delete
        self.stored = stored
        self.max_ratio = max_ratio
