"""Store-specific exceptions."""

from typing import Optional


class StoreError(Exception):
    """Base exception for subscription store errors."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subscription_id = subscription_id


class StoreTransactionError(StoreError):
    """Exception raised when a transaction fails and is rolled back."""


class SubscriptionNotFoundError(StoreError):
    """Exception raised when a subscription id does not exist."""

    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription not found: {subscription_id}", subscription_id)


class StoreConflictError(StoreError):
    """Exception raised when a write violates a uniqueness or integrity constraint."""
