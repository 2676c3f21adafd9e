"""calsync - external calendar subscription sync engine.

Fetches webcal/iCal feeds, parses their events and reconciles them against a
locally stored snapshot per subscription, exposing busy time to schedulers.
"""

__version__ = "1.0.0"

from .service import CalendarSyncService, ImportResult
from .store.models import BusyInterval, StoredEvent, Subscription
from .sync.orchestrator import SyncResult

__all__ = [
    "BusyInterval",
    "CalendarSyncService",
    "ImportResult",
    "StoredEvent",
    "Subscription",
    "SyncResult",
    "__version__",
]
