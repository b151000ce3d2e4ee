"""Models exposed by the TechTracker sync engine."""
from .record import Record, RecordStatus
from .cache_entry import CacheEntry
from .pending_mutation import PendingMutationRow

__all__ = ["Record", "RecordStatus", "CacheEntry", "PendingMutationRow"]
