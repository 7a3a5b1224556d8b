from report_jobs.cache.change_cache import MAX_RECORDS, CacheSettings, ChangeTrackingCache, days_since
from report_jobs.cache.snapshot_history import Snapshot, SnapshotHistory

__all__ = [
    "MAX_RECORDS",
    "CacheSettings",
    "ChangeTrackingCache",
    "Snapshot",
    "SnapshotHistory",
    "days_since",
]
