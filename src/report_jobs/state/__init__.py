from report_jobs.state.base import KeyValueStore
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.state.lock import ExecutionLock
from report_jobs.state.sqlite_store import SQLiteKeyValueStore

__all__ = [
    "CheckpointStore",
    "ExecutionLock",
    "KeyValueStore",
    "SQLiteKeyValueStore",
]
