from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from report_jobs.core.errors import FatalIOError, TransientStoreError
from report_jobs.utils.logging import get_logger
from report_jobs.utils.retry import RetryPolicy, with_backoff

T = TypeVar("T")


class SQLiteKeyValueStore:
    """SQLite-backed durable key-value store for checkpoints, lock markers and handles."""

    def __init__(
        self,
        path: str,
        retry: Optional[RetryPolicy] = None,
        busy_timeout_s: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path
        self.retry = retry or RetryPolicy()
        self.busy_timeout_s = busy_timeout_s
        self.clock = clock
        self.log = get_logger("report_jobs.state.sqlite")
        self._ensure_parent_dir(path)
        self._call("ensure schema", self._ensure_schema)

    def get(self, key: str) -> Optional[str]:
        def op() -> Optional[str]:
            with self._session() as conn:
                row = conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
            return str(row["value"]) if row else None

        return self._call(f"get {key}", op)

    def set(self, key: str, value: str) -> None:
        def op() -> None:
            with self._session() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, self.clock()),
                )

        self._call(f"set {key}", op)

    def delete(self, key: str) -> None:
        def op() -> None:
            with self._session() as conn:
                conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))

        self._call(f"delete {key}", op)

    def put_if_absent(self, key: str, value: str, max_age_s: Optional[float] = None) -> bool:
        """Write value only when key is absent, or its row is older than max_age_s."""

        def op() -> bool:
            now = self.clock()
            with self._session() as conn:
                if max_age_s is not None:
                    conn.execute(
                        "DELETE FROM kv_state WHERE key = ? AND updated_at < ?",
                        (key, now - float(max_age_s)),
                    )
                cur = conn.execute(
                    "INSERT OR IGNORE INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, now),
                )
                return cur.rowcount == 1

        return self._call(f"put_if_absent {key}", op)

    def delete_if_equals(self, key: str, value: str) -> bool:
        def op() -> bool:
            with self._session() as conn:
                cur = conn.execute("DELETE FROM kv_state WHERE key = ? AND value = ?", (key, value))
                return cur.rowcount == 1

        return self._call(f"delete_if_equals {key}", op)

    def keys(self, prefix: str = "") -> List[str]:
        def op() -> List[str]:
            with self._session() as conn:
                rows = conn.execute(
                    "SELECT key FROM kv_state WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                ).fetchall()
            return [str(r["key"]) for r in rows]

        return self._call(f"keys {prefix}*", op)

    def _call(self, label: str, op: Callable[[], T]) -> T:
        """Run op with transient-error classification, backoff, and escalation."""

        def classified() -> T:
            try:
                return op()
            except sqlite3.OperationalError as e:
                raise TransientStoreError(f"{label}: {e}") from e

        try:
            return with_backoff(classified, label=label, policy=self.retry, retry_on=(TransientStoreError,))
        except TransientStoreError as e:
            self.log.error("State store operation failed after retries (%s): %s", label, e)
            raise FatalIOError(f"State store operation failed after retries: {label}") from e

    def _ensure_schema(self) -> None:
        with self._session() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_s)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self):
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _ensure_parent_dir(self, path: str) -> None:
        parent = Path(path).parent
        if str(parent) not in {"", "."}:
            parent.mkdir(parents=True, exist_ok=True)
