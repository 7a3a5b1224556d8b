from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from report_jobs.core.errors import LockBusy
from report_jobs.state.base import KeyValueStore
from report_jobs.utils.logging import get_logger

LOCK_PREFIX = "lock."


class ExecutionLock:
    """
    Named mutual-exclusion guard for one logical job, built on the key-value store.

    The lock marker carries a lease so that a holder that died without releasing
    stops blocking the job once the lease runs out.
    """

    def __init__(
        self,
        store: KeyValueStore,
        job_name: str,
        lease_s: float = 15 * 60,
        poll_s: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.job_name = job_name
        self.lease_s = lease_s
        self.poll_s = poll_s
        self.clock = clock
        self.sleep = sleep
        self.key = f"{LOCK_PREFIX}{job_name}"
        self._token: Optional[str] = None
        self.log = get_logger("report_jobs.state.lock")

    @property
    def held(self) -> bool:
        return self._token is not None

    def try_acquire(self, timeout_s: float) -> bool:
        """Try to take the lock, waiting at most timeout_s. Returns False when busy."""
        token = uuid.uuid4().hex
        deadline = self.clock() + max(0.0, timeout_s)

        while True:
            if self.store.put_if_absent(self.key, token, max_age_s=self.lease_s):
                self._token = token
                self.log.debug("Lock acquired: %s", self.key)
                return True
            if self.clock() >= deadline:
                self.log.info("Lock busy: %s", self.key)
                return False
            self.sleep(self.poll_s)

    def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        if not self.store.delete_if_equals(self.key, token):
            self.log.warning("Lock %s was no longer held by this invocation at release", self.key)

    @contextmanager
    def hold(self, timeout_s: float) -> Iterator["ExecutionLock"]:
        """Hold the lock for the duration of the block; raises LockBusy if it cannot be taken."""
        if not self.try_acquire(timeout_s):
            raise LockBusy(self.job_name)
        try:
            yield self
        finally:
            self.release()
