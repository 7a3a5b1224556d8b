from __future__ import annotations

import time
import uuid
from typing import Callable, Optional

from report_jobs.scheduling.base import Scheduler
from report_jobs.state.base import KeyValueStore
from report_jobs.utils.logging import get_logger

SCHEDULE_PREFIX = "schedule."
RESERVATION_PREFIX = "reserving:"
MIN_DELAY_MINUTES = 1
MAX_DELAY_MINUTES = 10


def clamp_delay_minutes(minutes) -> int:
    """Floor and clamp a requested delay to [1, 10] minutes."""
    try:
        value = int(float(minutes))
    except (TypeError, ValueError):
        value = MIN_DELAY_MINUTES
    return max(MIN_DELAY_MINUTES, min(MAX_DELAY_MINUTES, value))


class SelfRescheduler:
    """
    Arranges one-shot future resumptions of named jobs, at most one pending per job.

    The `schedule.<job>` slot is claimed with put_if_absent before a one-shot is
    registered, so two invocations racing to reschedule the same job register
    a single one-shot. While a claim is in flight the slot holds a reservation
    token; a token older than `reservation_ttl_s` is treated as abandoned.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        store: KeyValueStore,
        reservation_ttl_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.scheduler = scheduler
        self.store = store
        self.reservation_ttl_s = reservation_ttl_s
        self.clock = clock
        self.log = get_logger("report_jobs.scheduling.rescheduler")

    def key(self, job_name: str) -> str:
        return f"{SCHEDULE_PREFIX}{job_name}"

    def schedule(self, job_name: str, delay_minutes=2) -> str:
        """Schedule job_name to run again; a still-live pending schedule is kept as is."""
        minutes = clamp_delay_minutes(delay_minutes)
        key = self.key(job_name)
        token = f"{RESERVATION_PREFIX}{self.clock():.3f}:{uuid.uuid4().hex[:12]}"

        for _ in range(3):
            if self.store.put_if_absent(key, token):
                return self._register(job_name, key, token, minutes)

            existing = self.store.get(key)
            if existing is None:
                continue
            if self._live(existing):
                self.log.info("Resume already pending for %s (%s)", job_name, existing)
                return existing
            # stale handle or abandoned reservation; only drop it if nobody replaced it meanwhile
            self.store.delete_if_equals(key, existing)

        existing = self.store.get(key)
        if existing:
            return existing
        raise RuntimeError(f"Could not claim the schedule slot for '{job_name}'")

    def cancel(self, job_name: str) -> None:
        key = self.key(job_name)
        handle = self.store.get(key)
        if not handle:
            return
        if not handle.startswith(RESERVATION_PREFIX):
            self.scheduler.cancel(handle)
        self.store.delete_if_equals(key, handle)

    def pending(self, job_name: str) -> Optional[str]:
        """Return the recorded handle if the scheduler still lists it; drop it otherwise."""
        key = self.key(job_name)
        handle = self.store.get(key)
        if not handle:
            return None
        if handle.startswith(RESERVATION_PREFIX):
            if not self._reservation_expired(handle):
                return None
        elif handle in self.scheduler.list_pending():
            return handle
        self.store.delete_if_equals(key, handle)
        return None

    def _register(self, job_name: str, key: str, token: str, minutes: int) -> str:
        try:
            handle = self.scheduler.register_one_shot(job_name, minutes * 60.0)
        except Exception:
            self.store.delete_if_equals(key, token)
            raise
        self.store.set(key, handle)
        self.log.info("Resume scheduled for %s in %s min", job_name, minutes)
        return handle

    def _live(self, value: str) -> bool:
        if value.startswith(RESERVATION_PREFIX):
            return not self._reservation_expired(value)
        return value in self.scheduler.list_pending()

    def _reservation_expired(self, token: str) -> bool:
        try:
            claimed_at = float(token[len(RESERVATION_PREFIX):].split(":", 1)[0])
        except ValueError:
            return True
        return self.clock() - claimed_at > self.reservation_ttl_s
