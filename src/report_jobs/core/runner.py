from __future__ import annotations

import time
from typing import Any, Callable, Optional

from report_jobs.core.errors import LockBusy
from report_jobs.core.models import ChunkSettings, JobReport, RunStatus
from report_jobs.scheduling.rescheduler import SelfRescheduler
from report_jobs.state.base import KeyValueStore
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.state.lock import ExecutionLock
from report_jobs.utils.logging import get_logger


class LockedJobRunner:
    """
    Shared invocation shell for resumable jobs.

    Takes the job's execution lock, clears the job's own pending resume, runs the
    body, and converts lock contention into a short reschedule with no other
    side effects.
    """

    logger_name = "report_jobs.runner"

    def __init__(
        self,
        store: KeyValueStore,
        rescheduler: SelfRescheduler,
        checkpoints: Optional[CheckpointStore] = None,
        lock_lease_s: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.rescheduler = rescheduler
        self.checkpoints = checkpoints or CheckpointStore(store)
        self.lock_lease_s = lock_lease_s
        self.clock = clock
        self.log = get_logger(self.logger_name)

    def lock_for(self, job_name: str) -> ExecutionLock:
        return ExecutionLock(self.store, job_name, lease_s=self.lock_lease_s)

    def _invoke(self, job: Any, body: Callable[[JobReport, float], None]) -> JobReport:
        settings: ChunkSettings = job.settings
        started = self.clock()
        report = JobReport(job_name=job.name)

        try:
            with self.lock_for(job.name).hold(settings.lock_timeout_s):
                self.rescheduler.cancel(job.name)
                body(report, started)
        except LockBusy:
            self.log.info("Job %s is already running; resuming later", job.name)
            self.rescheduler.schedule(job.name, settings.busy_reschedule_minutes)
            report.status = RunStatus.BUSY
        finally:
            report.elapsed_s = self.clock() - started

        return report

    def _over_budget(self, started: float, settings: ChunkSettings) -> bool:
        return (self.clock() - started) >= settings.time_budget_s
