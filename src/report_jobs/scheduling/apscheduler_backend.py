from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from report_jobs.utils.logging import get_logger


class ApschedulerScheduler:
    """
    Scheduler backend on APScheduler 3.

    One-shot resumptions use a DateTrigger; top-level entry points use a daily
    CronTrigger. Every fired job calls the bound target with the job name.
    """

    def __init__(self, scheduler: Optional[BaseScheduler] = None, timezone_name: Optional[str] = None):
        self.scheduler = scheduler or BlockingScheduler(job_defaults={"max_instances": 1, "coalesce": True})
        self.timezone_name = timezone_name
        self._target: Optional[Callable[[str], Any]] = None
        self.log = get_logger("report_jobs.scheduling.apscheduler")

    def bind(self, target: Callable[[str], Any]) -> None:
        """Set the callable invoked with the job name when a scheduled job fires."""
        self._target = target

    def register_one_shot(self, job_name: str, delay_s: float) -> str:
        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, float(delay_s)))
        handle = f"resume:{job_name}:{uuid.uuid4().hex[:12]}"
        self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_date),
            args=[job_name],
            id=handle,
            name=f"Resume {job_name}",
            misfire_grace_time=None,
        )
        self.log.info("One-shot registered: job=%s handle=%s run_at=%s", job_name, handle, run_date.isoformat())
        return handle

    def register_daily(self, job_name: str, hour: int, minute: int = 0) -> str:
        handle = f"daily:{job_name}:{hour:02d}{minute:02d}"
        self.scheduler.add_job(
            self._fire,
            trigger=CronTrigger(hour=hour, minute=minute, timezone=self.timezone_name),
            args=[job_name],
            id=handle,
            name=f"Daily {job_name}",
            replace_existing=True,
        )
        self.log.info("Daily entry registered: job=%s at %02d:%02d", job_name, hour, minute)
        return handle

    def list_pending(self) -> List[str]:
        return [str(job.id) for job in self.scheduler.get_jobs()]

    def cancel(self, handle: str) -> None:
        try:
            self.scheduler.remove_job(handle)
            self.log.info("Schedule cancelled: %s", handle)
        except JobLookupError:
            self.log.debug("Schedule already gone: %s", handle)

    def start(self) -> None:
        self.scheduler.start()

    def _fire(self, job_name: str) -> None:
        if self._target is None:
            raise RuntimeError(f"Scheduler fired '{job_name}' before a target was bound")
        self._target(job_name)
