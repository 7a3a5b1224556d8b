from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from report_jobs.cache.change_cache import ChangeTrackingCache
from report_jobs.cache.snapshot_history import SnapshotHistory
from report_jobs.core.models import JobReport
from report_jobs.notify.audit import AuditEntry, AuditLog
from report_jobs.notify.operator import FailureContext, OperatorNotifier
from report_jobs.scheduling.rescheduler import SelfRescheduler
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.time import format_duration

ResumeFn = Callable[[], JobReport]


class JobDispatcher:
    """
    Continuation table mapping job names to resume functions.

    Every invocation, manual or scheduler-fired, goes through invoke(), which
    times it, writes an audit entry, and on failure records a structured entry,
    notifies the operator channel and re-raises.
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        rescheduler: SelfRescheduler,
        audit: AuditLog,
        notifier: OperatorNotifier,
        cache: Optional[ChangeTrackingCache] = None,
        snapshots: Optional[SnapshotHistory] = None,
        notify_manual: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.checkpoints = checkpoints
        self.rescheduler = rescheduler
        self.audit = audit
        self.notifier = notifier
        self.cache = cache
        self.snapshots = snapshots
        self.notify_manual = notify_manual
        self.clock = clock
        self._table: Dict[str, ResumeFn] = {}
        self.log = get_logger("report_jobs.dispatch")

    def register(self, job_name: str, resume: ResumeFn) -> None:
        key = str(job_name or "").strip()
        if not key:
            raise ValueError("Job name cannot be empty")
        self._table[key] = resume

    def names(self) -> List[str]:
        return list(self._table.keys())

    def dispatch(self, job_name: str) -> JobReport:
        """Scheduler callback entry point."""
        return self.invoke(job_name, manual=False)

    def invoke(self, job_name: str, manual: bool = True) -> JobReport:
        if job_name not in self._table:
            known = ", ".join(sorted(self._table))
            raise KeyError(f"Unknown job '{job_name}'. Known jobs: {known}")

        started = self.clock()
        self.log.info("%s - START (%s)", job_name, "manual" if manual else "scheduled")
        try:
            report = self._table[job_name]()
        except Exception as e:
            elapsed = self.clock() - started
            self.log.error("%s - ERROR after %s: %s", job_name, format_duration(elapsed), e)
            context = self._failure_context(job_name, elapsed)
            if manual and not self.notify_manual:
                self.audit.record(
                    AuditEntry(
                        job=job_name,
                        status="FAILED",
                        stage=context.stage,
                        duration_s=elapsed,
                        units_processed=context.units_processed,
                        error=f"{type(e).__name__}: {e}",
                    )
                )
            else:
                self.notifier.notify_failure(job_name, e, context)
            raise

        elapsed = self.clock() - started
        self.audit.record(
            AuditEntry(
                job=job_name,
                status=report.status.value,
                stage=report.stage or "",
                duration_s=elapsed,
                units_processed=report.units_processed,
                rows_produced=report.rows_produced,
                error=report.detail if report.status.value in {"DEFERRED", "SKIPPED"} else "",
            )
        )
        self.log.info("%s - FINISHED in %s status=%s", job_name, format_duration(elapsed), report.status.value)
        return report

    def run_sequence(
        self,
        job_names: List[str],
        quota_s: float = 6 * 60,
        handoff_threshold_s: float = 2 * 60,
        manual: bool = True,
    ) -> List[JobReport]:
        """
        Run jobs in order inside one execution quota.

        When the remaining quota drops below handoff_threshold_s, the remaining jobs
        are handed off to the rescheduler instead of being started.
        """
        started = self.clock()
        reports: List[JobReport] = []

        for pos, name in enumerate(job_names):
            left = quota_s - (self.clock() - started)
            if left < handoff_threshold_s:
                for pending in job_names[pos:]:
                    self.rescheduler.schedule(pending, 1)
                self.log.info(
                    "Not enough quota left (%ss); handed off %s",
                    int(max(0.0, left)),
                    ", ".join(job_names[pos:]),
                )
                self.audit.record(
                    AuditEntry(
                        job="sequence",
                        status="PARTIAL_HANDOFF",
                        duration_s=self.clock() - started,
                        error="Handed off: " + ", ".join(job_names[pos:]),
                    )
                )
                break

            reports.append(self.invoke(name, manual=manual))
            left = quota_s - (self.clock() - started)
            if left <= 60:
                self.log.warning("About %ss left in the execution quota", int(max(0.0, left)))

        return reports

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Progress and pending resumes for every registered or checkpointed job."""
        out: Dict[str, Dict[str, Any]] = {}
        for name in sorted(set(self._table) | set(self.checkpoints.job_names())):
            cp = self.checkpoints.load(name)
            entry: Dict[str, Any] = {"state": "idle", "pending_resume": self.rescheduler.pending(name)}
            if cp is not None:
                entry.update(
                    {
                        "state": "in_progress",
                        "session_id": cp.session_id,
                        "updated_at_utc": cp.updated_at_utc,
                    }
                )
                if cp.stage is not None:
                    entry["stage"] = cp.stage
                else:
                    entry["cursor"] = cp.cursor
                    entry["total_units"] = cp.total_units
                    entry["progress_pct"] = round(100.0 * cp.cursor / cp.total_units, 1) if cp.total_units else 100.0
            out[name] = entry
        return out

    def reset_all(self, include_cache: bool = False) -> List[str]:
        """Clear every checkpoint and pending resume; optionally empty the change cache and snapshot history."""
        names = sorted(set(self._table) | set(self.checkpoints.job_names()))
        for name in names:
            self.checkpoints.clear(name)
            self.rescheduler.cancel(name)
        if include_cache and self.cache is not None:
            self.cache.reset()
        if include_cache and self.snapshots is not None:
            self.snapshots.reset()
        self.log.info("State reset for: %s (cache=%s)", ", ".join(names), include_cache)
        return names

    def _failure_context(self, job_name: str, elapsed: float) -> FailureContext:
        try:
            cp = self.checkpoints.load(job_name)
        except Exception as e:
            self.log.warning("Could not read checkpoint for failure context of %s: %s", job_name, e)
            cp = None

        if cp is None:
            return FailureContext(stage="start", duration_s=elapsed)
        if cp.stage is not None:
            return FailureContext(stage=cp.stage, duration_s=elapsed)
        return FailureContext(stage=f"chunk at {cp.cursor}/{cp.total_units}", duration_s=elapsed, units_processed=cp.cursor)
