from __future__ import annotations

from typing import Any, List, Optional, Protocol, Sequence

from report_jobs.core.models import Checkpoint, ChunkSettings, JobReport, RunStatus
from report_jobs.core.runner import LockedJobRunner
from report_jobs.state.checkpoints import new_session_id


class ChunkedJob(Protocol):
    """Contract for jobs that walk one ordered unit sequence in resumable chunks."""

    name: str
    settings: ChunkSettings

    def load_units(self) -> Sequence[Any]: ...

    def reset_output(self) -> None: ...

    def begin(self, checkpoint: Checkpoint) -> None: ...

    def process_unit(self, index: int, unit: Any) -> Optional[List[Any]]: ...

    def flush(self, rows: List[List[Any]]) -> None: ...

    def commit(self, complete: bool) -> None: ...


class ChunkedJobRunner(LockedJobRunner):
    """Runs one bounded, checkpointed slice of a chunked job per invocation."""

    logger_name = "report_jobs.runner.chunked"

    def run(self, job: ChunkedJob) -> JobReport:
        """
        Process the next chunk of the job.

        Args:
            job: The chunked job to advance.

        Returns:
            A report describing what this invocation did.
        """
        return self._invoke(job, lambda report, started: self._run_locked(job, report, started))

    def _run_locked(self, job: ChunkedJob, report: JobReport, started: float) -> None:
        settings = job.settings
        units = job.load_units()
        total = len(units)

        checkpoint = self.checkpoints.load(job.name)
        if checkpoint is None or checkpoint.stage is not None or checkpoint.total_units != total:
            if checkpoint is not None:
                self.log.info(
                    "Stored progress for %s no longer matches input (stored=%s current=%s); restarting",
                    job.name,
                    checkpoint.total_units,
                    total,
                )
            job.reset_output()
            checkpoint = Checkpoint(session_id=new_session_id(), cursor=settings.first_index, total_units=total)
            self.checkpoints.save(job.name, checkpoint)
            report.fresh_start = True

        report.session_id = checkpoint.session_id
        report.total_units = total
        job.begin(checkpoint)

        self.log.info(
            "Chunk started: job=%s session=%s cursor=%s/%s limit=%s budget_s=%s",
            job.name,
            checkpoint.session_id,
            checkpoint.cursor,
            total,
            settings.chunk_limit,
            settings.time_budget_s,
        )

        cursor = checkpoint.cursor
        rows: List[List[Any]] = []
        for index in range(checkpoint.cursor, total):
            row = job.process_unit(index, units[index])
            cursor = index + 1
            report.units_processed += 1
            if row is None:
                report.units_skipped += 1
            else:
                rows.append(row)

            if len(rows) >= settings.chunk_limit or self._over_budget(started, settings):
                break

        if rows:
            job.flush(rows)
        report.rows_produced = len(rows)

        complete = cursor >= total
        job.commit(complete)

        checkpoint.cursor = cursor
        report.cursor = cursor
        if complete:
            self.checkpoints.clear(job.name)
            self.rescheduler.cancel(job.name)
            report.status = RunStatus.COMPLETED
            self.log.info("Job complete: %s processed all %s units", job.name, total)
        else:
            self.checkpoints.save(job.name, checkpoint)
            self.rescheduler.schedule(job.name, settings.reschedule_minutes)
            report.status = RunStatus.PARTIAL
            self.log.info(
                "Job partial: %s produced %s rows this run, next unit %s/%s",
                job.name,
                len(rows),
                cursor,
                total,
            )
