import os
import shutil
import tempfile
import unittest

from report_jobs.core.chunked import ChunkedJobRunner
from report_jobs.core.models import Checkpoint, ChunkSettings, RunStatus
from report_jobs.scheduling.rescheduler import SelfRescheduler
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.state.lock import ExecutionLock
from report_jobs.state.sqlite_store import SQLiteKeyValueStore

from fakes import FakeClock, FakeScheduler


class ListJob:
    """Chunked job over a list; output rows land in a shared sink list."""

    name = "list_job"

    def __init__(self, units, sink, settings, clock=None, step_s=0.0, fail_at=None, keep=lambda u: True):
        self.units = list(units)
        self.sink = sink
        self.settings = settings
        self.clock = clock
        self.step_s = step_s
        self.fail_at = fail_at
        self.keep = keep
        self.resets = 0
        self.commits = []

    def load_units(self):
        return self.units

    def reset_output(self):
        self.resets += 1
        del self.sink[:]

    def begin(self, checkpoint):
        self.begun_at = checkpoint.cursor

    def process_unit(self, index, unit):
        if self.clock is not None:
            self.clock.advance(self.step_s)
        if index == self.fail_at:
            raise RuntimeError(f"unit {index} failed")
        return [index, unit] if self.keep(unit) else None

    def flush(self, rows):
        self.sink.extend(rows)

    def commit(self, complete):
        self.commits.append(complete)


class TestChunkedJobRunner(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.store = SQLiteKeyValueStore(os.path.join(self.tmp_dir, "state.db"))
        self.scheduler = FakeScheduler()
        self.rescheduler = SelfRescheduler(self.scheduler, self.store)
        self.checkpoints = CheckpointStore(self.store)
        self.clock = FakeClock()
        self.runner = ChunkedJobRunner(self.store, self.rescheduler, self.checkpoints, clock=self.clock)
        self.sink = []

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _job(self, units, **kwargs):
        settings = kwargs.pop("settings", ChunkSettings(chunk_limit=2, time_budget_s=60))
        return ListJob(units, self.sink, settings, clock=self.clock, **kwargs)

    def test_chunks_until_complete(self):
        units = ["a", "b", "c", "d", "e"]
        reports = []
        for _ in range(5):
            report = self.runner.run(self._job(units))
            reports.append(report)
            if report.status == RunStatus.COMPLETED:
                break

        self.assertEqual([r.status for r in reports], [RunStatus.PARTIAL, RunStatus.PARTIAL, RunStatus.COMPLETED])
        self.assertEqual([r.cursor for r in reports], [2, 4, 5])
        self.assertEqual(self.sink, [[i, u] for i, u in enumerate(units)])
        self.assertTrue(reports[0].fresh_start)
        self.assertFalse(reports[1].fresh_start)
        self.assertEqual(len({r.session_id for r in reports}), 1)

        self.assertIsNone(self.checkpoints.load("list_job"))
        self.assertIsNone(self.rescheduler.pending("list_job"))
        self.assertEqual(self.scheduler.list_pending(), [])

    def test_partial_run_schedules_one_resume(self):
        report = self.runner.run(self._job(["a", "b", "c"]))
        self.assertEqual(report.status, RunStatus.PARTIAL)

        cp = self.checkpoints.load("list_job")
        self.assertEqual((cp.cursor, cp.total_units), (2, 3))
        shots = self.scheduler.one_shots_for("list_job")
        self.assertEqual(len(shots), 1)
        self.assertEqual(shots[0]["delay_s"], 120.0)

    def test_resumed_output_matches_single_pass(self):
        units = [f"u{i}" for i in range(11)]
        keep = lambda u: int(u[1:]) % 3 != 0  # noqa: E731

        while self.runner.run(self._job(units, keep=keep)).status != RunStatus.COMPLETED:
            pass
        chunked_output = list(self.sink)

        single = []
        big = ChunkSettings(chunk_limit=1000, time_budget_s=60)
        report = self.runner.run(ListJob(units, single, big, keep=keep))
        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual(chunked_output, single)

    def test_skipped_units_do_not_count_toward_chunk_limit(self):
        units = ["x", "keep1", "x", "x", "keep2", "keep3"]
        report = self.runner.run(self._job(units, keep=lambda u: u.startswith("keep")))

        self.assertEqual(report.rows_produced, 2)
        self.assertEqual(report.units_skipped, 3)
        self.assertEqual(report.cursor, 5)

    def test_time_budget_stops_the_chunk(self):
        settings = ChunkSettings(chunk_limit=100, time_budget_s=25)
        report = self.runner.run(self._job(list("abcdefgh"), settings=settings, step_s=10))

        self.assertEqual(report.status, RunStatus.PARTIAL)
        self.assertEqual(report.cursor, 3)
        self.assertEqual(len(self.sink), 3)

    def test_input_size_change_restarts_session(self):
        self.runner.run(self._job(["a", "b", "c"]))
        first = self.checkpoints.load("list_job")

        job = self._job(["a", "b", "c", "d"])
        report = self.runner.run(job)

        self.assertTrue(report.fresh_start)
        self.assertEqual(job.resets, 1)
        self.assertNotEqual(report.session_id, first.session_id)
        self.assertEqual(self.sink, [[0, "a"], [1, "b"]])

    def test_staged_checkpoint_is_not_resumed_as_chunked(self):
        self.checkpoints.save("list_job", Checkpoint(session_id="old", stage="send"))
        report = self.runner.run(self._job(["a"]))
        self.assertTrue(report.fresh_start)
        self.assertEqual(report.status, RunStatus.COMPLETED)

    def test_failure_keeps_last_checkpoint(self):
        units = list("abcdef")
        self.runner.run(self._job(units))

        with self.assertRaises(RuntimeError):
            self.runner.run(self._job(units, fail_at=3))

        cp = self.checkpoints.load("list_job")
        self.assertEqual(cp.cursor, 2)
        self.assertEqual(len(self.sink), 2)
        self.assertIsNone(self.store.get("lock.list_job"))

        while self.runner.run(self._job(units)).status != RunStatus.COMPLETED:
            pass
        self.assertEqual(self.sink, [[i, u] for i, u in enumerate(units)])

    def test_busy_lock_reschedules_without_side_effects(self):
        self.runner.run(self._job(list("abcd")))
        before = self.checkpoints.load("list_job")
        sink_before = list(self.sink)
        self.rescheduler.cancel("list_job")

        holder = ExecutionLock(self.store, "list_job")
        self.assertTrue(holder.try_acquire(0))
        try:
            settings = ChunkSettings(chunk_limit=2, lock_timeout_s=0, busy_reschedule_minutes=3)
            job = self._job(list("abcd"), settings=settings)
            report = self.runner.run(job)
        finally:
            holder.release()

        self.assertEqual(report.status, RunStatus.BUSY)
        self.assertEqual(self.sink, sink_before)
        self.assertEqual(job.commits, [])
        self.assertEqual(self.checkpoints.load("list_job").cursor, before.cursor)
        shots = self.scheduler.one_shots_for("list_job")
        self.assertEqual(len(shots), 1)
        self.assertEqual(shots[0]["delay_s"], 180.0)

    def test_empty_input_completes_immediately(self):
        report = self.runner.run(self._job([]))
        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual(report.total_units, 0)
        self.assertIsNone(self.checkpoints.load("list_job"))


if __name__ == "__main__":
    unittest.main()
