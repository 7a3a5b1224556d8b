import os
import shutil
import tempfile
import unittest
from datetime import date

from report_jobs.cache.change_cache import CacheSettings, ChangeTrackingCache
from report_jobs.core.chunked import ChunkedJobRunner
from report_jobs.core.errors import FatalConfigError, FatalIOError, TransientStoreError
from report_jobs.core.models import ChunkSettings, RunStatus
from report_jobs.jobs.qa_scan import QaScanJob
from report_jobs.jobs.rules import ConfiguredRuleEvaluator, OwnerDirectory, SkipFilter, ThresholdRule, to_float
from report_jobs.scheduling.rescheduler import SelfRescheduler
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.state.sqlite_store import SQLiteKeyValueStore
from report_jobs.tables.base import Table
from report_jobs.utils.retry import RetryPolicy

from fakes import FakeScheduler, MemoryTableStore

RAW_HEADER = [
    "Network ID",
    "Report Date",
    "Advertiser",
    "Campaign",
    "Placement ID",
    "Placement",
    "Placement End Date",
    "Impressions",
    "Clicks",
]


def raw_row(net, day, pid, placement, impressions, clicks, end="2024-12-31"):
    return [net, day, "Acme", "Spring", pid, placement, end, impressions, clicks]


class TestRules(unittest.TestCase):
    def test_to_float_parses_report_cells(self):
        self.assertEqual(to_float("1,234"), 1234.0)
        self.assertEqual(to_float("$12.50"), 12.5)
        self.assertEqual(to_float("95.00%"), 95.0)
        self.assertEqual(to_float(""), 0.0)
        self.assertEqual(to_float(None, 7.0), 7.0)

    def test_column_comparison_and_threshold(self):
        evaluator = ConfiguredRuleEvaluator(
            rules=[
                ThresholdRule("BILLING: clicks exceed impressions", "Clicks", "gt", other_column="Impressions"),
                ThresholdRule("DELIVERY: over cap", "Impressions", "ge", threshold=1000),
            ]
        )
        issues = evaluator.evaluate({"Impressions": "1,000", "Clicks": "1500"})
        self.assertEqual([i.label for i in issues], ["BILLING: clicks exceed impressions", "DELIVERY: over cap"])
        self.assertEqual(evaluator.evaluate({"Impressions": "10", "Clicks": "1"}), [])

    def test_skip_filters_and_zero_activity(self):
        evaluator = ConfiguredRuleEvaluator(
            rules=[ThresholdRule("any", "Clicks", "ge", threshold=0)],
            skip_filters=[SkipFilter("Placement", ("test",))],
            activity_columns=["Impressions", "Clicks"],
        )
        self.assertIsNone(evaluator.evaluate({"Placement": "TEST banner", "Impressions": 5, "Clicks": 1}))
        self.assertIsNone(evaluator.evaluate({"Placement": "banner", "Impressions": 0, "Clicks": 0}))
        self.assertEqual(len(evaluator.evaluate({"Placement": "banner", "Impressions": 1, "Clicks": 0})), 1)

    def test_unknown_op_fails_loudly(self):
        with self.assertRaises(ValueError):
            ThresholdRule("x", "Clicks", "between").check({"Clicks": 1})

    def test_owner_directory_from_table(self):
        tables = MemoryTableStore({"Networks": Table(["Network ID", "Owner"], [["10", "Dana"], ["11", ""]])})
        owners = OwnerDirectory.from_table(tables, "Networks", "Network ID", "Owner")
        self.assertEqual(owners.resolve({"Network ID": "10"}), "Dana")
        self.assertEqual(owners.resolve({"Network ID": "11"}), "Unassigned")
        self.assertEqual(OwnerDirectory.from_table(tables, "Missing", "Network ID", "Owner").resolve({}), "Unassigned")


class TestQaScanJob(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.store = SQLiteKeyValueStore(os.path.join(self.tmp_dir, "state.db"))
        self.scheduler = FakeScheduler()
        self.rescheduler = SelfRescheduler(self.scheduler, self.store)
        self.checkpoints = CheckpointStore(self.store)
        self.runner = ChunkedJobRunner(self.store, self.rescheduler, self.checkpoints)
        self.tables = MemoryTableStore(
            {
                "Networks": Table(["Network ID", "Owner"], [["10", "Dana"], ["20", "Lee"]]),
                "Raw Data": Table(
                    RAW_HEADER,
                    [
                        raw_row("10", "2024-03-05", "P1", "Banner", 100, 150),
                        raw_row("10", "2024-03-05", "P2", "Banner test", 100, 150),
                        raw_row("20", "2024-03-05", "", "Skyscraper", 50, 80),
                        raw_row("20", "2024-03-05", "P4", "Video", 500, 5),
                        raw_row("30", "2024-03-05", "P5", "Native", 10, 20),
                    ],
                ),
            }
        )
        self.evaluator = ConfiguredRuleEvaluator(
            rules=[ThresholdRule("BILLING: clicks exceed impressions", "Clicks", "gt", other_column="Impressions")],
            skip_filters=[SkipFilter("Placement", ("test",))],
        )

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _job(self, chunk_limit=1000, today=date(2024, 3, 6)):
        cache = ChangeTrackingCache(self.tables, self.store, CacheSettings(batch_pause_s=0))
        return QaScanJob(
            tables=self.tables,
            cache=cache,
            evaluator=self.evaluator,
            settings=ChunkSettings(chunk_limit=chunk_limit),
            owners_factory=lambda: OwnerDirectory.from_table(self.tables, "Networks", "Network ID", "Owner"),
            today=lambda: today,
            retry=RetryPolicy(max_attempts=3, base_delay_s=0, jitter_s=0),
            sleep=lambda s: None,
        )

    def _violations(self):
        table = self.tables.read_all("Violations")
        return table.records()

    def test_single_pass_writes_violations(self):
        job = self._job()
        report = self.runner.run(job)

        self.assertEqual(report.status, RunStatus.COMPLETED)
        rows = self._violations()
        self.assertEqual([r["Placement"] for r in rows], ["Banner", "Skyscraper", "Native"])
        self.assertEqual([r["Owner"] for r in rows], ["Dana", "Lee", "Unassigned"])
        self.assertEqual(rows[0]["Issue Types"], "BILLING: clicks exceed impressions")
        self.assertEqual(rows[0]["Days Since Impressions Change"], 0)
        self.assertEqual(self.tables.read_all("Violations").header, job.output_header)

        cache = ChangeTrackingCache(self.tables, self.store)
        cache.load()
        self.assertEqual(sorted(cache.records), ["k:20|Spring|Skyscraper", "pid:P1", "pid:P5"])

    def test_chunked_output_matches_single_pass(self):
        self.runner.run(self._job())
        single = self._violations()

        self.checkpoints.clear("qa_scan")
        statuses = []
        for _ in range(5):
            report = self.runner.run(self._job(chunk_limit=1))
            statuses.append(report.status)
            if report.status == RunStatus.COMPLETED:
                break

        self.assertEqual(statuses, [RunStatus.PARTIAL, RunStatus.PARTIAL, RunStatus.COMPLETED])
        chunked = self._violations()
        self.assertEqual([r["Placement ID"] for r in chunked], [r["Placement ID"] for r in single])

    def test_days_since_change_carries_across_runs(self):
        self.runner.run(self._job())

        raw = self.tables.tables["Raw Data"]
        raw.rows = [
            raw_row("10", "2024-03-09", "P1", "Banner", 120, 150),
            raw_row("30", "2024-03-09", "P5", "Native", 10, 20),
        ]
        self.runner.run(self._job(today=date(2024, 3, 10)))

        rows = {r["Placement ID"]: r for r in self._violations()}
        self.assertEqual(rows["P1"]["Days Since Impressions Change"], 0)
        self.assertEqual(rows["P1"]["Days Since Clicks Change"], 4)
        self.assertEqual(rows["P5"]["Days Since Impressions Change"], 4)

    def test_transient_output_failure_is_retried(self):
        failures = [TransientStoreError("quota"), TransientStoreError("quota")]
        append = self.tables.append

        def flaky_append(name, rows):
            if name == "Violations" and failures:
                raise failures.pop()
            append(name, rows)

        self.tables.overwrite("Violations", self._job().output_header, [])
        self.tables.append = flaky_append

        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual(len(self._violations()), 3)

    def test_persistent_output_failure_is_fatal_and_keeps_checkpoint(self):
        self.runner.run(self._job(chunk_limit=1))
        before = self.checkpoints.load("qa_scan")
        self.tables.fail_appends_to.add("Violations")

        with self.assertRaises(FatalIOError):
            self.runner.run(self._job(chunk_limit=1))

        self.assertEqual(self.checkpoints.load("qa_scan").cursor, before.cursor)

    def test_missing_input_table_is_fatal(self):
        del self.tables.tables["Raw Data"]
        with self.assertRaises(FatalConfigError):
            self.runner.run(self._job())

    def test_missing_required_column_is_fatal(self):
        raw = self.tables.tables["Raw Data"]
        raw.header = [h for h in raw.header if h != "Clicks"]
        with self.assertRaises(FatalConfigError):
            self.runner.run(self._job())


if __name__ == "__main__":
    unittest.main()
