import os
import shutil
import tempfile
import unittest
from datetime import date
from unittest.mock import Mock

from report_jobs.cache.snapshot_history import SNAPSHOT_HEADER, Snapshot, SnapshotHistory
from report_jobs.core.errors import FatalIOError, PartialDeliveryFailure
from report_jobs.core.models import Checkpoint, RunStatus
from report_jobs.core.staged import StagedJobRunner
from report_jobs.jobs.alerts import (
    DropAlertJob,
    DropAlertSettings,
    PerformanceAlertJob,
    PerformanceAlertSettings,
    detect_drop,
    shorten,
)
from report_jobs.scheduling.rescheduler import SelfRescheduler
from report_jobs.state.checkpoints import CheckpointStore
from report_jobs.state.sqlite_store import SQLiteKeyValueStore
from report_jobs.tables.base import Table
from report_jobs.utils.retry import RetryPolicy

from fakes import FakeScheduler, MemoryTableStore, RecordingMailer

CACHE = "_Perf Alert Cache"
TODAY = date(2024, 3, 5)
NO_RETRY_DELAY = RetryPolicy(max_attempts=3, base_delay_s=0, jitter_s=0)

VIOLATIONS_HEADER = [
    "Network ID",
    "Advertiser",
    "Campaign",
    "Placement ID",
    "Placement",
    "Report Date",
    "Impressions",
    "Clicks",
    "Issue Types",
    "Details",
]

RAW_HEADER = [
    "Network ID",
    "Advertiser",
    "Campaign",
    "Placement ID",
    "Placement",
    "Placement Start Date",
    "Placement End Date",
    "Impressions",
    "Clicks",
]


def snap(day, value_a, value_b=0, key="pid:P1"):
    return Snapshot(date(2024, 3, day), key, value_a, value_b)


class TestDetectDrop(unittest.TestCase):
    def test_needs_baseline_plus_one_snapshots(self):
        history = [snap(4, 3000), snap(3, 2000), snap(2, 1000)]
        self.assertIsNone(detect_drop(history, 3010, 0, threshold=0.75))

    def test_flags_drop_against_average_increment(self):
        history = [snap(4, 4000, 40), snap(3, 3000, 30), snap(2, 2000, 20), snap(1, 1000, 10)]

        stats = detect_drop(history, 4100, 50, threshold=0.75)

        self.assertEqual((stats.avg_a, stats.today_a, stats.drop_a_pct), (1000, 100, 90))
        self.assertEqual((stats.avg_b, stats.today_b, stats.drop_b_pct), (10, 10, 0))

    def test_steady_delivery_is_not_flagged(self):
        history = [snap(4, 4000, 40), snap(3, 3000, 30), snap(2, 2000, 20), snap(1, 1000, 10)]
        self.assertIsNone(detect_drop(history, 4900, 49, threshold=0.75))

    def test_restated_days_are_left_out_of_the_baseline(self):
        # 3/2 -> 3/3 went backwards; the average uses the other two days
        history = [snap(4, 4000), snap(3, 3000), snap(2, 5000), snap(1, 1000)]

        self.assertIsNone(detect_drop(history, 4900, 0, threshold=0.75))
        stats = detect_drop(history, 4100, 0, threshold=0.75)
        self.assertEqual(stats.avg_a, 2500)
        self.assertEqual(stats.drop_a_pct, 96)

    def test_zero_average_never_counts_as_drop(self):
        history = [snap(4, 100), snap(3, 100), snap(2, 100), snap(1, 100)]
        self.assertIsNone(detect_drop(history, 100, 0, threshold=0.75))

    def test_shorten(self):
        self.assertEqual(shorten("Spring", 20), "Spring")
        self.assertEqual(shorten("Spring Brand Awareness Push", 20), "Spring Brand Awarene...")


class TestSnapshotHistory(unittest.TestCase):
    def setUp(self):
        self.tables = MemoryTableStore()
        self.history = SnapshotHistory(self.tables, CACHE, keep_days=35, retry=NO_RETRY_DELAY, sleep=lambda s: None)

    def test_provision_creates_table_and_repairs_header(self):
        self.history.provision()
        self.assertEqual(self.tables.read_all(CACHE).header, SNAPSHOT_HEADER)

        self.tables.overwrite(CACHE, ["when", "what"], [["2024-03-01", "pid:P1", "5", "1"]])
        self.history.provision()

        table = self.tables.read_all(CACHE)
        self.assertEqual(table.header, SNAPSHOT_HEADER)
        self.assertEqual(table.rows, [["2024-03-01", "pid:P1", "5", "1"]])

    def test_load_skips_unusable_rows(self):
        self.tables.overwrite(
            CACHE,
            SNAPSHOT_HEADER,
            [["2024-03-01", "pid:P1", "1,200", "3"], ["not a date", "pid:P2", "1", "1"], ["2024-03-01", "", "1", "1"]],
        )
        self.assertEqual(self.history.load(), 1)
        self.assertEqual(self.history.snapshots[0].value_a, 1200.0)

    def test_record_keeps_one_snapshot_per_key_and_day(self):
        self.assertEqual(self.history.record(TODAY, [("pid:P1", 10, 1), ("pid:P1", 11, 1), ("pid:P2", 5, 0)]), 2)
        self.assertEqual(self.history.record(TODAY, [("pid:P1", 12, 2)]), 0)

        rows = self.tables.read_all(CACHE).rows
        self.assertEqual(rows, [["2024-03-05", "pid:P1", 10, 1], ["2024-03-05", "pid:P2", 5, 0]])

    def test_lookups_ignore_today_and_sort_newest_first(self):
        self.tables.overwrite(
            CACHE,
            SNAPSHOT_HEADER,
            [["2024-03-03", "pid:P1", "3", "0"], ["2024-03-04", "pid:P1", "4", "0"], ["2024-03-05", "pid:P1", "5", "0"]],
        )

        history = self.history.history(before=TODAY)

        self.assertEqual([s.value_a for s in history["pid:P1"]], [4.0, 3.0])
        self.assertEqual(self.history.latest(before=TODAY)["pid:P1"].value_a, 4.0)

    def test_compact_drops_old_snapshots(self):
        self.tables.overwrite(
            CACHE,
            SNAPSHOT_HEADER,
            [["2024-01-29", "pid:P1", "1", "0"], ["2024-01-30", "pid:P1", "2", "0"], ["2024-03-04", "pid:P1", "3", "0"]],
        )

        self.assertEqual(self.history.compact(TODAY), 1)
        self.assertEqual([r[0] for r in self.tables.read_all(CACHE).rows], ["2024-01-30", "2024-03-04"])
        self.assertEqual(self.history.compact(TODAY), 0)

    def test_reset_empties_history(self):
        self.history.record(TODAY, [("pid:P1", 10, 1)])
        self.history.reset()
        self.assertEqual(self.tables.read_all(CACHE).rows, [])
        self.assertEqual(self.history.history(before=date(2024, 4, 1)), {})

    def test_persistent_write_failure_is_fatal(self):
        self.history.provision()
        self.tables.fail_appends_to.add(CACHE)
        with self.assertRaises(FatalIOError):
            self.history.record(TODAY, [("pid:P1", 10, 1)])
        self.assertEqual(self.tables.read_all(CACHE).rows, [])


class AlertJobTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.store = SQLiteKeyValueStore(os.path.join(self.tmp_dir, "state.db"))
        self.scheduler = FakeScheduler()
        self.rescheduler = SelfRescheduler(self.scheduler, self.store)
        self.checkpoints = CheckpointStore(self.store)
        self.runner = StagedJobRunner(self.store, self.rescheduler, self.checkpoints)
        self.tables = MemoryTableStore(
            {"EMAIL LIST": Table(["Email"], [["a@example.com"], ["b@example.com"], ["A@example.com"], [""]])}
        )
        self.mailer = RecordingMailer()
        self.notifier = Mock()
        self.history = SnapshotHistory(self.tables, CACHE, retry=NO_RETRY_DELAY, sleep=lambda s: None)

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def seed_history(self, rows):
        self.tables.overwrite(CACHE, SNAPSHOT_HEADER, rows)

    def cache_rows(self):
        return self.tables.read_all(CACHE).rows


class TestPerformanceAlertJob(AlertJobTestCase):
    def setUp(self):
        super().setUp()
        self.tables.overwrite(
            "Violations",
            VIOLATIONS_HEADER,
            [
                ["10", "Acme", "Spring", "P1", "Banner", "2024-03-04", "100", "5", "PERFORMANCE: low delivery", "imp < 500"],
                ["10", "Acme", "Spring", "P2", "Video", "2024-03-04", "200", "9", "PERFORMANCE: low delivery", "imp < 500"],
                ["20", "Acme", "Spring Brand Awareness Push", "P3", "Native", "03/04/2024", "50", "1", "BILLING: x, PERFORMANCE: y", ""],
                ["20", "Acme", "Spring", "P4", "Native", "2024-03-04", "50", "90", "BILLING: clicks exceed impressions", ""],
                ["20", "Acme", "Winter", "P5", "Native", "2024-02-28", "50", "1", "PERFORMANCE: low delivery", ""],
            ],
        )
        self.seed_history(
            [
                ["2024-03-04", "pid:P1", "100", "5"],
                ["2024-03-04", "pid:P2", "150", "9"],
                ["2024-01-15", "pid:P9", "1", "1"],
            ]
        )

    def _job(self, today=TODAY, **config):
        return PerformanceAlertJob(
            tables=self.tables,
            checkpoints=self.checkpoints,
            mailer=self.mailer,
            history=self.history,
            notifier=self.notifier,
            config=PerformanceAlertSettings(send_pause_s=0, **config),
            today=lambda: today,
            sleep=lambda s: None,
        )

    def test_alerts_new_and_changed_rows(self):
        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual([m["to"] for m in self.mailer.sent], ["a@example.com", "b@example.com"])
        mail = self.mailer.sent[0]
        self.assertEqual(mail["subject"], "ALERT - PERFORMANCE (pre-monthly-summary) - 3/5/24 - 2 changed/new row(s)")
        self.assertIn("P2", mail["html"])
        self.assertIn("Spring Brand Awarene...", mail["html"])
        self.assertNotIn("Banner", mail["html"])
        self.assertNotIn("Winter", mail["html"])
        self.assertIsNone(self.checkpoints.load("performance_alert"))

    def test_records_todays_snapshots_and_compacts(self):
        self.runner.run(self._job())

        rows = self.cache_rows()
        self.assertNotIn("pid:P9", [r[1] for r in rows])
        today_keys = sorted(r[1] for r in rows if r[0] == "2024-03-05")
        self.assertEqual(today_keys, ["pid:P1", "pid:P2", "pid:P3"])

    def test_rerun_on_same_day_compares_with_same_baseline(self):
        self.runner.run(self._job())
        before = self.cache_rows()
        self.mailer.sent.clear()

        self.runner.run(self._job())

        self.assertEqual(self.cache_rows(), before)
        self.assertIn("2 changed/new row(s)", self.mailer.sent[0]["subject"])

    def test_nothing_changed_sends_nothing(self):
        self.tables.overwrite("Violations", VIOLATIONS_HEADER, [self.tables.read_all("Violations").rows[0]])

        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual(self.mailer.sent, [])

    def test_skipped_from_cutoff_day(self):
        report = self.runner.run(self._job(today=date(2024, 3, 15)))

        self.assertEqual(report.status, RunStatus.SKIPPED)
        self.assertEqual(self.mailer.sent, [])
        self.assertEqual(len(self.cache_rows()), 3)

    def test_skipped_without_violations_table(self):
        del self.tables.tables["Violations"]
        report = self.runner.run(self._job())
        self.assertEqual(report.status, RunStatus.SKIPPED)
        self.assertIn("Violations", report.detail)

    def test_deferred_while_scan_in_progress(self):
        self.checkpoints.save("qa_scan", Checkpoint(session_id="s", cursor=10, total_units=100))

        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.DEFERRED)
        self.assertIsNotNone(self.rescheduler.pending("performance_alert"))
        self.assertEqual(self.mailer.sent, [])

    def test_partial_delivery_notifies_operator(self):
        self.mailer.failing = {"b@example.com"}

        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.notifier.notify_failure.assert_called_once()
        name, err, context = self.notifier.notify_failure.call_args[0]
        self.assertEqual(name, "performance_alert")
        self.assertIsInstance(err, PartialDeliveryFailure)
        self.assertEqual(context.stage, "send")


class TestDropAlertJob(AlertJobTestCase):
    def setUp(self):
        super().setUp()
        self.tables.overwrite(
            "Raw Data",
            RAW_HEADER,
            [
                ["10", "Acme", "Spring", "P1", "Banner", "2024-02-01", "2024-04-30", "4,100", "50"],
                ["10", "Acme", "Spring", "P2", "Video", "2024-02-01", "2024-04-30", "4900", "49"],
                ["10", "Acme", "Spring", "P3", "Tiny", "2024-02-01", "2024-04-30", "100", "5"],
                ["10", "Acme", "Spring", "P4", "Ended", "2024-02-01", "2024-03-01", "4100", "50"],
            ],
        )
        rows = []
        for day, total in ((1, 1000), (2, 2000), (3, 3000), (4, 4000)):
            rows.append([f"2024-03-0{day}", "pid:P1", str(total), str(total // 100)])
            rows.append([f"2024-03-0{day}", "pid:P2", str(total), str(total // 100)])
        self.seed_history(rows)

    def _job(self, today=TODAY, **config):
        return DropAlertJob(
            tables=self.tables,
            checkpoints=self.checkpoints,
            mailer=self.mailer,
            history=self.history,
            notifier=self.notifier,
            config=DropAlertSettings(send_pause_s=0, **config),
            today=lambda: today,
            sleep=lambda s: None,
        )

    def test_flags_mid_flight_drop(self):
        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual(len(self.mailer.sent), 2)
        mail = self.mailer.sent[0]
        self.assertEqual(mail["subject"], "MID-FLIGHT DROP ALERT (75%) - 3/5/24")
        self.assertIn("1 mid-flight placement(s)", mail["html"])
        self.assertIn("-90%", mail["html"])
        self.assertIn("Banner", mail["html"])
        self.assertNotIn("Video", mail["html"])
        self.assertNotIn("Ended", mail["html"])

    def test_low_cost_and_ended_entities_are_not_recorded(self):
        self.runner.run(self._job())

        today_keys = sorted(r[1] for r in self.cache_rows() if r[0] == "2024-03-05")
        self.assertEqual(today_keys, ["pid:P1", "pid:P2"])

    def test_threshold_is_configurable(self):
        self.runner.run(self._job(drop_threshold=0.95))
        self.assertEqual(self.mailer.sent, [])

    def test_first_days_have_no_baseline(self):
        self.seed_history([])
        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.COMPLETED)
        self.assertEqual(self.mailer.sent, [])
        self.assertEqual(len(self.cache_rows()), 2)

    def test_skipped_without_start_date_column(self):
        self.tables.overwrite("Raw Data", [h for h in RAW_HEADER if h != "Placement Start Date"], [])
        self.tables.tables["Raw Data"].rows.append(["10", "Acme", "Spring", "P1", "Banner", "2024-04-30", "1", "1"])

        report = self.runner.run(self._job())

        self.assertEqual(report.status, RunStatus.SKIPPED)
        self.assertIn("Placement Start Date", report.detail)

    def test_skipped_from_cutoff_day(self):
        report = self.runner.run(self._job(today=date(2024, 3, 20)))
        self.assertEqual(report.status, RunStatus.SKIPPED)
        self.assertEqual(self.mailer.sent, [])


if __name__ == "__main__":
    unittest.main()
