from __future__ import annotations

import json
import sys
from typing import List

from report_jobs.config_models import ReportJobsConfig, load_and_validate_config
from report_jobs.core.factory import BuiltComponents, ComponentFactory
from report_jobs.core.models import RunStatus
from report_jobs.utils.logging import get_logger, setup_logging

USAGE = "Usage: report-jobs configs/jobs/<config>.yaml (run <job> | sequence | serve | status | reset [--cache])"


def sequence_jobs(config: ReportJobsConfig) -> List[str]:
    return list(config.schedule.sequence) or config.enabled_jobs()


def run_one(built: BuiltComponents, job_name: str) -> None:
    """Run a single job invocation manually."""
    report = built.dispatcher.invoke(job_name, manual=True)
    print("DONE:", report)
    if report.status in (RunStatus.PARTIAL, RunStatus.BUSY, RunStatus.DEFERRED):
        print(f"'{job_name}' is not finished; run it again or use 'serve' to resume automatically")


def run_sequence(built: BuiltComponents, config: ReportJobsConfig, manual: bool = True) -> None:
    """Run the configured job sequence inside one execution quota."""
    reports = built.dispatcher.run_sequence(
        sequence_jobs(config),
        quota_s=config.schedule.quota_s,
        handoff_threshold_s=config.schedule.handoff_threshold_s,
        manual=manual,
    )
    for report in reports:
        print("DONE:", report)


def run_schedule(built: BuiltComponents, config: ReportJobsConfig) -> None:
    """Serve daily entry points and one-shot resumptions until interrupted."""
    log = get_logger("report_jobs.main")
    dispatcher = built.dispatcher

    def fire(job_name: str) -> None:
        if job_name == "sequence":
            run_sequence(built, config, manual=False)
        else:
            dispatcher.dispatch(job_name)

    built.scheduler.bind(fire)

    if not config.schedule.daily:
        print("Warning: no daily entries configured; only pending resumptions will run")
    for entry in config.schedule.daily:
        built.scheduler.register_daily(entry.job, entry.hour, entry.minute)

    # in-memory schedules do not survive a restart; pick up unfinished sessions
    for name, info in dispatcher.status().items():
        if info["state"] == "in_progress" and name in dispatcher.names():
            log.info("Resuming unfinished session of %s", name)
            built.rescheduler.schedule(name, 1)

    print(f"Starting scheduler with {len(config.schedule.daily)} daily entries")
    try:
        built.scheduler.start()
    except KeyboardInterrupt:
        print("Scheduler stopped by user")


def main() -> None:
    """Main entry point for report jobs."""
    if len(sys.argv) < 3:
        print(USAGE)
        raise SystemExit(2)

    config_path, command, args = sys.argv[1], sys.argv[2], sys.argv[3:]
    setup_logging("configs/logging.yaml")
    print(f"Loading config from {config_path}")
    config = load_and_validate_config(config_path)
    built = ComponentFactory(config).build()

    if command == "run":
        if not args:
            print(USAGE)
            raise SystemExit(2)
        run_one(built, args[0])
    elif command == "sequence":
        run_sequence(built, config)
    elif command == "serve":
        run_schedule(built, config)
    elif command == "status":
        status = {"jobs": built.dispatcher.status(), "recent_executions": built.audit.recent(3)}
        print(json.dumps(status, indent=2, sort_keys=True))
    elif command == "reset":
        cleared = built.dispatcher.reset_all(include_cache="--cache" in args)
        print("Reset:", ", ".join(cleared) or "(nothing)")
    else:
        print(USAGE)
        raise SystemExit(2)


if __name__ == "__main__":
    main()
