from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Tuple

from report_jobs.core.models import DONE_STAGE, Checkpoint, ChunkSettings, JobReport, RunStatus
from report_jobs.core.runner import LockedJobRunner
from report_jobs.state.checkpoints import new_session_id

OUTPUTS_KEY = "outputs"


@dataclass(frozen=True)
class StageResult:
    """Result of one bounded slice of stage work."""

    complete: bool = True
    detail: str = ""


@dataclass(frozen=True)
class Precheck:
    """Job-level gate evaluated before any stage work."""

    action: str = "proceed"  # proceed | defer | skip
    minutes: int = 5
    reason: str = ""

    @classmethod
    def proceed(cls) -> "Precheck":
        return cls()

    @classmethod
    def defer(cls, minutes: int, reason: str) -> "Precheck":
        return cls(action="defer", minutes=minutes, reason=reason)

    @classmethod
    def skip(cls, reason: str) -> "Precheck":
        return cls(action="skip", reason=reason)


class Stage(Protocol):
    """One named phase of a staged job. Stages mutate stage_data append-only."""

    name: str

    def applies(self, data: Dict[str, Any]) -> bool: ...

    def run(self, data: Dict[str, Any]) -> StageResult: ...


class StagedJob(Protocol):
    """Contract for jobs made of an ordered list of heterogeneous stages."""

    name: str
    settings: ChunkSettings
    stages: List[Stage]

    def precheck(self) -> Precheck: ...


def stage_outputs(data: Dict[str, Any]) -> Dict[str, Any]:
    return data.setdefault(OUTPUTS_KEY, {})


class KeyChunkedStage:
    """
    Stage that works through a secondary key set a bounded number of keys at a time.

    The key list and per-key payload are computed once per session and kept in
    stage_data together with the keys already rendered and the output so far, so a
    resumed invocation only appends output for the remaining keys.
    """

    name = "key_chunked"
    max_keys_per_chunk = 5

    def applies(self, data: Dict[str, Any]) -> bool:
        return True

    def compute_keys(self, data: Dict[str, Any]) -> Tuple[List[str], Dict[str, Any]]:
        raise NotImplementedError

    def render_keys(self, keys: List[str], payload: Dict[str, Any], data: Dict[str, Any]) -> str:
        raise NotImplementedError

    def finish(self, output: str, data: Dict[str, Any]) -> Any:
        return output

    def run(self, data: Dict[str, Any]) -> StageResult:
        state = data.setdefault(self.name, {})
        if "keys" not in state:
            keys, payload = self.compute_keys(data)
            state.update({"keys": list(keys), "payload": payload, "processed": [], "output": ""})

        processed = set(state["processed"])
        remaining = [k for k in state["keys"] if k not in processed]
        batch = remaining[: max(1, self.max_keys_per_chunk)]
        if batch:
            state["output"] += self.render_keys(batch, state["payload"], data)
            state["processed"].extend(batch)

        left = len(remaining) - len(batch)
        if left > 0:
            return StageResult(complete=False, detail=f"{left} keys remaining")

        stage_outputs(data)[self.name] = self.finish(state["output"], data)
        return StageResult(complete=True, detail=f"{len(state['keys'])} keys")


class StagedJobRunner(LockedJobRunner):
    """Advances a staged job through its stages within one invocation's time budget."""

    logger_name = "report_jobs.runner.staged"

    def run(self, job: StagedJob) -> JobReport:
        return self._invoke(job, lambda report, started: self._run_locked(job, report, started))

    def _run_locked(self, job: StagedJob, report: JobReport, started: float) -> None:
        settings = job.settings
        gate = job.precheck()
        if gate.action == "defer":
            self.log.info("Job %s deferred %s min: %s", job.name, gate.minutes, gate.reason)
            self.rescheduler.schedule(job.name, gate.minutes)
            report.status = RunStatus.DEFERRED
            report.detail = gate.reason
            return
        if gate.action == "skip":
            self.log.info("Job %s skipped: %s", job.name, gate.reason)
            self.checkpoints.clear(job.name)
            self.rescheduler.cancel(job.name)
            report.status = RunStatus.SKIPPED
            report.detail = gate.reason
            return

        by_name = {stage.name: stage for stage in job.stages}
        order = [stage.name for stage in job.stages]

        checkpoint = self.checkpoints.load(job.name)
        if checkpoint is None or checkpoint.stage not in by_name:
            checkpoint = Checkpoint(session_id=new_session_id(), stage=order[0], stage_data={})
            self.checkpoints.save(job.name, checkpoint)
            report.fresh_start = True
        report.session_id = checkpoint.session_id

        while True:
            stage = by_name[checkpoint.stage]
            if stage.applies(checkpoint.stage_data):
                self.log.info("Stage %s/%s: %s", order.index(stage.name) + 1, len(order), stage.name)
                result = stage.run(checkpoint.stage_data)
            else:
                self.log.info("Stage %s skipped: preconditions not met", stage.name)
                stage_outputs(checkpoint.stage_data).setdefault(stage.name, "")
                result = StageResult(complete=True, detail="skipped")

            report.units_processed += 1
            if result.complete:
                pos = order.index(stage.name)
                checkpoint.stage = order[pos + 1] if pos + 1 < len(order) else DONE_STAGE
            report.stage = checkpoint.stage

            if checkpoint.stage == DONE_STAGE:
                self.checkpoints.clear(job.name)
                self.rescheduler.cancel(job.name)
                report.status = RunStatus.COMPLETED
                self.log.info("Job complete: %s", job.name)
                return

            self.checkpoints.save(job.name, checkpoint)
            if self._over_budget(started, settings):
                self.rescheduler.schedule(job.name, settings.reschedule_minutes)
                report.status = RunStatus.PARTIAL
                self.log.info("Job %s paused at stage %s (%s)", job.name, checkpoint.stage, result.detail)
                return
