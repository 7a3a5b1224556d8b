from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional

DONE_STAGE = "done"


class RunStatus(str, Enum):
    """Outcome of a single job invocation."""

    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    BUSY = "BUSY"
    DEFERRED = "DEFERRED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class Checkpoint:
    """Durable progress of one in-progress job session."""

    session_id: str
    cursor: int = 0
    total_units: int = 0
    stage: Optional[str] = None
    stage_data: Dict[str, Any] = field(default_factory=dict)
    updated_at_utc: str = ""

    @property
    def complete(self) -> bool:
        if self.stage is not None:
            return self.stage == DONE_STAGE
        return self.cursor >= self.total_units


@dataclass(frozen=True)
class ChunkSettings:
    """Per-job limits for one invocation of a resumable job."""

    chunk_limit: int = 3500
    time_budget_s: float = 4.2 * 60
    reschedule_minutes: int = 2
    busy_reschedule_minutes: int = 2
    lock_timeout_s: float = 5.0
    first_index: int = 0


@dataclass
class CacheRecord:
    """Last observed values of one tracked entity and when each last changed."""

    key: str
    expiry: Optional[date] = None
    last_observed: Optional[date] = None
    value_a: float = 0.0
    value_b: float = 0.0
    last_change_a: Optional[date] = None
    last_change_b: Optional[date] = None


@dataclass(frozen=True)
class ChangeDates:
    """Last-change dates of both tracked values after an upsert."""

    last_change_a: Optional[date]
    last_change_b: Optional[date]


@dataclass
class JobReport:
    """Summary report of one job invocation."""

    job_name: str
    status: RunStatus = RunStatus.PARTIAL
    session_id: str = ""
    stage: Optional[str] = None
    units_processed: int = 0
    rows_produced: int = 0
    units_skipped: int = 0
    cursor: int = 0
    total_units: int = 0
    elapsed_s: float = 0.0
    fresh_start: bool = False
    detail: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)
