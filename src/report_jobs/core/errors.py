from __future__ import annotations

from typing import List, Optional


class JobError(Exception):
    """Base class for job execution errors."""


class LockBusy(JobError):
    """Another invocation holds the job's execution lock."""

    def __init__(self, job_name: str):
        super().__init__(f"Execution lock busy for job '{job_name}'")
        self.job_name = job_name


class TransientStoreError(JobError):
    """A store or table operation failed in a way that may succeed on retry."""


class FatalConfigError(JobError):
    """Required input tables or columns are missing."""


class FatalIOError(JobError):
    """Store, export or delivery failure that retries could not absorb."""


class PartialDeliveryFailure(JobError):
    """Some notification recipients did not receive mail."""

    def __init__(self, failed: List[str], total: int, detail: Optional[str] = None):
        msg = f"Failed to send to {len(failed)}/{total} recipients: {', '.join(failed)}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.failed = list(failed)
        self.total = total
