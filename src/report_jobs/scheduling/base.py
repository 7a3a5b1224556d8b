from __future__ import annotations

from typing import List, Protocol


class Scheduler(Protocol):
    """Protocol for external schedulers that fire jobs by name."""

    def register_one_shot(self, job_name: str, delay_s: float) -> str: ...

    def list_pending(self) -> List[str]: ...

    def cancel(self, handle: str) -> None: ...

    def register_daily(self, job_name: str, hour: int, minute: int = 0) -> str: ...
