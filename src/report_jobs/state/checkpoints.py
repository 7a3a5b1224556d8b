from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from report_jobs.core.models import Checkpoint
from report_jobs.state.base import KeyValueStore
from report_jobs.utils.logging import get_logger
from report_jobs.utils.time import utc_now_iso

CHECKPOINT_PREFIX = "checkpoint."


class CheckpointPayloadV1(BaseModel):
    """Pydantic schema for the serialized checkpoint payload."""

    version: int = 1
    session_id: str = Field(..., min_length=1)
    cursor: int = Field(0, ge=0)
    total_units: int = Field(0, ge=0)
    stage: Optional[str] = None
    stage_data: Dict[str, Any] = Field(default_factory=dict)
    updated_at_utc: str = ""


def new_session_id() -> str:
    return uuid.uuid4().hex


class CheckpointStore:
    """Typed checkpoint persistence on top of a key-value store."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.log = get_logger("report_jobs.state.checkpoints")

    def key(self, job_name: str) -> str:
        return f"{CHECKPOINT_PREFIX}{job_name}"

    def load(self, job_name: str) -> Optional[Checkpoint]:
        raw = self.store.get(self.key(job_name))
        if not raw:
            return None

        try:
            payload = CheckpointPayloadV1.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            self.log.warning("Discarding unreadable checkpoint for %s: %s", job_name, e)
            return None

        return Checkpoint(
            session_id=payload.session_id,
            cursor=payload.cursor,
            total_units=payload.total_units,
            stage=payload.stage,
            stage_data=payload.stage_data,
            updated_at_utc=payload.updated_at_utc,
        )

    def save(self, job_name: str, checkpoint: Checkpoint) -> None:
        """
        Persist a checkpoint.

        Raises:
            ValueError: If the cursor would move backwards within the stored session.
        """
        existing = self.load(job_name)
        if existing and existing.session_id == checkpoint.session_id and checkpoint.cursor < existing.cursor:
            raise ValueError(
                f"Checkpoint cursor for '{job_name}' cannot decrease "
                f"({existing.cursor} -> {checkpoint.cursor}) within session {checkpoint.session_id}"
            )

        checkpoint.updated_at_utc = utc_now_iso()
        payload = CheckpointPayloadV1(
            session_id=checkpoint.session_id,
            cursor=checkpoint.cursor,
            total_units=checkpoint.total_units,
            stage=checkpoint.stage,
            stage_data=checkpoint.stage_data,
            updated_at_utc=checkpoint.updated_at_utc,
        )
        self.store.set(self.key(job_name), json.dumps(payload.model_dump(), ensure_ascii=False, sort_keys=True))

    def clear(self, job_name: str) -> None:
        self.store.delete(self.key(job_name))

    def job_names(self) -> List[str]:
        return [k[len(CHECKPOINT_PREFIX):] for k in self.store.keys(CHECKPOINT_PREFIX)]
