"""Job record data model and its state machine."""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, model_validator


class JobState(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.EXPIRED}
)

# Allowed moves; terminal states have no entry.
TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CREATED: frozenset({JobState.PROCESSING, JobState.EXPIRED}),
    JobState.PROCESSING: frozenset(
        {JobState.COMPLETED, JobState.FAILED, JobState.EXPIRED}
    ),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """job_<epoch-ms>_<random>, unique for the lifetime of the store."""
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


class IllegalTransition(ValueError):
    """Raised by JobRecord.transition for a move the state machine forbids."""


class JobRecord(BaseModel):
    """Tracks one uploaded image from upload to staged result.

    Records are treated as immutable values: every state change goes through
    ``transition`` which returns a new, re-validated record.
    """
    id: str = Field(default_factory=new_job_id)
    state: JobState = JobState.CREATED
    source_ref: str
    result_ref: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    requester: Optional[str] = None
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    version: int = 0

    @model_validator(mode="after")
    def _check_invariants(self) -> "JobRecord":
        if (self.result_ref is not None) != (self.state == JobState.COMPLETED):
            raise ValueError("result_ref must be set exactly when state is completed")
        has_error = self.state in (JobState.FAILED, JobState.EXPIRED)
        if (self.error_detail is not None) != has_error:
            raise ValueError("error_detail must be set exactly when state is failed or expired")
        if (self.completed_at is not None) != self.state.is_terminal:
            raise ValueError("completed_at must be set exactly when state is terminal")
        if self.completed_at is not None and self.completed_at < self.created_at:
            raise ValueError("completed_at precedes created_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    def transition(self, state: JobState, *, at: datetime, **changes: Any) -> "JobRecord":
        """Return a copy moved to ``state``; raises IllegalTransition otherwise."""
        allowed = TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise IllegalTransition(f"{self.state.value} -> {state.value} is not allowed")

        data = self.model_dump()
        data.update(changes)
        data["state"] = state
        if state == JobState.PROCESSING:
            data["started_at"] = at
        if state.is_terminal:
            data["completed_at"] = at
        return JobRecord.model_validate(data)

    def snapshot(self) -> Dict[str, Any]:
        """Public JSON view of the record (the store's version stamp is internal)."""
        return self.model_dump(mode="json", exclude={"version"})
