"""Error taxonomy for the job lifecycle.

Errors raised by Create/Trigger/Query/FetchResult reach the caller
synchronously. Errors raised inside the background pipeline are never
re-raised to a caller; they end up in the job's ``error_detail``.
"""

from typing import Optional


class JobError(Exception):
    """Base class for every job-related failure."""

    kind = "job_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class JobNotFound(JobError):
    kind = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidInput(JobError):
    kind = "invalid_input"


class PayloadTooLarge(InvalidInput):
    kind = "payload_too_large"


class InvalidState(JobError):
    """The operation is not legal for the job's current state."""

    kind = "invalid_state"

    def __init__(self, job_id: str, current, operation: str = ""):
        state = getattr(current, "value", current)
        verb = f"cannot {operation}" if operation else "operation not allowed"
        super().__init__(f"Job {job_id} is {state}; {verb}")
        self.job_id = job_id
        self.current = current


class JobExpired(JobError):
    """Trigger found the job older than the staleness threshold."""

    kind = "expired"

    def __init__(self, record):
        super().__init__(f"Job {record.id} expired; upload the image again")
        self.record = record


class FetchFailed(JobError):
    kind = "fetch_failed"


class StoreFailed(JobError):
    kind = "store_failed"


class TransformFailed(JobError):
    kind = "transform_failed"

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class DispatchRejected(JobError):
    """The background pool has no room for another pipeline."""

    kind = "busy"


class ConcurrentUpdate(JobError):
    """A conditional write lost against another writer."""

    kind = "concurrent_update"

    def __init__(self, job_id: str, expected_version: int):
        super().__init__(
            f"Job {job_id} changed concurrently (expected version {expected_version})"
        )
        self.job_id = job_id
        self.expected_version = expected_version


class DispatchFailed(JobError):
    """The job was claimed but its pipeline could not be scheduled.

    The job is now failed for good; the caller has to upload again.
    """

    kind = "dispatch_failed"

    def __init__(self, record, reason: str):
        super().__init__(f"Job {record.id} could not be scheduled ({reason}); upload the image again")
        self.record = record
        self.reason = reason
