"""Job store interface and in-memory implementation."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List

from app.jobs.errors import ConcurrentUpdate, JobNotFound
from app.jobs.models import JobRecord, JobState


class JobStore(ABC):
    """Key-value persistence of job records, keyed by job id.

    Writes replace the whole record. ``replace`` is a compare-and-set on the
    record's ``version`` so callers can build single-flight transitions on it.
    """

    @abstractmethod
    async def insert(self, record: JobRecord) -> JobRecord:
        """Persist a new record. Raises ConcurrentUpdate if the id is taken."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord:
        """Return the current record or raise JobNotFound."""
        ...

    @abstractmethod
    async def replace(self, record: JobRecord, expected_version: int) -> JobRecord:
        """Overwrite the record if the stored version equals ``expected_version``.

        Returns the stored record (version bumped). Raises ConcurrentUpdate
        when the stored version differs, JobNotFound when the id is unknown.
        """
        ...

    @abstractmethod
    async def list_stalled(self, before: datetime) -> List[JobRecord]:
        """Processing jobs whose ``started_at`` is earlier than ``before``."""
        ...


class InMemoryJobStore(JobStore):
    """Process-local store. Holds private copies so callers never share state."""

    def __init__(self):
        self._records: Dict[str, JobRecord] = {}
        self._lock = threading.RLock()

    async def insert(self, record: JobRecord) -> JobRecord:
        with self._lock:
            if record.id in self._records:
                raise ConcurrentUpdate(record.id, -1)
            stored = record.model_copy(update={"version": 1}, deep=True)
            self._records[record.id] = stored
            return stored.model_copy(deep=True)

    async def get(self, job_id: str) -> JobRecord:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            return record.model_copy(deep=True)

    async def replace(self, record: JobRecord, expected_version: int) -> JobRecord:
        with self._lock:
            current = self._records.get(record.id)
            if current is None:
                raise JobNotFound(record.id)
            if current.version != expected_version:
                raise ConcurrentUpdate(record.id, expected_version)
            stored = record.model_copy(update={"version": expected_version + 1}, deep=True)
            self._records[record.id] = stored
            return stored.model_copy(deep=True)

    async def list_stalled(self, before: datetime) -> List[JobRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.state == JobState.PROCESSING
                and r.started_at is not None
                and r.started_at < before
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
