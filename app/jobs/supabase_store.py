"""Supabase-backed job store: one row per job in a Postgres table.

Expected table (``settings.supabase_jobs_table``)::

    create table staging_jobs (
        id text primary key,
        state text not null,
        source_ref text not null,
        result_ref text,
        error_detail text,
        created_at timestamptz not null,
        started_at timestamptz,
        completed_at timestamptz,
        requester text,
        original_filename text,
        content_type text,
        version integer not null
    );

The compare-and-set in ``replace`` is a conditional UPDATE filtered on both
``id`` and ``version``; Postgres applies it atomically per row.
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List

from supabase import Client

from app.jobs.errors import ConcurrentUpdate, JobNotFound, StoreFailed
from app.jobs.models import JobRecord, JobState
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)


class SupabaseJobStore(JobStore):
    def __init__(self, client: Client, table: str = "staging_jobs"):
        self._client = client
        self._table = table

    async def insert(self, record: JobRecord) -> JobRecord:
        stored = record.model_copy(update={"version": 1})
        await self._run(self._insert_sync, _to_row(stored))
        return stored

    async def get(self, job_id: str) -> JobRecord:
        rows = await self._run(self._select_sync, job_id)
        if not rows:
            raise JobNotFound(job_id)
        return JobRecord.model_validate(rows[0])

    async def replace(self, record: JobRecord, expected_version: int) -> JobRecord:
        stored = record.model_copy(update={"version": expected_version + 1})
        rows = await self._run(self._update_sync, _to_row(stored), expected_version)
        if rows:
            return JobRecord.model_validate(rows[0])
        # Nothing matched: either the id is unknown or the version moved on.
        await self.get(record.id)
        raise ConcurrentUpdate(record.id, expected_version)

    async def list_stalled(self, before: datetime) -> List[JobRecord]:
        rows = await self._run(self._select_stalled_sync, before.isoformat())
        return [JobRecord.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Synchronous client calls (run in the default executor)
    # ------------------------------------------------------------------

    def _insert_sync(self, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._client.table(self._table).insert(row).execute().data

    def _select_sync(self, job_id: str) -> List[Dict[str, Any]]:
        return (
            self._client.table(self._table)
            .select("*")
            .eq("id", job_id)
            .limit(1)
            .execute()
            .data
        )

    def _update_sync(self, row: Dict[str, Any], expected_version: int) -> List[Dict[str, Any]]:
        return (
            self._client.table(self._table)
            .update(row)
            .eq("id", row["id"])
            .eq("version", expected_version)
            .execute()
            .data
        )

    def _select_stalled_sync(self, before_iso: str) -> List[Dict[str, Any]]:
        return (
            self._client.table(self._table)
            .select("*")
            .eq("state", JobState.PROCESSING.value)
            .lt("started_at", before_iso)
            .execute()
            .data
        )

    async def _run(self, fn: Callable, *args: Any):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except Exception as exc:
            logger.error("Supabase job table %s call failed: %s", self._table, exc)
            raise StoreFailed(f"job table unavailable: {exc}") from exc


def _to_row(record: JobRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")
