"""Persistence for sync jobs in the primary database."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.core.errors import SyncJobConflictError, SyncJobNotFoundError
from forkmesh.core.models import SyncConfig, SyncJob, SyncJobStatus, utcnow
from forkmesh.db.schema import sync_jobs


class SyncJobStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._cache: Dict[str, SyncJob] = {}

    async def insert(self, job: SyncJob) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sync_jobs.insert().values(
                    id=job.id,
                    config=job.config.to_dict(),
                    status=job.status.value,
                    progress=job.progress,
                    start_time=job.start_time,
                    end_time=job.end_time,
                    records_synced=job.records_synced,
                    errors=list(job.errors),
                    created_at=utcnow(),
                )
            )
        self._cache[job.id] = job

    async def save(self, job: SyncJob) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sync_jobs.update()
                .where(sync_jobs.c.id == job.id)
                .values(
                    status=job.status.value,
                    progress=job.progress,
                    start_time=job.start_time,
                    end_time=job.end_time,
                    records_synced=job.records_synced,
                    errors=list(job.errors),
                )
            )
        self._cache[job.id] = job

    async def claim(self, job_id: str) -> SyncJob:
        """Move the job to running and reset its counters.

        The update only matches a job that is not already running, which keeps
        two executions of the same job from overlapping.
        """
        started = utcnow()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sync_jobs.update()
                .where(
                    sync_jobs.c.id == job_id,
                    sync_jobs.c.status != SyncJobStatus.RUNNING.value,
                )
                .values(
                    status=SyncJobStatus.RUNNING.value,
                    progress=0.0,
                    records_synced=0,
                    errors=[],
                    start_time=started,
                    end_time=None,
                )
            )
        if result.rowcount != 1:
            if await self._load(job_id) is None:
                raise SyncJobNotFoundError(f"Sync job {job_id} not found")
            raise SyncJobConflictError(f"Sync job {job_id} is already running")

        job = self._cache.get(job_id) or await self._load(job_id)
        job.status = SyncJobStatus.RUNNING
        job.progress = 0.0
        job.records_synced = 0
        job.errors = []
        job.start_time = started
        job.end_time = None
        self._cache[job_id] = job
        return job

    async def get(self, job_id: str) -> Optional[SyncJob]:
        cached = self._cache.get(job_id)
        if cached is not None:
            return cached
        job = await self._load(job_id)
        if job is not None:
            self._cache[job_id] = job
        return job

    async def list(self, status: Optional[SyncJobStatus] = None) -> List[SyncJob]:
        query = sa.select(sync_jobs).order_by(sync_jobs.c.created_at)
        if status is not None:
            query = query.where(sync_jobs.c.status == status.value)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        jobs = []
        for row in rows:
            job = self._cache.get(row["id"])
            if job is None or job.status.value != row["status"]:
                job = _job_from_row(row)
                self._cache[job.id] = job
            jobs.append(job)
        return jobs

    async def list_pending(self) -> List[SyncJob]:
        return await self.list(SyncJobStatus.PENDING)

    async def _load(self, job_id: str) -> Optional[SyncJob]:
        async with self._engine.connect() as conn:
            row = (await conn.execute(sa.select(sync_jobs).where(sync_jobs.c.id == job_id))).mappings().first()
        return _job_from_row(row) if row is not None else None


def _job_from_row(row: Any) -> SyncJob:
    return SyncJob(
        id=row["id"],
        config=SyncConfig.from_dict(row["config"]),
        status=SyncJobStatus(row["status"]),
        progress=float(row["progress"] or 0.0),
        records_synced=int(row["records_synced"] or 0),
        errors=list(row["errors"] or []),
        start_time=row["start_time"],
        end_time=row["end_time"],
    )
