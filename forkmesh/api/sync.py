"""Sync job management routes."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from forkmesh.api.errors import to_http_exception
from forkmesh.core.errors import ForkmeshError, SyncJobConflictError, SyncJobNotFoundError
from forkmesh.core.models import ConflictResolution, SyncConfig, SyncDirection, SyncJob, SyncJobStatus, SyncMode
from forkmesh.runtime import get_synchronizer
from forkmesh.sync.synchronizer import ForkSynchronizer

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncJobRequest(BaseModel):
    source: str = Field(..., description="Endpoint id to read from")
    target: str = Field(..., description="Endpoint id to write to")
    tables: List[str]
    mode: SyncMode = SyncMode.INCREMENTAL
    direction: SyncDirection = SyncDirection.PUSH
    conflict_resolution: ConflictResolution = ConflictResolution.SOURCE_WINS
    filters: Dict[str, str] = Field(default_factory=dict)


class SyncJobResponse(BaseModel):
    id: str
    source: str
    target: str
    tables: List[str]
    mode: str
    status: str
    progress: float
    records_synced: int
    errors: List[str]
    start_time: Optional[datetime]
    end_time: Optional[datetime]

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(
            id=job.id,
            source=job.config.source,
            target=job.config.target,
            tables=list(job.config.tables),
            mode=job.config.mode.value,
            status=job.status.value,
            progress=job.progress,
            records_synced=job.records_synced,
            errors=list(job.errors),
            start_time=job.start_time,
            end_time=job.end_time,
        )


@router.post("/jobs", response_model=SyncJobResponse, status_code=status.HTTP_201_CREATED)
async def create_sync_job(
    request: SyncJobRequest,
    synchronizer: ForkSynchronizer = Depends(get_synchronizer),
) -> SyncJobResponse:
    config = SyncConfig(
        source=request.source,
        target=request.target,
        tables=request.tables,
        mode=request.mode,
        direction=request.direction,
        conflict_resolution=request.conflict_resolution,
        filters=request.filters,
    )
    try:
        job = await synchronizer.create_sync_job(config)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return SyncJobResponse.from_job(job)


@router.get("/jobs", response_model=List[SyncJobResponse])
async def list_sync_jobs(
    status_filter: Optional[SyncJobStatus] = Query(None, alias="status"),
    synchronizer: ForkSynchronizer = Depends(get_synchronizer),
) -> List[SyncJobResponse]:
    return [SyncJobResponse.from_job(job) for job in await synchronizer.list_sync_jobs(status_filter)]


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(job_id: str, synchronizer: ForkSynchronizer = Depends(get_synchronizer)) -> SyncJobResponse:
    try:
        job = await synchronizer.get_sync_job(job_id)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return SyncJobResponse.from_job(job)


@router.post("/jobs/{job_id}/execute", response_model=SyncJobResponse)
async def execute_sync_job(
    job_id: str,
    synchronizer: ForkSynchronizer = Depends(get_synchronizer),
) -> SyncJobResponse:
    """Run the job now. A failed table still returns the job with its errors."""
    try:
        job = await synchronizer.execute_sync(job_id)
    except (SyncJobNotFoundError, SyncJobConflictError) as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # noqa: BLE001
        logger.warning("sync_job_execution_failed", job_id=job_id, error=str(exc))
        job = await synchronizer.get_sync_job(job_id)
    return SyncJobResponse.from_job(job)
