"""Fork synchronizer: durable sync jobs that copy tables between endpoints."""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.core.errors import InvalidSyncConfigError, SyncJobNotFoundError
from forkmesh.core.events import EventLog
from forkmesh.core.models import (
    ConflictResolution,
    SyncConfig,
    SyncDirection,
    SyncJob,
    SyncJobStatus,
    SyncMode,
    utcnow,
)
from forkmesh.db.registry import ConnectionRegistry
from forkmesh.db.schema import LEARNING_TABLES, create_tables
from forkmesh.sync.store import SyncJobStore
from forkmesh.sync.strategies import sync_table

logger = structlog.get_logger(__name__)


class ForkSynchronizer:
    """Runs sync jobs between endpoints held by the shared connection registry.

    Jobs are persisted in the primary so progress and failures survive the
    process; ``execute_sync`` propagates table failures after recording them,
    while the auto-sync loop only logs them.
    """

    def __init__(
        self,
        *,
        engine: AsyncEngine,
        connections: ConnectionRegistry,
        events: Optional[EventLog] = None,
    ) -> None:
        self._engine = engine
        self._connections = connections
        self._events = events if events is not None else EventLog()
        self._jobs = SyncJobStore(engine)
        self._auto_sync: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._logger = logger.bind(component="ForkSynchronizer")

    async def initialize(self) -> None:
        await create_tables(self._engine)

    def register_fork(self, fork_id: str, connection_string: str) -> None:
        if fork_id in self._connections:
            self._logger.debug("fork_already_registered", fork_id=fork_id)
            return
        self._connections.register(fork_id, connection_string)
        self._logger.info("fork_registered_for_sync", fork_id=fork_id)

    async def unregister_fork(self, fork_id: str) -> None:
        await self._connections.unregister(fork_id)
        self._logger.info("fork_unregistered_from_sync", fork_id=fork_id)

    async def create_sync_job(self, config: SyncConfig) -> SyncJob:
        self._validate(config)
        job = SyncJob(id=f"sync-{uuid.uuid4()}", config=config)
        await self._jobs.insert(job)
        self._logger.info(
            "sync_job_created",
            job_id=job.id,
            source=config.source,
            target=config.target,
            tables=list(config.tables),
            mode=config.mode.value,
        )
        return job

    async def execute_sync(self, job_id: str) -> SyncJob:
        """Run every table of the job in order, stopping at the first failure.

        Any failure after the claim, including a failed progress write, is
        recorded on the job before it propagates.
        """
        job = await self._jobs.claim(job_id)
        config = job.config
        log = self._logger.bind(job_id=job_id)
        log.info("sync_job_started", source=config.source, target=config.target, mode=config.mode.value)
        self._events.emit("sync:started", job_id=job_id)

        current: Optional[str] = None
        try:
            source = self._connections.get(config.source)
            target = self._connections.get(config.target)
            total = len(config.tables)
            for index, table in enumerate(config.tables, start=1):
                current = table
                written = await sync_table(source, target, table, config)
                current = None
                job.records_synced += written
                job.progress = index / total * 100
                await self._jobs.save(job)
                log.info("table_synced", table=table, records=written, progress=round(job.progress, 1))

            job.status = SyncJobStatus.COMPLETED
            job.end_time = utcnow()
            await self._jobs.save(job)
        except Exception as exc:
            await self._fail(job, f"Table {current}: {exc}" if current else str(exc))
            raise

        self._events.emit("sync:completed", job_id=job_id, records_synced=job.records_synced)
        log.info("sync_job_completed", records_synced=job.records_synced)
        return job

    async def sync_learning_data(self, source_fork_id: str, target_fork_id: str) -> int:
        """Incrementally copy learning history and corrections; failing tables are skipped."""
        source = self._connections.get(source_fork_id)
        target = self._connections.get(target_fork_id)
        config = SyncConfig(
            source=source_fork_id,
            target=target_fork_id,
            tables=list(LEARNING_TABLES),
            mode=SyncMode.INCREMENTAL,
            direction=SyncDirection.PUSH,
            conflict_resolution=ConflictResolution.SOURCE_WINS,
        )
        total = 0
        for table in config.tables:
            try:
                total += await sync_table(source, target, table, config)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("learning_table_sync_failed", table=table, source=source_fork_id, error=str(exc))
        self._logger.info("learning_data_synced", source=source_fork_id, target=target_fork_id, records=total)
        return total

    async def merge_learning_data(self, source_fork_ids: Iterable[str], target_fork_id: str) -> int:
        total = 0
        for source_fork_id in source_fork_ids:
            if source_fork_id == target_fork_id:
                continue
            try:
                total += await self.sync_learning_data(source_fork_id, target_fork_id)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("learning_merge_failed", source=source_fork_id, error=str(exc))
        self._logger.info("learning_data_merged", target=target_fork_id, records=total)
        return total

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_sync is not None and not self._auto_sync.done()

    def start_auto_sync(self, interval_seconds: float = 300.0) -> None:
        if self.auto_sync_running:
            self._logger.warning("auto_sync_already_running")
            return
        self._stop_event.clear()
        self._auto_sync = asyncio.create_task(self._auto_sync_loop(interval_seconds), name="forkmesh-auto-sync")
        self._logger.info("auto_sync_started", interval_seconds=interval_seconds)

    async def stop_auto_sync(self) -> None:
        if self._auto_sync is None:
            return
        self._stop_event.set()
        await self._auto_sync
        self._auto_sync = None
        self._logger.info("auto_sync_stopped")

    async def run_pending_jobs(self) -> int:
        """Execute every pending job once; returns how many completed."""
        completed = 0
        for job in await self._jobs.list_pending():
            try:
                await self.execute_sync(job.id)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("auto_sync_job_failed", job_id=job.id, error=str(exc))
                continue
            completed += 1
        return completed

    async def _auto_sync_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.run_pending_jobs()
            except Exception as exc:  # noqa: BLE001
                self._logger.error("auto_sync_tick_failed", error=str(exc))

    async def get_sync_job(self, job_id: str) -> SyncJob:
        job = await self._jobs.get(job_id)
        if job is None:
            raise SyncJobNotFoundError(f"Sync job {job_id} not found")
        return job

    async def list_sync_jobs(self, status: Optional[SyncJobStatus] = None) -> List[SyncJob]:
        return await self._jobs.list(status)

    async def get_statistics(self) -> Dict[str, Any]:
        jobs = await self._jobs.list()
        counts = {status: 0 for status in SyncJobStatus}
        for job in jobs:
            counts[job.status] += 1
        return {
            "total_jobs": len(jobs),
            "pending_jobs": counts[SyncJobStatus.PENDING],
            "running_jobs": counts[SyncJobStatus.RUNNING],
            "completed_jobs": counts[SyncJobStatus.COMPLETED],
            "failed_jobs": counts[SyncJobStatus.FAILED],
            "total_records_synced": sum(job.records_synced for job in jobs),
            "registered_endpoints": len(self._connections.endpoints()),
            "auto_sync_running": self.auto_sync_running,
        }

    async def shutdown(self) -> None:
        await self.stop_auto_sync()
        self._logger.info("synchronizer_shut_down")

    async def _fail(self, job: SyncJob, error: str) -> None:
        job.status = SyncJobStatus.FAILED
        job.errors.append(error)
        job.end_time = utcnow()
        try:
            await self._jobs.save(job)
        except Exception as exc:  # noqa: BLE001
            self._logger.error("sync_job_failure_not_stored", job_id=job.id, error=str(exc))
        self._events.emit("sync:failed", job_id=job.id, error=error)
        self._logger.error("sync_job_failed", job_id=job.id, error=error)

    @staticmethod
    def _validate(config: SyncConfig) -> None:
        if not config.source or not config.target:
            raise InvalidSyncConfigError("Both source and target endpoints are required")
        if config.source == config.target:
            raise InvalidSyncConfigError("Source and target must be different endpoints")
        if not config.tables:
            raise InvalidSyncConfigError("At least one table is required")
        if config.conflict_resolution is ConflictResolution.MANUAL:
            raise InvalidSyncConfigError("Manual conflict resolution is not supported")
        if config.mode is SyncMode.FULL and config.direction is SyncDirection.BIDIRECTIONAL:
            raise InvalidSyncConfigError("Full sync cannot run bidirectionally")
