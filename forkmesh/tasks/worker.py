"""Polling worker that executes queued tasks against agent forks."""
from __future__ import annotations

import asyncio
import time
from typing import List, Optional, Protocol

import structlog

from forkmesh.core.errors import UnknownTaskTypeError
from forkmesh.core.models import Task
from forkmesh.db.registry import ConnectionRegistry
from forkmesh.tasks.handlers import HandlerRegistry, TaskContext
from forkmesh.tasks.queue import TaskQueue

logger = structlog.get_logger(__name__)


class OutcomeReporter(Protocol):
    async def record_task_outcome(self, agent_id: str, duration_ms: float, succeeded: bool, *, task_id: str) -> None: ...


class TaskWorker:
    """Claims pending tasks by priority then age and runs them one at a time.

    A batch of up to ``batch_size`` tasks is fetched per poll and processed
    sequentially; handler errors end up on the task row and never stop the
    loop. Failed tasks are retried only when ``max_retries`` is above zero.
    """

    def __init__(
        self,
        *,
        queue: TaskQueue,
        handlers: HandlerRegistry,
        connections: ConnectionRegistry,
        reporter: Optional[OutcomeReporter] = None,
        poll_interval: float = 5.0,
        batch_size: int = 10,
        max_retries: int = 0,
    ) -> None:
        self._queue = queue
        self._handlers = handlers
        self._connections = connections
        self._reporter = reporter
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._logger = logger.bind(component="TaskWorker")

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def start(self) -> None:
        """Start polling in the background; the first poll happens immediately."""
        if self.is_running:
            self._logger.warning("worker_already_running")
            return
        self._stop_event.clear()
        self._runner = asyncio.create_task(self._run(), name="forkmesh-task-worker")
        self._logger.info("worker_started", poll_interval=self.poll_interval, batch_size=self.batch_size)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current batch to finish."""
        if self._runner is None:
            return
        self._stop_event.set()
        await self._runner
        self._runner = None
        self._logger.info("worker_stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as exc:  # noqa: BLE001
                self._logger.error("worker_poll_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> List[Task]:
        """Process one batch and return the tasks this worker executed."""
        candidates = await self._queue.claim_candidates(self.batch_size)
        if not candidates:
            self._logger.debug("no_pending_tasks")
            return []
        self._logger.info("processing_tasks", task_count=len(candidates))
        processed = []
        for task in candidates:
            if await self.process(task):
                processed.append(task)
        return processed

    async def process(self, task: Task) -> bool:
        if not await self._queue.claim(task):
            self._logger.debug("task_claim_lost", task_id=task.id)
            return False

        log = self._logger.bind(task_id=task.id, task_type=task.task_type, agent_id=task.agent_id)
        log.info("task_started", attempt=task.attempts)
        started = time.perf_counter()
        try:
            handler = self._handlers.get(task.task_type)
            context = TaskContext(task=task, engine=self._connections.find(task.agent_id))
            result = await handler.execute(task.payload, context)
        except Exception as exc:  # noqa: BLE001
            await self._handle_failure(task, exc, log)
            await self._report(task, started, succeeded=False)
            return True

        try:
            await self._queue.complete(task, result)
        except Exception as exc:  # noqa: BLE001
            log.error("task_result_not_stored", error=str(exc))
            await self._mark_failed(task, f"Could not store task result: {exc}", log)
            await self._report(task, started, succeeded=False)
            return True
        log.info("task_completed")
        await self._report(task, started, succeeded=True)
        return True

    async def _handle_failure(self, task: Task, exc: Exception, log: structlog.BoundLogger) -> None:
        error = str(exc) or exc.__class__.__name__
        retryable = not isinstance(exc, UnknownTaskTypeError)
        if retryable and task.attempts <= self.max_retries:
            log.warning("task_requeued", error=error, attempt=task.attempts)
            try:
                await self._queue.requeue(task, error)
                return
            except Exception as requeue_exc:  # noqa: BLE001
                log.error("task_requeue_failed", error=str(requeue_exc))
        log.error("task_failed", error=error)
        await self._mark_failed(task, error, log)

    async def _mark_failed(self, task: Task, error: str, log: structlog.BoundLogger) -> None:
        try:
            await self._queue.fail(task, error)
        except Exception as exc:  # noqa: BLE001
            log.error("task_failure_not_stored", error=str(exc))

    async def _report(self, task: Task, started: float, *, succeeded: bool) -> None:
        if self._reporter is None:
            return
        duration_ms = (time.perf_counter() - started) * 1000
        try:
            await self._reporter.record_task_outcome(task.agent_id, duration_ms, succeeded, task_id=task.id)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("task_outcome_not_recorded", task_id=task.id, error=str(exc))
