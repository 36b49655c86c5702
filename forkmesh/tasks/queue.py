"""Durable priority queue of agent tasks stored in the primary database."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.core.models import Task, TaskStatus, utcnow
from forkmesh.db.schema import agent_tasks


class TaskQueue:
    """Task rows ordered by ``priority DESC, created_at ASC``.

    Claiming is a conditional ``pending -> running`` update, so two workers
    polling the same queue never execute the same task concurrently.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def enqueue(self, agent_id: str, task_type: str, payload: Dict[str, Any], priority: int = 5) -> str:
        task_id = str(uuid.uuid4())
        async with self._engine.begin() as conn:
            await conn.execute(
                agent_tasks.insert().values(
                    id=task_id,
                    agent_id=agent_id,
                    task_type=task_type,
                    payload=payload,
                    status=TaskStatus.PENDING.value,
                    priority=priority,
                    attempts=0,
                    created_at=utcnow(),
                )
            )
        return task_id

    async def get(self, task_id: str) -> Optional[Task]:
        async with self._engine.connect() as conn:
            row = (await conn.execute(sa.select(agent_tasks).where(agent_tasks.c.id == task_id))).mappings().first()
        return _task_from_row(row) if row is not None else None

    async def list_for_agent(self, agent_id: str, *, status: Optional[TaskStatus] = None, limit: int = 100) -> List[Task]:
        query = sa.select(agent_tasks).where(agent_tasks.c.agent_id == agent_id)
        if status is not None:
            query = query.where(agent_tasks.c.status == status.value)
        query = query.order_by(agent_tasks.c.seq.desc()).limit(limit)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [_task_from_row(row) for row in rows]

    async def claim_candidates(self, limit: int = 10) -> List[Task]:
        """Pending tasks in claim order. Ties on timestamp fall back to insertion order."""
        query = (
            sa.select(agent_tasks)
            .where(agent_tasks.c.status == TaskStatus.PENDING.value)
            .order_by(
                agent_tasks.c.priority.desc(),
                agent_tasks.c.created_at.asc(),
                agent_tasks.c.seq.asc(),
            )
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [_task_from_row(row) for row in rows]

    async def claim(self, task: Task) -> bool:
        """Move a pending task to running. Returns False when someone else got it."""
        started_at = utcnow()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                agent_tasks.update()
                .where(
                    agent_tasks.c.id == task.id,
                    agent_tasks.c.status == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=started_at,
                    attempts=agent_tasks.c.attempts + 1,
                )
            )
        if result.rowcount != 1:
            return False
        task.status = TaskStatus.RUNNING
        task.started_at = started_at
        task.attempts += 1
        return True

    async def complete(self, task: Task, result: Dict[str, Any]) -> None:
        completed_at = utcnow()
        async with self._engine.begin() as conn:
            await conn.execute(
                agent_tasks.update()
                .where(agent_tasks.c.id == task.id)
                .values(
                    status=TaskStatus.COMPLETED.value,
                    result=result,
                    error=None,
                    completed_at=completed_at,
                )
            )
        task.status = TaskStatus.COMPLETED
        task.result = result
        task.error = None
        task.completed_at = completed_at

    async def fail(self, task: Task, error: str) -> None:
        completed_at = utcnow()
        async with self._engine.begin() as conn:
            await conn.execute(
                agent_tasks.update()
                .where(agent_tasks.c.id == task.id)
                .values(status=TaskStatus.FAILED.value, error=error, completed_at=completed_at)
            )
        task.status = TaskStatus.FAILED
        task.error = error
        task.completed_at = completed_at

    async def requeue(self, task: Task, error: str) -> None:
        """Put a failed attempt back in the queue, keeping its last error."""
        async with self._engine.begin() as conn:
            await conn.execute(
                agent_tasks.update()
                .where(agent_tasks.c.id == task.id)
                .values(status=TaskStatus.PENDING.value, error=error, started_at=None)
            )
        task.status = TaskStatus.PENDING
        task.error = error
        task.started_at = None

    async def count_pending(self) -> int:
        query = sa.select(sa.func.count()).select_from(agent_tasks).where(
            agent_tasks.c.status == TaskStatus.PENDING.value
        )
        async with self._engine.connect() as conn:
            return int((await conn.execute(query)).scalar_one())


def _task_from_row(row: Any) -> Task:
    return Task(
        id=row["id"],
        agent_id=row["agent_id"],
        task_type=row["task_type"],
        payload=row["payload"] or {},
        status=TaskStatus(row["status"]),
        priority=row["priority"],
        result=row["result"],
        error=row["error"],
        attempts=row["attempts"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )
