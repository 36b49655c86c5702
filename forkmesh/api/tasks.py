"""Task status lookup."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from forkmesh.api.errors import to_http_exception
from forkmesh.core.errors import TaskNotFoundError
from forkmesh.core.models import Task
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.runtime import get_orchestrator

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskResponse(BaseModel):
    id: str
    agent_id: str
    task_type: str
    status: str
    priority: int
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]]
    error: Optional[str]
    attempts: int
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            agent_id=task.agent_id,
            task_type=task.task_type,
            status=task.status.value,
            priority=task.priority,
            payload=task.payload,
            result=task.result,
            error=task.error,
            attempts=task.attempts,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> TaskResponse:
    try:
        task = await orchestrator.get_task_status(task_id)
    except TaskNotFoundError as exc:
        raise to_http_exception(exc) from exc
    return TaskResponse.from_task(task)
