"""Task handler interface and the registry the worker dispatches through."""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.core.errors import AgentNotReadyError, UnknownTaskTypeError
from forkmesh.core.models import Task


@dataclass(slots=True)
class TaskContext:
    """What a handler may touch while executing one task."""

    task: Task
    engine: Optional[AsyncEngine] = None

    @property
    def agent_id(self) -> str:
        return self.task.agent_id

    def require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise AgentNotReadyError(f"No fork connection available for agent {self.agent_id}")
        return self.engine


class TaskHandler(abc.ABC):
    """One task type. Handlers should be idempotent; the worker does not enforce it."""

    @abc.abstractmethod
    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        """Run the task and return a JSON-serializable result."""


class HandlerRegistry:
    """Maps task-type strings to handlers; new types register without touching the worker."""

    def __init__(self, handlers: Optional[Mapping[str, TaskHandler]] = None) -> None:
        self._handlers: Dict[str, TaskHandler] = dict(handlers or {})

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def get(self, task_type: str) -> TaskHandler:
        if task_type not in self._handlers:
            raise UnknownTaskTypeError(f"Unknown task type: {task_type}")
        return self._handlers[task_type]

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers
