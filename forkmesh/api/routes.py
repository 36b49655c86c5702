"""HTTP API exposing orchestrator capabilities."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from forkmesh.api.errors import to_http_exception
from forkmesh.api.tasks import TaskResponse
from forkmesh.core.errors import ForkmeshError
from forkmesh.core.models import AgentConfig, AgentInstance, AgentType, ForkStrategy
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.runtime import get_orchestrator

router = APIRouter(prefix="/agents", tags=["agents"])


class AgentCreateRequest(BaseModel):
    name: str = Field(..., description="Unique name among active agents")
    type: AgentType = Field(..., description="Agent type")
    enabled: bool = Field(True, description="Start the agent right after registration")
    fork_strategy: ForkStrategy = ForkStrategy.NOW
    fork_timestamp: Optional[str] = None
    cpu: Optional[str] = None
    memory: Optional[str] = None
    auto_start: bool = False

    def to_config(self) -> AgentConfig:
        return AgentConfig(
            name=self.name,
            type=self.type,
            enabled=self.enabled,
            fork_strategy=self.fork_strategy,
            fork_timestamp=self.fork_timestamp,
            cpu=self.cpu,
            memory=self.memory,
            auto_start=self.auto_start,
        )


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    type: str
    status: str
    fork_id: Optional[str]
    last_activity: Optional[datetime]
    last_error: Optional[str]
    metrics: Dict[str, Any]

    @classmethod
    def from_instance(cls, agent: AgentInstance) -> "AgentResponse":
        return cls(
            agent_id=agent.agent_id,
            name=agent.config.name,
            type=agent.config.type.value,
            status=agent.status.value,
            fork_id=agent.fork.id if agent.fork else None,
            last_activity=agent.last_activity,
            last_error=agent.last_error,
            metrics=agent.metrics.to_dict(),
        )


class TaskSubmitRequest(BaseModel):
    task_type: str = Field(..., description="Registered task type")
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(5, description="Higher runs first")


class TaskAccepted(BaseModel):
    task_id: str


class MessageRequest(BaseModel):
    from_agent_id: str = Field(..., description="Identifier of the sender")
    message_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    id: str
    from_agent_id: str
    to_agent_id: str
    message_type: str
    payload: Dict[str, Any]
    read: bool
    created_at: Optional[datetime]


class MetricRequest(BaseModel):
    metric_name: str
    metric_value: float
    metadata: Optional[Dict[str, Any]] = None


class MetricResponse(BaseModel):
    id: str
    agent_id: str
    metric_name: str
    metric_value: float
    metadata: Optional[Dict[str, Any]]
    timestamp: Optional[datetime]


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def register_agent(
    request: AgentCreateRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> AgentResponse:
    try:
        agent = await orchestrator.register_agent(request.to_config())
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return AgentResponse.from_instance(agent)


@router.get("", response_model=List[AgentResponse])
async def list_agents(orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> List[AgentResponse]:
    return [AgentResponse.from_instance(agent) for agent in await orchestrator.list_agents()]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> AgentResponse:
    agent = await orchestrator.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown agent")
    return AgentResponse.from_instance(agent)


@router.post("/{agent_id}/start", response_model=AgentResponse)
async def start_agent(agent_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> AgentResponse:
    try:
        agent = await orchestrator.start_agent(agent_id)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return AgentResponse.from_instance(agent)


@router.post("/{agent_id}/stop", response_model=AgentResponse)
async def stop_agent(
    agent_id: str,
    delete_fork: bool = False,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> AgentResponse:
    try:
        agent = await orchestrator.stop_agent(agent_id, delete_fork=delete_fork)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return AgentResponse.from_instance(agent)


@router.post("/{agent_id}/pause", response_model=AgentResponse)
async def pause_agent(agent_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> AgentResponse:
    try:
        agent = await orchestrator.pause_agent(agent_id)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return AgentResponse.from_instance(agent)


@router.post("/{agent_id}/resume", response_model=AgentResponse)
async def resume_agent(agent_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> AgentResponse:
    try:
        agent = await orchestrator.resume_agent(agent_id)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return AgentResponse.from_instance(agent)


@router.post("/{agent_id}/tasks", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_task(
    agent_id: str,
    request: TaskSubmitRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> TaskAccepted:
    try:
        task_id = await orchestrator.submit_task(agent_id, request.task_type, request.payload, request.priority)
    except ForkmeshError as exc:
        raise to_http_exception(exc) from exc
    return TaskAccepted(task_id=task_id)


@router.get("/{agent_id}/tasks", response_model=List[TaskResponse])
async def list_agent_tasks(
    agent_id: str,
    limit: int = 100,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> List[TaskResponse]:
    tasks = await orchestrator.tasks.list_for_agent(agent_id, limit=limit)
    return [TaskResponse.from_task(task) for task in tasks]


@router.post("/{agent_id}/messages", status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    agent_id: str,
    request: MessageRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, str]:
    if await orchestrator.get_agent(agent_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown agent")
    message_id = await orchestrator.send_message(
        from_agent_id=request.from_agent_id,
        to_agent_id=agent_id,
        message_type=request.message_type,
        payload=request.payload,
    )
    return {"message_id": message_id}


@router.get("/{agent_id}/messages", response_model=List[MessageResponse])
async def get_messages(
    agent_id: str,
    unread_only: bool = False,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> List[MessageResponse]:
    messages = await orchestrator.get_messages(agent_id, unread_only=unread_only)
    return [
        MessageResponse(
            id=message.id,
            from_agent_id=message.from_agent_id,
            to_agent_id=message.to_agent_id,
            message_type=message.message_type,
            payload=message.payload,
            read=message.read,
            created_at=message.created_at,
        )
        for message in messages
    ]


@router.post("/{agent_id}/messages/{message_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_message_read(
    agent_id: str,
    message_id: str,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> None:
    if not await orchestrator.mark_message_read(message_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown message")


@router.post("/{agent_id}/metrics", status_code=status.HTTP_201_CREATED)
async def record_metric(
    agent_id: str,
    request: MetricRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, str]:
    if await orchestrator.get_agent(agent_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown agent")
    sample_id = await orchestrator.record_metric(agent_id, request.metric_name, request.metric_value, request.metadata)
    return {"metric_id": sample_id}


@router.get("/{agent_id}/metrics", response_model=List[MetricResponse])
async def get_metrics(
    agent_id: str,
    metric_name: Optional[str] = None,
    limit: int = 100,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> List[MetricResponse]:
    samples = await orchestrator.get_agent_metrics(agent_id, metric_name, limit)
    return [
        MetricResponse(
            id=sample.id,
            agent_id=sample.agent_id,
            metric_name=sample.metric_name,
            metric_value=sample.metric_value,
            metadata=sample.metadata,
            timestamp=sample.timestamp,
        )
        for sample in samples
    ]
