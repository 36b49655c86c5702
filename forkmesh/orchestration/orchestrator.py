"""Orchestrator responsible for provisioning agents on forks and queueing their work."""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Set

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.core.errors import (
    AgentNotFoundError,
    AgentNotReadyError,
    DuplicateAgentError,
    InvalidAgentConfigError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from forkmesh.core.events import EventLog
from forkmesh.core.models import (
    AGENT_TRANSITIONS,
    AgentConfig,
    AgentInstance,
    AgentMessage,
    AgentStatus,
    AgentType,
    Fork,
    ForkOptions,
    ForkStrategy,
    MetricSample,
    OrchestratorEvent,
    Task,
    utcnow,
)
from forkmesh.db.registry import ConnectionRegistry
from forkmesh.db.schema import create_tables
from forkmesh.forks.provider import ForkProvider
from forkmesh.orchestration.store import AgentStore, MessageStore, MetricStore
from forkmesh.tasks.queue import TaskQueue

logger = structlog.get_logger(__name__)


class AgentOrchestrator:
    """Coordinate agent lifecycle, fork provisioning and task submission.

    Lifecycle calls propagate errors to the caller. Cleanup failures while
    stopping (closing a pool, deleting a fork) are logged and never block the
    move to ``stopped``.
    """

    def __init__(
        self,
        *,
        engine: AsyncEngine,
        fork_provider: ForkProvider,
        connections: ConnectionRegistry,
        events: Optional[EventLog] = None,
        fork_pool_size: int = 5,
    ) -> None:
        self._engine = engine
        self._fork_provider = fork_provider
        self._connections = connections
        self._events = events if events is not None else EventLog()
        self._fork_pool_size = fork_pool_size
        self._agents = AgentStore(engine)
        self._messages = MessageStore(engine)
        self._metrics = MetricStore(engine)
        self._tasks = TaskQueue(engine)
        self._lock = asyncio.Lock()
        self._starting: Set[str] = set()
        self._initialized = False

    @property
    def tasks(self) -> TaskQueue:
        return self._tasks

    @property
    def events(self) -> EventLog:
        return self._events

    async def initialize(self) -> None:
        """Create the orchestrator tables in the primary database."""
        if self._initialized:
            logger.warning("orchestrator_already_initialized")
            return
        await create_tables(self._engine)
        self._initialized = True
        logger.info("orchestrator_initialized")

    async def register_agent(self, config: AgentConfig) -> AgentInstance:
        """Persist a new agent and start it right away when it is enabled."""
        self._validate_config(config)
        async with self._lock:
            if await self._agents.name_in_use(config.name):
                raise DuplicateAgentError(f"An active agent named '{config.name}' already exists")
            agent = AgentInstance(
                agent_id=f"agent-{config.type.value}-{uuid.uuid4().hex[:12]}",
                config=config,
                status=AgentStatus.INITIALIZING,
            )
            await self._agents.insert(agent)
        logger.info("agent_registered", agent_id=agent.agent_id, agent_type=config.type.value)

        if config.enabled:
            await self.start_agent(agent.agent_id)
        return agent

    async def start_agent(self, agent_id: str) -> AgentInstance:
        """Fork the primary for the agent and open a pool on the fork.

        A stop that lands while the fork is being provisioned wins: the new
        fork and its pool are released and the agent stays stopped.
        """
        async with self._lock:
            agent = await self._require_agent(agent_id)
            if agent_id in self._starting:
                raise InvalidTransitionError(agent_id, "starting", AgentStatus.RUNNING.value)
            self._ensure_transition(agent, AgentStatus.RUNNING)
            self._starting.add(agent_id)
        log = logger.bind(agent_id=agent_id, agent_type=agent.config.type.value)
        log.info("agent_starting")

        fork: Optional[Fork] = None
        engine: Optional[AsyncEngine] = None
        try:
            try:
                fork = await self._fork_provider.create_fork(
                    ForkOptions(
                        name=f"{agent.config.name}-fork",
                        strategy=agent.config.fork_strategy,
                        timestamp=agent.config.fork_timestamp,
                        cpu=agent.config.cpu,
                        memory=agent.config.memory,
                        wait_for_completion=True,
                    )
                )
                url = await self._fork_provider.get_connection_string(fork.id)
                engine = self._connections.register(
                    fork.id, url, aliases=[agent_id], pool_size=self._fork_pool_size
                )
                async with engine.connect():
                    pass
            except Exception as exc:
                async with self._lock:
                    if agent.status is AgentStatus.STOPPED:
                        await self._release_fork(fork, engine, log)
                        log.warning("agent_start_abandoned", error=str(exc))
                        raise
                    if engine is not None:
                        try:
                            await self._connections.unregister(fork.id)
                        except Exception as close_exc:  # noqa: BLE001
                            log.warning("agent_pool_close_failed", error=str(close_exc))
                    agent.status = AgentStatus.ERROR
                    agent.fork = fork
                    agent.last_error = str(exc)
                    await self._agents.save(agent)
                self._events.emit("agent:error", agent_id=agent_id, error=str(exc))
                log.error("agent_start_failed", error=str(exc))
                raise

            async with self._lock:
                if agent.status is not AgentStatus.INITIALIZING:
                    await self._release_fork(fork, engine, log)
                    log.warning("agent_start_abandoned", status=agent.status.value)
                    return agent
                agent.fork = fork
                agent.engine = engine
                agent.status = AgentStatus.RUNNING
                agent.last_activity = utcnow()
                agent.last_error = None
                await self._agents.save(agent)
        finally:
            self._starting.discard(agent_id)

        self._events.emit("agent:started", agent_id=agent_id, fork_id=fork.id)
        self._events.emit("fork:created", agent_id=agent_id, fork=fork.to_dict())
        log.info("agent_started", fork_id=fork.id)
        return agent

    async def stop_agent(self, agent_id: str, delete_fork: bool = False) -> AgentInstance:
        """Mark the agent stopped, then release its fork connection."""
        async with self._lock:
            agent = await self._require_agent(agent_id)
            if agent.status is AgentStatus.STOPPED:
                return agent
            agent.status = AgentStatus.STOPPED
            agent.last_activity = utcnow()
            await self._agents.save(agent)
            engine, agent.engine = agent.engine, None
        log = logger.bind(agent_id=agent_id)
        log.info("agent_stopping", delete_fork=delete_fork)

        try:
            if agent.fork is not None:
                await self._connections.unregister(agent.fork.id)
            elif engine is not None:
                await engine.dispose()
        except Exception as exc:  # noqa: BLE001
            log.warning("agent_pool_close_failed", error=str(exc))

        if delete_fork and agent.fork is not None:
            try:
                await self._fork_provider.delete_fork(agent.fork.id)
            except Exception as exc:  # noqa: BLE001
                log.warning("agent_fork_delete_failed", fork_id=agent.fork.id, error=str(exc))

        self._events.emit("agent:stopped", agent_id=agent_id, fork_deleted=delete_fork)
        log.info("agent_stopped")
        return agent

    async def pause_agent(self, agent_id: str) -> AgentInstance:
        """Move a running agent to idle; idle agents accept no new tasks."""
        return await self._move(agent_id, AgentStatus.IDLE)

    async def resume_agent(self, agent_id: str) -> AgentInstance:
        return await self._move(agent_id, AgentStatus.RUNNING)

    async def submit_task(
        self,
        agent_id: str,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
    ) -> str:
        """Queue a task for a running agent and return its id without waiting."""
        agent = await self._require_agent(agent_id)
        if agent.status is not AgentStatus.RUNNING:
            raise AgentNotReadyError(f"Agent {agent_id} is not running (status: {agent.status.value})")
        task_id = await self._tasks.enqueue(agent_id, task_type, payload or {}, priority)
        agent.last_activity = utcnow()
        logger.info("task_submitted", agent_id=agent_id, task_id=task_id, task_type=task_type, priority=priority)
        return task_id

    async def get_task_status(self, task_id: str) -> Task:
        task = await self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    async def record_task_outcome(self, agent_id: str, duration_ms: float, succeeded: bool, *, task_id: str) -> None:
        """Fold one task execution into the agent's metrics."""
        agent = await self._agents.get(agent_id)
        if agent is None:
            return
        if succeeded:
            agent.metrics.record_success(duration_ms)
        else:
            agent.metrics.record_failure()
        agent.last_activity = utcnow()
        await self._agents.save(agent)
        await self._metrics.record(
            agent_id,
            "task_duration_ms",
            duration_ms,
            {"task_id": task_id, "succeeded": succeeded},
        )
        self._events.emit(
            "task:completed" if succeeded else "task:failed",
            agent_id=agent_id,
            task_id=task_id,
            duration_ms=round(duration_ms, 3),
        )

    async def send_message(
        self,
        from_agent_id: str,
        to_agent_id: str,
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        message_id = await self._messages.send(from_agent_id, to_agent_id, message_type, payload or {})
        logger.debug("message_sent", from_agent_id=from_agent_id, to_agent_id=to_agent_id, message_type=message_type)
        return message_id

    async def get_messages(self, agent_id: str, unread_only: bool = False) -> List[AgentMessage]:
        return await self._messages.for_agent(agent_id, unread_only=unread_only)

    async def mark_message_read(self, message_id: str) -> bool:
        return await self._messages.mark_read(message_id)

    async def record_metric(
        self,
        agent_id: str,
        metric_name: str,
        metric_value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        return await self._metrics.record(agent_id, metric_name, metric_value, metadata)

    async def get_agent_metrics(
        self, agent_id: str, metric_name: Optional[str] = None, limit: int = 100
    ) -> List[MetricSample]:
        return await self._metrics.for_agent(agent_id, metric_name, limit)

    async def get_agent(self, agent_id: str) -> Optional[AgentInstance]:
        return await self._agents.get(agent_id)

    async def list_agents(self) -> List[AgentInstance]:
        return await self._agents.list()

    def get_event_history(self, limit: int = 100) -> List[OrchestratorEvent]:
        return self._events.recent(limit)

    async def get_statistics(self) -> Dict[str, Any]:
        agents = await self._agents.list()
        by_status = {status: 0 for status in AgentStatus}
        for agent in agents:
            by_status[agent.status] += 1
        return {
            "total_agents": len(agents),
            "running_agents": by_status[AgentStatus.RUNNING],
            "idle_agents": by_status[AgentStatus.IDLE],
            "error_agents": by_status[AgentStatus.ERROR],
            "stopped_agents": by_status[AgentStatus.STOPPED],
            "total_tasks_processed": sum(a.metrics.tasks_processed for a in agents),
            "total_errors": sum(a.metrics.errors for a in agents),
            "avg_processing_time_ms": (
                sum(a.metrics.avg_processing_time_ms for a in agents) / len(agents) if agents else 0.0
            ),
            "pending_tasks": await self._tasks.count_pending(),
            "recent_events": self._events.recent(20),
        }

    async def shutdown(self) -> None:
        """Stop every live agent, keeping their forks."""
        logger.info("orchestrator_shutting_down")
        for agent in self._agents.cached():
            if agent.status is AgentStatus.STOPPED:
                continue
            try:
                await self.stop_agent(agent.agent_id, delete_fork=False)
            except Exception as exc:  # noqa: BLE001
                logger.error("agent_stop_failed_during_shutdown", agent_id=agent.agent_id, error=str(exc))
        logger.info("orchestrator_shut_down")

    async def _move(self, agent_id: str, target: AgentStatus) -> AgentInstance:
        async with self._lock:
            agent = await self._require_agent(agent_id)
            self._ensure_transition(agent, target)
            agent.status = target
            agent.last_activity = utcnow()
            await self._agents.save(agent)
        return agent

    async def _release_fork(
        self, fork: Optional[Fork], engine: Optional[AsyncEngine], log: structlog.BoundLogger
    ) -> None:
        if fork is None:
            return
        try:
            if engine is not None:
                await self._connections.unregister(fork.id)
            await self._fork_provider.delete_fork(fork.id)
        except Exception as exc:  # noqa: BLE001
            log.warning("orphan_fork_cleanup_failed", fork_id=fork.id, error=str(exc))

    async def _require_agent(self, agent_id: str) -> AgentInstance:
        agent = await self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    @staticmethod
    def _ensure_transition(agent: AgentInstance, target: AgentStatus) -> None:
        if target not in AGENT_TRANSITIONS[agent.status]:
            raise InvalidTransitionError(agent.agent_id, agent.status.value, target.value)

    @staticmethod
    def _validate_config(config: AgentConfig) -> None:
        if not config.name or not config.name.strip():
            raise InvalidAgentConfigError("Agent name is required")
        if not isinstance(config.type, AgentType):
            raise InvalidAgentConfigError(f"Unknown agent type '{config.type}'")
        if config.fork_strategy is ForkStrategy.TO_TIMESTAMP and not config.fork_timestamp:
            raise InvalidAgentConfigError("fork_timestamp is required for the to-timestamp strategy")
