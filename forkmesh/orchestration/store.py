"""Persistence for agents, inter-agent messages and metric history."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.core.models import (
    AgentConfig,
    AgentInstance,
    AgentMessage,
    AgentMetrics,
    AgentStatus,
    Fork,
    MetricSample,
    utcnow,
)
from forkmesh.db.schema import agent_messages, agent_metrics, agents


class AgentStore:
    """Agent rows in the primary with an in-memory read-through cache.

    The cached ``AgentInstance`` is the live object holding the fork engine;
    every write goes to the database first and then refreshes the cache.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._cache: Dict[str, AgentInstance] = {}

    async def insert(self, agent: AgentInstance) -> None:
        now = utcnow()
        async with self._engine.begin() as conn:
            await conn.execute(
                agents.insert().values(
                    id=agent.agent_id,
                    name=agent.config.name,
                    type=agent.config.type.value,
                    fork_id=agent.fork.id if agent.fork else None,
                    status=agent.status.value,
                    config=agent.config.to_dict(),
                    metrics=agent.metrics.to_dict(),
                    last_error=agent.last_error,
                    created_at=now,
                    updated_at=now,
                )
            )
        self._cache[agent.agent_id] = agent

    async def save(self, agent: AgentInstance) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                agents.update()
                .where(agents.c.id == agent.agent_id)
                .values(
                    fork_id=agent.fork.id if agent.fork else None,
                    status=agent.status.value,
                    metrics=agent.metrics.to_dict(),
                    last_error=agent.last_error,
                    updated_at=utcnow(),
                )
            )
        self._cache[agent.agent_id] = agent

    async def get(self, agent_id: str) -> Optional[AgentInstance]:
        cached = self._cache.get(agent_id)
        if cached is not None:
            return cached
        async with self._engine.connect() as conn:
            row = (await conn.execute(sa.select(agents).where(agents.c.id == agent_id))).mappings().first()
        if row is None:
            return None
        agent = self._from_row(row)
        self._cache[agent_id] = agent
        return agent

    async def name_in_use(self, name: str) -> bool:
        query = sa.select(sa.func.count()).select_from(agents).where(
            agents.c.name == name,
            agents.c.status != AgentStatus.STOPPED.value,
        )
        async with self._engine.connect() as conn:
            return bool((await conn.execute(query)).scalar_one())

    async def list(self) -> List[AgentInstance]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(sa.select(agents).order_by(agents.c.created_at))).mappings().all()
        result = []
        for row in rows:
            agent = self._cache.get(row["id"])
            if agent is None:
                agent = self._from_row(row)
                self._cache[agent.agent_id] = agent
            result.append(agent)
        return result

    def cached(self) -> List[AgentInstance]:
        return list(self._cache.values())

    @staticmethod
    def _from_row(row: Any) -> AgentInstance:
        fork = None
        if row["fork_id"]:
            fork = Fork(id=row["fork_id"], name="", status="unknown", created_at="")
        return AgentInstance(
            agent_id=row["id"],
            config=AgentConfig.from_dict(row["config"]),
            status=AgentStatus(row["status"]),
            fork=fork,
            last_activity=row["updated_at"],
            metrics=AgentMetrics.from_dict(row["metrics"]),
            last_error=row["last_error"],
        )


class MessageStore:
    """Pull-based mailbox rows; a message lives until it is marked read."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def send(self, from_agent_id: str, to_agent_id: str, message_type: str, payload: Dict[str, Any]) -> str:
        message_id = str(uuid.uuid4())
        async with self._engine.begin() as conn:
            await conn.execute(
                agent_messages.insert().values(
                    id=message_id,
                    from_agent_id=from_agent_id,
                    to_agent_id=to_agent_id,
                    message_type=message_type,
                    payload=payload,
                    read=False,
                    created_at=utcnow(),
                )
            )
        return message_id

    async def for_agent(self, agent_id: str, *, unread_only: bool = False, limit: int = 100) -> List[AgentMessage]:
        query = sa.select(agent_messages).where(agent_messages.c.to_agent_id == agent_id)
        if unread_only:
            query = query.where(agent_messages.c.read.is_(False)).order_by(agent_messages.c.seq.asc())
        else:
            query = query.order_by(agent_messages.c.seq.desc()).limit(limit)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            AgentMessage(
                id=row["id"],
                from_agent_id=row["from_agent_id"],
                to_agent_id=row["to_agent_id"],
                message_type=row["message_type"],
                payload=row["payload"] or {},
                read=bool(row["read"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def mark_read(self, message_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                agent_messages.update().where(agent_messages.c.id == message_id).values(read=True)
            )
        return result.rowcount > 0


class MetricStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def record(
        self,
        agent_id: str,
        metric_name: str,
        metric_value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        sample_id = str(uuid.uuid4())
        async with self._engine.begin() as conn:
            await conn.execute(
                agent_metrics.insert().values(
                    id=sample_id,
                    agent_id=agent_id,
                    metric_name=metric_name,
                    metric_value=metric_value,
                    metadata=metadata,
                    timestamp=utcnow(),
                )
            )
        return sample_id

    async def for_agent(self, agent_id: str, metric_name: Optional[str] = None, limit: int = 100) -> List[MetricSample]:
        query = sa.select(agent_metrics).where(agent_metrics.c.agent_id == agent_id)
        if metric_name:
            query = query.where(agent_metrics.c.metric_name == metric_name)
        query = query.order_by(agent_metrics.c.timestamp.desc(), agent_metrics.c.seq.desc()).limit(limit)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            MetricSample(
                id=row["id"],
                agent_id=row["agent_id"],
                metric_name=row["metric_name"],
                metric_value=row["metric_value"],
                metadata=row["metadata"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]
