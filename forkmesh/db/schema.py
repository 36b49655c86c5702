"""Table declarations for state persisted in the primary database."""
from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

metadata = sa.MetaData()

agents = sa.Table(
    "neurobase_agents",
    metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("name", sa.String, nullable=False),
    sa.Column("type", sa.String, nullable=False),
    sa.Column("fork_id", sa.String),
    sa.Column("status", sa.String, nullable=False),
    sa.Column("config", JSONType),
    sa.Column("metrics", JSONType),
    sa.Column("last_error", sa.Text),
    sa.Column("created_at", sa.DateTime, nullable=False),
    sa.Column("updated_at", sa.DateTime, nullable=False),
)

agent_tasks = sa.Table(
    "neurobase_agent_tasks",
    metadata,
    sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("id", sa.String, nullable=False, unique=True),
    sa.Column("agent_id", sa.String, sa.ForeignKey("neurobase_agents.id"), nullable=False),
    sa.Column("task_type", sa.String, nullable=False),
    sa.Column("payload", JSONType),
    sa.Column("status", sa.String, nullable=False, server_default="pending"),
    sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
    sa.Column("result", JSONType),
    sa.Column("error", sa.Text),
    sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
    sa.Column("created_at", sa.DateTime, nullable=False),
    sa.Column("started_at", sa.DateTime),
    sa.Column("completed_at", sa.DateTime),
)
sa.Index("idx_agent_tasks_status", agent_tasks.c.status, agent_tasks.c.priority.desc())
sa.Index("idx_agent_tasks_agent_id", agent_tasks.c.agent_id)

agent_messages = sa.Table(
    "neurobase_agent_messages",
    metadata,
    sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("id", sa.String, nullable=False, unique=True),
    sa.Column("from_agent_id", sa.String),
    sa.Column("to_agent_id", sa.String),
    sa.Column("message_type", sa.String, nullable=False),
    sa.Column("payload", JSONType),
    sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime, nullable=False),
)
sa.Index("idx_agent_messages_to", agent_messages.c.to_agent_id, agent_messages.c.read)

agent_metrics = sa.Table(
    "neurobase_agent_metrics",
    metadata,
    sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("id", sa.String, nullable=False, unique=True),
    sa.Column("agent_id", sa.String, sa.ForeignKey("neurobase_agents.id")),
    sa.Column("metric_name", sa.String, nullable=False),
    sa.Column("metric_value", sa.Float),
    sa.Column("metadata", JSONType),
    sa.Column("timestamp", sa.DateTime, nullable=False),
)
sa.Index("idx_agent_metrics_agent_time", agent_metrics.c.agent_id, agent_metrics.c.timestamp.desc())

sync_jobs = sa.Table(
    "neurobase_sync_jobs",
    metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("config", JSONType, nullable=False),
    sa.Column("status", sa.String, nullable=False),
    sa.Column("progress", sa.Float, nullable=False, server_default="0"),
    sa.Column("start_time", sa.DateTime),
    sa.Column("end_time", sa.DateTime),
    sa.Column("records_synced", sa.Integer, nullable=False, server_default="0"),
    sa.Column("errors", JSONType),
    sa.Column("created_at", sa.DateTime, nullable=False),
)

# Tables agents write learned data into on their forks; synced back by the
# learning helpers of the synchronizer.
learning_metadata = sa.MetaData()

learning_history = sa.Table(
    "neurobase_learning_history",
    learning_metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("natural_language", sa.Text, nullable=False),
    sa.Column("sql", sa.Text, nullable=False),
    sa.Column("user_id", sa.String),
    sa.Column("timestamp", sa.DateTime, nullable=False),
    sa.Column("success", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("corrected", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("context", sa.Text),
)

corrections = sa.Table(
    "neurobase_corrections",
    learning_metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("original_query", sa.Text, nullable=False),
    sa.Column("original_sql", sa.Text, nullable=False),
    sa.Column("corrected_sql", sa.Text, nullable=False),
    sa.Column("corrected_query", sa.Text),
    sa.Column("reason", sa.Text),
    sa.Column("user_id", sa.String),
    sa.Column("timestamp", sa.DateTime, nullable=False),
)

LEARNING_TABLES = [learning_history.name, corrections.name]


async def create_tables(engine: AsyncEngine) -> None:
    """Create orchestrator state tables if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def create_learning_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(learning_metadata.create_all)
