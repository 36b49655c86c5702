"""CLI demonstration of fork-backed agents, queued tasks and learning sync."""
from __future__ import annotations

import asyncio
import tempfile
import uuid
from pathlib import Path
from typing import NoReturn

from forkmesh.core.events import EventLog
from forkmesh.core.logging import configure_structlog
from forkmesh.core.models import AgentConfig, AgentType, SyncConfig, SyncMode, utcnow
from forkmesh.db.registry import PRIMARY_ENDPOINT, ConnectionRegistry
from forkmesh.db.schema import create_learning_tables, learning_history
from forkmesh.forks.local import LocalForkProvider
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.sync.synchronizer import ForkSynchronizer
from forkmesh.tasks.builtin import default_registry
from forkmesh.tasks.worker import TaskWorker


async def main(workdir: Path) -> None:
    primary_url = f"sqlite+aiosqlite:///{workdir / 'primary.db'}"
    connections = ConnectionRegistry()
    primary = connections.register(PRIMARY_ENDPOINT, primary_url)
    events = EventLog()

    orchestrator = AgentOrchestrator(
        engine=primary,
        fork_provider=LocalForkProvider(primary_url, workdir / "forks"),
        connections=connections,
        events=events,
    )
    synchronizer = ForkSynchronizer(engine=primary, connections=connections, events=events)
    worker = TaskWorker(
        queue=orchestrator.tasks,
        handlers=default_registry(),
        connections=connections,
        reporter=orchestrator,
    )

    await orchestrator.initialize()
    await create_learning_tables(primary)

    agent = await orchestrator.register_agent(AgentConfig(name="demo-learner", type=AgentType.LEARNING_AGGREGATOR))
    print(f"Registered agent {agent.agent_id} on fork {agent.fork.id} in state {agent.status.value}")

    async with agent.engine.begin() as conn:
        await conn.execute(
            learning_history.insert(),
            [
                {
                    "id": str(uuid.uuid4()),
                    "natural_language": f"show orders for customer {n}",
                    "sql": f"SELECT id, total FROM orders WHERE customer_id = {n} LIMIT 50",
                    "timestamp": utcnow(),
                    "success": n != 2,
                }
                for n in range(3)
            ],
        )

    learning_task = await orchestrator.submit_task(
        agent.agent_id, "aggregate-learning", {"timeframe": "24h", "includeMetrics": True}, priority=9
    )
    query_task = await orchestrator.submit_task(
        agent.agent_id, "validate-query", {"sql": "SELECT * FROM neurobase_learning_history", "checkPerformance": True}
    )
    await worker.poll_once()
    for task_id in (learning_task, query_task):
        task = await orchestrator.get_task_status(task_id)
        print(f"Task {task.task_type}: {task.status.value} -> {task.result or task.error}")

    job = await synchronizer.create_sync_job(
        SyncConfig(
            source=agent.agent_id,
            target=PRIMARY_ENDPOINT,
            tables=[learning_history.name],
            mode=SyncMode.INCREMENTAL,
        )
    )
    job = await synchronizer.execute_sync(job.id)
    print(f"Sync job {job.id}: {job.status.value}, {job.records_synced} records, progress {job.progress:.0f}%")

    await orchestrator.stop_agent(agent.agent_id, delete_fork=True)
    print("Agent stopped and fork deleted")
    stats = await orchestrator.get_statistics()
    print(f"Tasks processed: {stats['total_tasks_processed']}, errors: {stats['total_errors']}")
    await connections.close_all()


def run() -> NoReturn:
    configure_structlog("warning")
    with tempfile.TemporaryDirectory(prefix="forkmesh-demo-") as workdir:
        asyncio.run(main(Path(workdir)))


if __name__ == "__main__":
    run()
