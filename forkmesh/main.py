"""FastAPI entry-point exposing orchestrator, task and sync controls."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

import uvicorn
from fastapi import Depends, FastAPI

from forkmesh.api.routes import router as agents_router
from forkmesh.api.sync import router as sync_router
from forkmesh.api.tasks import router as tasks_router
from forkmesh.config import config
from forkmesh.core.logging import configure_structlog
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.runtime import get_connections, get_orchestrator, get_synchronizer, get_worker
from forkmesh.sync.synchronizer import ForkSynchronizer
from forkmesh.tasks.worker import TaskWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    configure_structlog(config.log_level, quiet=config.quiet, json=config.environment == "production")
    orchestrator = get_orchestrator()
    synchronizer = get_synchronizer()
    worker = get_worker()

    await orchestrator.initialize()
    await worker.start()
    if config.auto_sync_enabled:
        synchronizer.start_auto_sync(config.auto_sync_interval)
    yield
    await worker.stop()
    await synchronizer.shutdown()
    await orchestrator.shutdown()
    await get_connections().close_all()


app = FastAPI(title="Forkmesh Orchestrator", lifespan=lifespan)
app.include_router(agents_router)
app.include_router(tasks_router)
app.include_router(sync_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/stats")
async def stats(
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    synchronizer: ForkSynchronizer = Depends(get_synchronizer),
    worker: TaskWorker = Depends(get_worker),
) -> Dict[str, Any]:
    orchestrator_stats = await orchestrator.get_statistics()
    orchestrator_stats["recent_events"] = [
        {
            "type": event.type,
            "timestamp": event.timestamp.isoformat(),
            "agent_id": event.agent_id,
            "data": event.data,
        }
        for event in orchestrator_stats["recent_events"]
    ]
    return {
        "orchestrator": orchestrator_stats,
        "sync": await synchronizer.get_statistics(),
        "worker": {"running": worker.is_running},
    }


def run() -> None:
    uvicorn.run("forkmesh.main:app", host=config.api_host, port=config.api_port, log_config=None)


if __name__ == "__main__":
    run()
