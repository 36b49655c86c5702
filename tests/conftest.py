"""Shared fixtures: file-backed SQLite primaries and locally copied forks."""
from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, List

import pytest

from forkmesh.core.events import EventLog
from forkmesh.core.models import OrchestratorEvent
from forkmesh.db.registry import PRIMARY_ENDPOINT, ConnectionRegistry
from forkmesh.forks.local import LocalForkProvider
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.sync.synchronizer import ForkSynchronizer
from forkmesh.tasks.builtin import default_registry
from forkmesh.tasks.worker import TaskWorker


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def primary_url(tmp_path: Path) -> str:
    return sqlite_url(tmp_path / "primary.db")


@pytest.fixture
async def connections(primary_url: str) -> AsyncIterator[ConnectionRegistry]:
    registry = ConnectionRegistry()
    registry.register(PRIMARY_ENDPOINT, primary_url)
    yield registry
    await registry.close_all()


@pytest.fixture
def emitted() -> List[OrchestratorEvent]:
    return []


@pytest.fixture
def events(emitted: List[OrchestratorEvent]) -> EventLog:
    return EventLog(sink=emitted.append)


@pytest.fixture
def fork_provider(primary_url: str, tmp_path: Path) -> LocalForkProvider:
    return LocalForkProvider(primary_url, tmp_path / "forks")


@pytest.fixture
async def orchestrator(
    connections: ConnectionRegistry,
    fork_provider: LocalForkProvider,
    events: EventLog,
) -> AgentOrchestrator:
    instance = AgentOrchestrator(
        engine=connections.get(PRIMARY_ENDPOINT),
        fork_provider=fork_provider,
        connections=connections,
        events=events,
    )
    await instance.initialize()
    return instance


@pytest.fixture
def worker(orchestrator: AgentOrchestrator, connections: ConnectionRegistry) -> TaskWorker:
    return TaskWorker(
        queue=orchestrator.tasks,
        handlers=default_registry(),
        connections=connections,
        reporter=orchestrator,
        poll_interval=0.01,
    )


@pytest.fixture
async def synchronizer(connections: ConnectionRegistry, events: EventLog) -> AsyncIterator[ForkSynchronizer]:
    instance = ForkSynchronizer(engine=connections.get(PRIMARY_ENDPOINT), connections=connections, events=events)
    await instance.initialize()
    yield instance
    await instance.shutdown()
