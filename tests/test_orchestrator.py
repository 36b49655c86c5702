"""Agent lifecycle, fork provisioning and messaging through the orchestrator."""
from __future__ import annotations

from typing import List

import anyio
import pytest
import sqlalchemy as sa

from forkmesh.core.errors import (
    AgentNotFoundError,
    AgentNotReadyError,
    DuplicateAgentError,
    ForkProviderError,
    InvalidAgentConfigError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from forkmesh.core.events import EventLog
from forkmesh.core.models import (
    AgentConfig,
    AgentStatus,
    AgentType,
    Fork,
    ForkOptions,
    ForkStrategy,
    OrchestratorEvent,
)
from forkmesh.db.registry import PRIMARY_ENDPOINT, ConnectionRegistry
from forkmesh.db.schema import agent_tasks
from forkmesh.forks.local import LocalForkProvider
from forkmesh.orchestration.orchestrator import AgentOrchestrator


class FailingDeleteProvider(LocalForkProvider):
    async def delete_fork(self, fork_id: str) -> None:
        raise ForkProviderError("control plane unavailable")


class FailingCreateProvider(LocalForkProvider):
    async def create_fork(self, options: ForkOptions) -> Fork:
        raise ForkProviderError("quota exceeded")


class GatedProvider(LocalForkProvider):
    """Holds fork creation open until the test releases it."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.entered = anyio.Event()
        self.release = anyio.Event()
        self.created: List[str] = []
        self.deleted: List[str] = []

    async def create_fork(self, options: ForkOptions) -> Fork:
        self.entered.set()
        await self.release.wait()
        fork = await super().create_fork(options)
        self.created.append(fork.id)
        return fork

    async def delete_fork(self, fork_id: str) -> None:
        self.deleted.append(fork_id)
        await super().delete_fork(fork_id)


def _config(name: str = "schema-bot", *, enabled: bool = True) -> AgentConfig:
    return AgentConfig(name=name, type=AgentType.SCHEMA_EVOLUTION, enabled=enabled)


async def _orchestrator_with(provider: LocalForkProvider, connections: ConnectionRegistry) -> AgentOrchestrator:
    orchestrator = AgentOrchestrator(
        engine=connections.get(PRIMARY_ENDPOINT),
        fork_provider=provider,
        connections=connections,
    )
    await orchestrator.initialize()
    return orchestrator


async def _task_rows(connections: ConnectionRegistry) -> int:
    async with connections.get(PRIMARY_ENDPOINT).connect() as conn:
        return (await conn.execute(sa.select(sa.func.count()).select_from(agent_tasks))).scalar_one()


@pytest.mark.anyio
async def test_register_enabled_agent_runs_on_its_own_fork(
    orchestrator: AgentOrchestrator,
    connections: ConnectionRegistry,
    fork_provider: LocalForkProvider,
) -> None:
    agent = await orchestrator.register_agent(_config())

    assert agent.status is AgentStatus.RUNNING
    assert agent.agent_id.startswith("agent-schema-evolution-")
    assert agent.fork is not None
    assert fork_provider.fork_path(agent.fork.id).exists()
    assert connections.get(agent.agent_id) is connections.get(agent.fork.id)
    assert agent.engine is connections.get(agent.fork.id)


@pytest.mark.anyio
async def test_disabled_agent_waits_for_explicit_start(orchestrator: AgentOrchestrator) -> None:
    agent = await orchestrator.register_agent(_config(enabled=False))
    assert agent.status is AgentStatus.INITIALIZING
    assert agent.fork is None

    started = await orchestrator.start_agent(agent.agent_id)
    assert started.status is AgentStatus.RUNNING

    with pytest.raises(InvalidTransitionError):
        await orchestrator.start_agent(agent.agent_id)


@pytest.mark.anyio
async def test_names_are_unique_among_active_agents(orchestrator: AgentOrchestrator) -> None:
    first = await orchestrator.register_agent(_config("twin", enabled=False))
    with pytest.raises(DuplicateAgentError):
        await orchestrator.register_agent(_config("twin", enabled=False))

    await orchestrator.stop_agent(first.agent_id)
    second = await orchestrator.register_agent(_config("twin", enabled=False))
    assert second.agent_id != first.agent_id


@pytest.mark.anyio
async def test_invalid_configs_are_rejected(orchestrator: AgentOrchestrator) -> None:
    with pytest.raises(InvalidAgentConfigError):
        await orchestrator.register_agent(AgentConfig(name="  ", type=AgentType.CUSTOM))
    with pytest.raises(InvalidAgentConfigError):
        await orchestrator.register_agent(
            AgentConfig(name="rewinder", type=AgentType.CUSTOM, fork_strategy=ForkStrategy.TO_TIMESTAMP)
        )
    assert await orchestrator.list_agents() == []


@pytest.mark.anyio
async def test_stopped_is_terminal(orchestrator: AgentOrchestrator) -> None:
    agent = await orchestrator.register_agent(_config())
    await orchestrator.stop_agent(agent.agent_id)
    assert agent.status is AgentStatus.STOPPED
    assert agent.engine is None

    again = await orchestrator.stop_agent(agent.agent_id)
    assert again.status is AgentStatus.STOPPED
    with pytest.raises(InvalidTransitionError):
        await orchestrator.start_agent(agent.agent_id)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.resume_agent(agent.agent_id)


@pytest.mark.anyio
async def test_submit_to_non_running_agent_creates_no_task(
    orchestrator: AgentOrchestrator, connections: ConnectionRegistry
) -> None:
    agent = await orchestrator.register_agent(_config(enabled=False))

    with pytest.raises(AgentNotReadyError):
        await orchestrator.submit_task(agent.agent_id, "analyze-schema", {})
    assert await _task_rows(connections) == 0

    with pytest.raises(AgentNotFoundError):
        await orchestrator.submit_task("agent-missing", "analyze-schema", {})


@pytest.mark.anyio
async def test_paused_agent_rejects_tasks_until_resumed(orchestrator: AgentOrchestrator) -> None:
    agent = await orchestrator.register_agent(_config())
    await orchestrator.pause_agent(agent.agent_id)
    assert agent.status is AgentStatus.IDLE

    with pytest.raises(AgentNotReadyError):
        await orchestrator.submit_task(agent.agent_id, "test-task", {})

    await orchestrator.resume_agent(agent.agent_id)
    task_id = await orchestrator.submit_task(agent.agent_id, "test-task", {"n": 1}, priority=7)
    task = await orchestrator.get_task_status(task_id)
    assert task.priority == 7
    assert task.status.value == "pending"


@pytest.mark.anyio
async def test_stop_with_failing_fork_delete_still_stops(
    connections: ConnectionRegistry, primary_url: str, tmp_path
) -> None:
    orchestrator = await _orchestrator_with(FailingDeleteProvider(primary_url, tmp_path / "forks"), connections)
    agent = await orchestrator.register_agent(_config())
    fork_id = agent.fork.id

    stopped = await orchestrator.stop_agent(agent.agent_id, delete_fork=True)

    assert stopped.status is AgentStatus.STOPPED
    assert fork_id not in connections
    assert agent.agent_id not in connections


@pytest.mark.anyio
async def test_stop_deletes_fork_when_asked(
    orchestrator: AgentOrchestrator, fork_provider: LocalForkProvider
) -> None:
    agent = await orchestrator.register_agent(_config())
    path = fork_provider.fork_path(agent.fork.id)

    await orchestrator.stop_agent(agent.agent_id, delete_fork=True)
    assert not path.exists()


@pytest.mark.anyio
async def test_failed_fork_creation_moves_agent_to_error(
    connections: ConnectionRegistry, primary_url: str, tmp_path
) -> None:
    orchestrator = await _orchestrator_with(FailingCreateProvider(primary_url, tmp_path / "forks"), connections)

    with pytest.raises(ForkProviderError):
        await orchestrator.register_agent(_config())

    [agent] = await orchestrator.list_agents()
    assert agent.status is AgentStatus.ERROR
    assert agent.last_error == "quota exceeded"
    stats = await orchestrator.get_statistics()
    assert stats["error_agents"] == 1

    await orchestrator.stop_agent(agent.agent_id)
    assert agent.status is AgentStatus.STOPPED


@pytest.mark.anyio
async def test_agents_survive_a_new_orchestrator(
    orchestrator: AgentOrchestrator, connections: ConnectionRegistry, fork_provider: LocalForkProvider
) -> None:
    agent = await orchestrator.register_agent(_config(enabled=False))

    fresh = AgentOrchestrator(
        engine=connections.get(PRIMARY_ENDPOINT),
        fork_provider=fork_provider,
        connections=connections,
    )
    loaded = await fresh.get_agent(agent.agent_id)
    assert loaded is not None
    assert loaded.config == agent.config
    assert loaded.status is AgentStatus.INITIALIZING
    assert await fresh.get_agent("agent-unknown") is None


@pytest.mark.anyio
async def test_messages_are_polled_and_marked_read(orchestrator: AgentOrchestrator) -> None:
    sender = await orchestrator.register_agent(_config("sender", enabled=False))
    receiver = await orchestrator.register_agent(_config("receiver", enabled=False))

    first = await orchestrator.send_message(sender.agent_id, receiver.agent_id, "hint", {"table": "orders"})
    await orchestrator.send_message(sender.agent_id, receiver.agent_id, "hint", {"table": "users"})

    unread = await orchestrator.get_messages(receiver.agent_id, unread_only=True)
    assert [m.payload["table"] for m in unread] == ["orders", "users"]

    assert await orchestrator.mark_message_read(first) is True
    assert await orchestrator.mark_message_read("missing") is False
    unread = await orchestrator.get_messages(receiver.agent_id, unread_only=True)
    assert [m.payload["table"] for m in unread] == ["users"]

    everything = await orchestrator.get_messages(receiver.agent_id)
    assert [m.payload["table"] for m in everything] == ["users", "orders"]
    assert await orchestrator.get_messages(sender.agent_id) == []


@pytest.mark.anyio
async def test_metrics_are_recorded_and_filtered(orchestrator: AgentOrchestrator) -> None:
    agent = await orchestrator.register_agent(_config(enabled=False))
    await orchestrator.record_metric(agent.agent_id, "latency_ms", 12.5, {"query": "q1"})
    await orchestrator.record_metric(agent.agent_id, "latency_ms", 20.0)
    await orchestrator.record_metric(agent.agent_id, "rows", 3)

    latency = await orchestrator.get_agent_metrics(agent.agent_id, "latency_ms")
    assert [sample.metric_value for sample in latency] == [20.0, 12.5]
    assert latency[1].metadata == {"query": "q1"}
    assert len(await orchestrator.get_agent_metrics(agent.agent_id, limit=2)) == 2


@pytest.mark.anyio
async def test_lifecycle_events_are_recorded(
    orchestrator: AgentOrchestrator, emitted: List[OrchestratorEvent]
) -> None:
    agent = await orchestrator.register_agent(_config())
    await orchestrator.stop_agent(agent.agent_id)

    types = [event.type for event in orchestrator.get_event_history()]
    assert types == ["agent:started", "fork:created", "agent:stopped"]
    assert [event.type for event in emitted] == types
    assert all(event.agent_id == agent.agent_id for event in emitted)


@pytest.mark.anyio
async def test_statistics_and_shutdown(orchestrator: AgentOrchestrator) -> None:
    running = await orchestrator.register_agent(_config("one"))
    await orchestrator.register_agent(_config("two", enabled=False))
    await orchestrator.submit_task(running.agent_id, "test-task", {})

    stats = await orchestrator.get_statistics()
    assert stats["total_agents"] == 2
    assert stats["running_agents"] == 1
    assert stats["pending_tasks"] == 1

    await orchestrator.shutdown()
    assert {agent.status for agent in await orchestrator.list_agents()} == {AgentStatus.STOPPED}


@pytest.mark.anyio
async def test_unknown_task_and_agent_lookups(orchestrator: AgentOrchestrator) -> None:
    with pytest.raises(TaskNotFoundError):
        await orchestrator.get_task_status("nope")
    with pytest.raises(AgentNotFoundError):
        await orchestrator.stop_agent("nope")


@pytest.mark.anyio
async def test_stop_during_fork_provisioning_wins(
    connections: ConnectionRegistry, primary_url: str, tmp_path
) -> None:
    provider = GatedProvider(primary_url, tmp_path / "forks")
    orchestrator = await _orchestrator_with(provider, connections)
    agent = await orchestrator.register_agent(_config(enabled=False))
    started: List[AgentStatus] = []

    async def start() -> None:
        started.append((await orchestrator.start_agent(agent.agent_id)).status)

    async with anyio.create_task_group() as tg:
        tg.start_soon(start)
        await provider.entered.wait()
        await orchestrator.stop_agent(agent.agent_id)
        provider.release.set()

    assert started == [AgentStatus.STOPPED]
    assert agent.status is AgentStatus.STOPPED
    assert agent.engine is None
    assert connections.endpoints() == [PRIMARY_ENDPOINT]
    assert len(provider.created) == 1
    assert provider.deleted == provider.created
    assert not provider.fork_path(provider.created[0]).exists()

    reloaded = AgentOrchestrator(
        engine=connections.get(PRIMARY_ENDPOINT),
        fork_provider=provider,
        connections=connections,
    )
    assert (await reloaded.get_agent(agent.agent_id)).status is AgentStatus.STOPPED


@pytest.mark.anyio
async def test_concurrent_start_is_rejected(
    connections: ConnectionRegistry, primary_url: str, tmp_path
) -> None:
    provider = GatedProvider(primary_url, tmp_path / "forks")
    orchestrator = await _orchestrator_with(provider, connections)
    agent = await orchestrator.register_agent(_config(enabled=False))

    async with anyio.create_task_group() as tg:
        tg.start_soon(orchestrator.start_agent, agent.agent_id)
        await provider.entered.wait()
        with pytest.raises(InvalidTransitionError):
            await orchestrator.start_agent(agent.agent_id)
        provider.release.set()

    assert agent.status is AgentStatus.RUNNING
    assert len(provider.created) == 1
    assert connections.endpoints() == [PRIMARY_ENDPOINT, agent.fork.id]
    assert connections.get(agent.agent_id) is agent.engine

    await orchestrator.stop_agent(agent.agent_id, delete_fork=True)
    assert connections.endpoints() == [PRIMARY_ENDPOINT]


@pytest.mark.anyio
async def test_injected_event_log_is_used_even_when_empty(
    orchestrator: AgentOrchestrator, events: EventLog, emitted: List[OrchestratorEvent]
) -> None:
    assert len(events) == 0
    assert orchestrator.events is events

    agent = await orchestrator.register_agent(_config())
    assert [event.type for event in emitted] == ["agent:started", "fork:created"]
    assert len(events) == 2
    await orchestrator.stop_agent(agent.agent_id)
