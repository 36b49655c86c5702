"""Task queue ordering, claiming and worker execution."""
from __future__ import annotations

from typing import Any, Dict

import anyio
import pytest

from forkmesh.core.models import AgentConfig, AgentInstance, AgentType, Task, TaskStatus
from forkmesh.db.registry import ConnectionRegistry
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.tasks.builtin import default_registry
from forkmesh.tasks.handlers import HandlerRegistry, TaskContext, TaskHandler
from forkmesh.tasks.worker import TaskWorker


class FlakyHandler(TaskHandler):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"calls": self.calls}


@pytest.fixture
async def agent(orchestrator: AgentOrchestrator) -> AgentInstance:
    return await orchestrator.register_agent(AgentConfig(name="worker-agent", type=AgentType.QUERY_VALIDATOR))


def _worker_with(handler: TaskHandler, orchestrator: AgentOrchestrator, connections: ConnectionRegistry, **kwargs) -> TaskWorker:
    handlers = HandlerRegistry({"flaky": handler})
    return TaskWorker(
        queue=orchestrator.tasks,
        handlers=handlers,
        connections=connections,
        reporter=orchestrator,
        **kwargs,
    )


@pytest.mark.anyio
async def test_tasks_are_claimed_by_priority_then_submission(
    orchestrator: AgentOrchestrator, worker: TaskWorker, agent: AgentInstance
) -> None:
    low = await orchestrator.submit_task(agent.agent_id, "test-task", {"n": "low"}, priority=1)
    early = await orchestrator.submit_task(agent.agent_id, "test-task", {"n": "early"}, priority=5)
    urgent = await orchestrator.submit_task(agent.agent_id, "test-task", {"n": "urgent"}, priority=9)
    late = await orchestrator.submit_task(agent.agent_id, "test-task", {"n": "late"}, priority=5)

    candidates = await orchestrator.tasks.claim_candidates()
    assert [task.priority for task in candidates] == [9, 5, 5, 1]
    assert [task.id for task in candidates] == [urgent, early, late, low]

    processed = await worker.poll_once()
    assert [task.id for task in processed] == [urgent, early, late, low]
    assert await worker.poll_once() == []


@pytest.mark.anyio
async def test_round_trip_reaches_completed_with_ordered_timestamps(
    orchestrator: AgentOrchestrator, worker: TaskWorker, agent: AgentInstance
) -> None:
    task_id = await orchestrator.submit_task(agent.agent_id, "test-task", {"hello": "fork"})
    await worker.poll_once()

    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result["status"] == "completed"
    assert task.result["payload"] == {"hello": "fork"}
    assert task.attempts == 1
    assert task.completed_at >= task.started_at >= task.created_at

    assert agent.metrics.tasks_processed == 1
    samples = await orchestrator.get_agent_metrics(agent.agent_id, "task_duration_ms")
    assert samples[0].metadata == {"task_id": task_id, "succeeded": True}


@pytest.mark.anyio
async def test_handlers_see_the_agent_fork(
    orchestrator: AgentOrchestrator, worker: TaskWorker, agent: AgentInstance
) -> None:
    task_id = await orchestrator.submit_task(
        agent.agent_id,
        "validate-query",
        {"sql": "SELECT id, name FROM neurobase_agents LIMIT 5", "checkPerformance": True},
    )
    await worker.poll_once()

    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result["isValid"] is True
    assert task.result["isSafe"] is True
    assert task.result["estimatedCost"] in {"low", "medium"}


@pytest.mark.anyio
async def test_unknown_task_type_fails_without_retry(
    orchestrator: AgentOrchestrator, connections: ConnectionRegistry, agent: AgentInstance
) -> None:
    worker = TaskWorker(
        queue=orchestrator.tasks,
        handlers=default_registry(),
        connections=connections,
        reporter=orchestrator,
        max_retries=3,
    )
    task_id = await orchestrator.submit_task(agent.agent_id, "summon-dragon", {})
    await worker.poll_once()

    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.error == "Unknown task type: summon-dragon"
    assert task.attempts == 1
    assert task.completed_at is not None
    assert agent.metrics.errors == 1


@pytest.mark.anyio
async def test_handler_failure_marks_task_failed_by_default(
    orchestrator: AgentOrchestrator, connections: ConnectionRegistry, agent: AgentInstance
) -> None:
    handler = FlakyHandler(failures=1)
    worker = _worker_with(handler, orchestrator, connections)
    task_id = await orchestrator.submit_task(agent.agent_id, "flaky", {})

    await worker.poll_once()
    await worker.poll_once()

    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.error == "transient failure 1"
    assert handler.calls == 1


@pytest.mark.anyio
async def test_retries_requeue_until_success(
    orchestrator: AgentOrchestrator, connections: ConnectionRegistry, agent: AgentInstance
) -> None:
    handler = FlakyHandler(failures=1)
    worker = _worker_with(handler, orchestrator, connections, max_retries=1)
    task_id = await orchestrator.submit_task(agent.agent_id, "flaky", {})

    await worker.poll_once()
    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.PENDING
    assert task.error == "transient failure 1"
    assert task.started_at is None

    await worker.poll_once()
    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == {"calls": 2}
    assert task.error is None
    assert task.attempts == 2


@pytest.mark.anyio
async def test_a_task_is_claimed_once(orchestrator: AgentOrchestrator, agent: AgentInstance) -> None:
    await orchestrator.submit_task(agent.agent_id, "test-task", {})
    [first] = await orchestrator.tasks.claim_candidates()
    [second] = await orchestrator.tasks.claim_candidates()

    assert await orchestrator.tasks.claim(first) is True
    assert await orchestrator.tasks.claim(second) is False
    assert await orchestrator.tasks.claim_candidates() == []


@pytest.mark.anyio
async def test_background_loop_processes_and_stops(
    orchestrator: AgentOrchestrator, worker: TaskWorker, agent: AgentInstance
) -> None:
    task_id = await orchestrator.submit_task(agent.agent_id, "custom", {"step": 1})
    await worker.start()
    assert worker.is_running

    with anyio.fail_after(5):
        while not (await orchestrator.get_task_status(task_id)).is_terminal:
            await anyio.sleep(0.01)

    await worker.stop()
    assert not worker.is_running
    assert (await orchestrator.get_task_status(task_id)).status is TaskStatus.COMPLETED


@pytest.mark.anyio
async def test_failed_requeue_falls_back_to_failing_the_task(
    orchestrator: AgentOrchestrator,
    connections: ConnectionRegistry,
    agent: AgentInstance,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    worker = _worker_with(FlakyHandler(failures=1), orchestrator, connections, max_retries=3)
    task_id = await orchestrator.submit_task(agent.agent_id, "flaky", {})

    async def broken_requeue(task: Task, error: str) -> None:
        raise RuntimeError("connection reset")

    monkeypatch.setattr(orchestrator.tasks, "requeue", broken_requeue)
    await worker.poll_once()

    task = await orchestrator.get_task_status(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.error == "transient failure 1"


@pytest.mark.anyio
async def test_unrecordable_failure_does_not_stop_the_batch(
    orchestrator: AgentOrchestrator,
    connections: ConnectionRegistry,
    agent: AgentInstance,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    worker = _worker_with(FlakyHandler(failures=1), orchestrator, connections)
    first = await orchestrator.submit_task(agent.agent_id, "flaky", {}, priority=9)
    second = await orchestrator.submit_task(agent.agent_id, "flaky", {}, priority=1)

    async def broken_fail(task: Task, error: str) -> None:
        raise RuntimeError("connection reset")

    monkeypatch.setattr(orchestrator.tasks, "fail", broken_fail)
    processed = await worker.poll_once()

    assert [task.id for task in processed] == [first, second]
    assert (await orchestrator.get_task_status(second)).status is TaskStatus.COMPLETED
    assert agent.metrics.errors == 1
