"""Configuration, connection registry, event log and model helpers."""
from __future__ import annotations

from pathlib import Path

import pytest
import structlog
from structlog.testing import CapturingLoggerFactory, capture_logs

from forkmesh.config import Config
from forkmesh.core.errors import EndpointNotFoundError
from forkmesh.core.events import EventLog
from forkmesh.core.logging import configure_structlog
from forkmesh.core.models import AGENT_TRANSITIONS, AgentConfig, AgentMetrics, AgentStatus, AgentType, SyncConfig
from forkmesh.db.registry import ConnectionRegistry, normalize_database_url
from forkmesh.forks.local import LocalForkProvider
from forkmesh.forks.tiger import TigerForkProvider
from forkmesh.runtime import build_fork_provider


def test_config_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@abc123.x.tsdb.cloud.timescale.com:5432/tsdb")
    monkeypatch.setenv("FORKMESH_FORK_PROVIDER", "tiger")
    monkeypatch.setenv("TIGER_SERVICE_ID", "abc123")
    monkeypatch.setenv("FORKMESH_WORKER_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("FORKMESH_TASK_MAX_RETRIES", "2")
    monkeypatch.setenv("FORKMESH_AUTO_SYNC", "true")
    monkeypatch.setenv("FORKMESH_QUIET", "1")

    config = Config.from_env()

    assert config.fork_provider == "tiger"
    assert config.tiger is not None and config.tiger.service_id == "abc123"
    assert config.tiger.binary == "tiger"
    assert config.worker_poll_interval == 0.5
    assert config.task_max_retries == 2
    assert config.auto_sync_enabled is True
    assert config.quiet is True
    assert config.auto_sync_interval == 300.0

    provider = build_fork_provider(config)
    assert isinstance(provider, TigerForkProvider)
    assert provider.service_id == "abc123"


def test_default_config_uses_local_forks(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("DATABASE_URL", "FORKMESH_FORK_PROVIDER", "TIGER_SERVICE_ID", "FORKMESH_AUTO_SYNC"):
        monkeypatch.delenv(name, raising=False)
    config = Config.from_env()
    assert config.database_url.startswith("sqlite+aiosqlite:")
    assert config.auto_sync_enabled is False
    assert isinstance(build_fork_provider(config), LocalForkProvider)

    with pytest.raises(ValueError):
        build_fork_provider(Config(fork_provider="cloudy"))


def test_database_urls_are_normalized_to_async_drivers() -> None:
    assert normalize_database_url("postgres://u:p@h:5432/db") == "postgresql+asyncpg://u:p@h:5432/db"
    assert normalize_database_url("postgresql://u@h/db") == "postgresql+asyncpg://u@h/db"
    assert normalize_database_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
    assert normalize_database_url("sqlite+aiosqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
    assert normalize_database_url("postgresql://u:p@h/db?sslmode=require") == "postgresql+asyncpg://u:p@h/db?ssl=require"
    with pytest.raises(ValueError):
        normalize_database_url("  ")


@pytest.mark.anyio
async def test_registry_resolves_aliases_and_forgets_them(tmp_path: Path) -> None:
    registry = ConnectionRegistry()
    engine = registry.register("fork-1", f"sqlite:///{tmp_path / 'f.db'}", aliases=["agent-1"])

    assert registry.register("fork-1", "sqlite:///ignored.db") is engine
    assert registry.get("agent-1") is engine
    assert "agent-1" in registry
    assert registry.endpoints() == ["fork-1"]

    await registry.unregister("agent-1")
    assert "fork-1" not in registry
    assert registry.find("agent-1") is None
    with pytest.raises(EndpointNotFoundError):
        registry.get("fork-1")
    with pytest.raises(KeyError):
        registry.get("agent-1")
    await registry.unregister("fork-1")
    await registry.close_all()


def test_event_log_keeps_the_most_recent_events() -> None:
    seen = []
    log = EventLog(sink=seen.append, max_events=3)
    for n in range(5):
        log.emit("tick", n=n)

    assert len(log) == 3
    assert [event.data["n"] for event in log.recent()] == [2, 3, 4]
    assert [event.data["n"] for event in log.recent(2)] == [3, 4]
    assert log.recent(0) == []
    assert len(seen) == 5


def test_event_log_defaults_to_structured_logging() -> None:
    with capture_logs() as captured:
        EventLog().emit("agent:started", agent_id="agent-1", fork_id="fork-1")
    assert captured == [
        {
            "event": "orchestrator_event",
            "event_type": "agent:started",
            "agent_id": "agent-1",
            "fork_id": "fork-1",
            "log_level": "info",
        }
    ]


def test_quiet_logging_only_lets_errors_through() -> None:
    configure_structlog("debug", quiet=True)
    factory = CapturingLoggerFactory()
    structlog.configure(logger_factory=factory)
    try:
        logger = structlog.get_logger("forkmesh.test")
        logger.info("routine_event")
        logger.error("broken_event")
    finally:
        structlog.reset_defaults()

    assert [call.method_name for call in factory.logger.calls] == ["error"]
    assert "broken_event" in factory.logger.calls[0].args[0]


def test_agent_metrics_keep_a_running_average() -> None:
    metrics = AgentMetrics()
    for duration in (10.0, 20.0, 30.0):
        metrics.record_success(duration)
    metrics.record_failure()

    assert metrics.tasks_processed == 3
    assert metrics.avg_processing_time_ms == pytest.approx(20.0)
    assert metrics.errors == 1
    assert AgentMetrics.from_dict(metrics.to_dict()) == metrics


def test_stopped_has_no_outgoing_transitions() -> None:
    assert AGENT_TRANSITIONS[AgentStatus.STOPPED] == frozenset()
    assert all(AgentStatus.STOPPED in targets for status, targets in AGENT_TRANSITIONS.items() if status is not AgentStatus.STOPPED)


def test_configs_round_trip_through_dicts() -> None:
    agent = AgentConfig(name="a", type=AgentType.AB_TESTING, cpu="500m")
    assert AgentConfig.from_dict(agent.to_dict()) == agent
    sync = SyncConfig(source="s", target="t", tables=["x"], filters={"x": "id > 1"})
    assert SyncConfig.from_dict(sync.to_dict()) == sync
