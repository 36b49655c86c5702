"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine

from forkmesh.config import Config, config
from forkmesh.core.events import EventLog
from forkmesh.db.registry import PRIMARY_ENDPOINT, ConnectionRegistry
from forkmesh.forks.local import LocalForkProvider
from forkmesh.forks.provider import ForkProvider
from forkmesh.forks.tiger import TigerForkProvider, service_id_from_url
from forkmesh.orchestration.orchestrator import AgentOrchestrator
from forkmesh.sync.synchronizer import ForkSynchronizer
from forkmesh.tasks.builtin import default_registry
from forkmesh.tasks.handlers import HandlerRegistry
from forkmesh.tasks.worker import TaskWorker


@lru_cache
def get_connections() -> ConnectionRegistry:
    registry = ConnectionRegistry(pool_size=config.fork_pool_size)
    registry.register(PRIMARY_ENDPOINT, config.database_url, pool_size=config.primary_pool_size)
    return registry


def get_primary_engine() -> AsyncEngine:
    return get_connections().get(PRIMARY_ENDPOINT)


def build_fork_provider(settings: Config) -> ForkProvider:
    if settings.fork_provider == "tiger":
        service_id = settings.tiger.service_id if settings.tiger else service_id_from_url(settings.database_url)
        binary = settings.tiger.binary if settings.tiger else "tiger"
        return TigerForkProvider(service_id, binary=binary)
    if settings.fork_provider == "local":
        return LocalForkProvider(settings.database_url, settings.fork_dir, service_id=PRIMARY_ENDPOINT)
    raise ValueError(f"Unknown fork provider '{settings.fork_provider}'")


@lru_cache
def get_fork_provider() -> ForkProvider:
    return build_fork_provider(config)


@lru_cache
def get_events() -> EventLog:
    return EventLog()


@lru_cache
def get_orchestrator() -> AgentOrchestrator:
    return AgentOrchestrator(
        engine=get_primary_engine(),
        fork_provider=get_fork_provider(),
        connections=get_connections(),
        events=get_events(),
        fork_pool_size=config.fork_pool_size,
    )


@lru_cache
def get_handlers() -> HandlerRegistry:
    return default_registry()


@lru_cache
def get_worker() -> TaskWorker:
    orchestrator = get_orchestrator()
    return TaskWorker(
        queue=orchestrator.tasks,
        handlers=get_handlers(),
        connections=get_connections(),
        reporter=orchestrator,
        poll_interval=config.worker_poll_interval,
        batch_size=config.worker_batch_size,
        max_retries=config.task_max_retries,
    )


@lru_cache
def get_synchronizer() -> ForkSynchronizer:
    return ForkSynchronizer(
        engine=get_primary_engine(),
        connections=get_connections(),
        events=get_events(),
    )
