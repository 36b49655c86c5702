"""Fork provider for file-backed SQLite primaries.

A fork is a byte copy of the primary database file placed in a fork
directory. This gives every agent a real, isolated database for local runs
without a cloud control plane.
"""
from __future__ import annotations

import asyncio
import shutil
import uuid
from pathlib import Path
from typing import Dict, List

import structlog
from sqlalchemy.engine import make_url

from forkmesh.core.errors import ForkProviderError
from forkmesh.core.models import Fork, ForkOptions, ForkStrategy, utcnow
from forkmesh.db.registry import normalize_database_url
from forkmesh.forks.provider import ForkProvider

logger = structlog.get_logger(__name__)


class LocalForkProvider(ForkProvider):
    def __init__(self, primary_url: str, fork_dir: str | Path, *, service_id: str = "primary") -> None:
        database = make_url(normalize_database_url(primary_url)).database
        if not database or database == ":memory:":
            raise ValueError("LocalForkProvider needs a file-backed SQLite primary")
        self._primary_path = Path(database)
        self._fork_dir = Path(fork_dir)
        self._service_id = service_id
        self._forks: Dict[str, Fork] = {}

    @property
    def service_id(self) -> str:
        return self._service_id

    def fork_path(self, fork_id: str) -> Path:
        return self._fork_dir / f"{fork_id}.db"

    async def create_fork(self, options: ForkOptions) -> Fork:
        if options.strategy is ForkStrategy.TO_TIMESTAMP and not options.timestamp:
            raise ForkProviderError("timestamp is required for to-timestamp strategy")
        if options.strategy is not ForkStrategy.NOW:
            # A file copy has no history; every strategy forks the current state.
            logger.warning("fork_strategy_approximated", strategy=options.strategy.value)
        if not self._primary_path.exists():
            raise ForkProviderError(f"Primary database {self._primary_path} does not exist")

        fork_id = f"fork-{uuid.uuid4().hex[:10]}"
        target = self.fork_path(fork_id)
        try:
            self._fork_dir.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, self._primary_path, target)
        except OSError as exc:
            raise ForkProviderError(f"Failed to create database fork: {exc}") from exc

        fork = Fork(
            id=fork_id,
            name=options.name or fork_id,
            status="READY",
            created_at=utcnow().isoformat(),
            parent_id=self._service_id,
        )
        self._forks[fork_id] = fork
        logger.info("fork_created", fork_id=fork_id, fork_name=fork.name)
        return fork

    async def delete_fork(self, fork_id: str) -> None:
        self._forks.pop(fork_id, None)
        try:
            await asyncio.to_thread(self.fork_path(fork_id).unlink, missing_ok=True)
        except OSError as exc:
            raise ForkProviderError(f"Failed to delete database fork: {exc}") from exc
        logger.info("fork_deleted", fork_id=fork_id)

    async def get_connection_string(self, fork_id: str) -> str:
        path = self.fork_path(fork_id)
        if not path.exists():
            raise ForkProviderError(f"Unknown fork '{fork_id}'")
        return f"sqlite+aiosqlite:///{path}"

    async def list_services(self) -> List[Fork]:
        services = [
            Fork(id=self._service_id, name=self._primary_path.name, status="READY", created_at="", parent_id=None)
        ]
        for path in sorted(self._fork_dir.glob("fork-*.db")):
            fork_id = path.stem
            services.append(
                self._forks.get(fork_id)
                or Fork(id=fork_id, name=fork_id, status="READY", created_at="", parent_id=self._service_id)
            )
        return services
