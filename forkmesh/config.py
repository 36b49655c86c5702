"""Configuration management for the fork orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TigerConfig:
    """Tiger control-plane CLI settings used by the fork provider."""

    service_id: str
    binary: str = "tiger"


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    database_url: str = "sqlite+aiosqlite:///./forkmesh.db"
    fork_provider: str = "local"
    fork_dir: str = "./forks"
    tiger: Optional[TigerConfig] = None
    worker_poll_interval: float = 5.0
    worker_batch_size: int = 10
    task_max_retries: int = 0
    auto_sync_enabled: bool = False
    auto_sync_interval: float = 300.0
    primary_pool_size: int = 10
    fork_pool_size: int = 5
    log_level: str = "info"
    quiet: bool = False
    environment: str = "development"
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        tiger_config = None
        service_id = os.getenv("TIGER_SERVICE_ID")
        if service_id:
            tiger_config = TigerConfig(
                service_id=service_id,
                binary=os.getenv("TIGER_BINARY", "tiger"),
            )

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./forkmesh.db"),
            fork_provider=os.getenv("FORKMESH_FORK_PROVIDER", "local"),
            fork_dir=os.getenv("FORKMESH_FORK_DIR", "./forks"),
            tiger=tiger_config,
            worker_poll_interval=float(os.getenv("FORKMESH_WORKER_POLL_INTERVAL", "5")),
            worker_batch_size=int(os.getenv("FORKMESH_WORKER_BATCH_SIZE", "10")),
            task_max_retries=int(os.getenv("FORKMESH_TASK_MAX_RETRIES", "0")),
            auto_sync_enabled=_env_bool("FORKMESH_AUTO_SYNC", False),
            auto_sync_interval=float(os.getenv("FORKMESH_AUTO_SYNC_INTERVAL", "300")),
            primary_pool_size=int(os.getenv("FORKMESH_PRIMARY_POOL_SIZE", "10")),
            fork_pool_size=int(os.getenv("FORKMESH_FORK_POOL_SIZE", "5")),
            log_level=os.getenv("FORKMESH_LOG_LEVEL", "info"),
            quiet=_env_bool("FORKMESH_QUIET", False),
            environment=os.getenv("ENVIRONMENT", "development"),
            api_host=os.getenv("FORKMESH_API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("FORKMESH_API_PORT", "8000")),
        )


# Global config instance
config = Config.from_env()
