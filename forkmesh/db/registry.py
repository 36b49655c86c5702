"""Pooled connection registry keyed by logical endpoint id."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from forkmesh.core.errors import EndpointNotFoundError

logger = structlog.get_logger(__name__)

PRIMARY_ENDPOINT = "primary"


def normalize_database_url(raw: str) -> str:
    """Normalize common URL variants to SQLAlchemy async driver URLs.

    - postgres://... and postgresql://... -> postgresql+asyncpg://...
    - sqlite:///... -> sqlite+aiosqlite:///...
    - a libpq ``sslmode`` query parameter becomes asyncpg's ``ssl``
    """
    url = str(raw or "").strip()
    if not url:
        raise ValueError("Empty database URL")
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    elif url.startswith("sqlite:") and not url.startswith("sqlite+aiosqlite:"):
        url = "sqlite+aiosqlite:" + url[len("sqlite:") :]

    parsed = make_url(url)
    if parsed.drivername == "postgresql+asyncpg" and "sslmode" in parsed.query:
        sslmode = parsed.query["sslmode"]
        parsed = parsed.difference_update_query(["sslmode"]).update_query_dict({"ssl": sslmode})
        return parsed.render_as_string(hide_password=False)
    return url


def create_engine(url: str, *, pool_size: int = 5) -> AsyncEngine:
    async_url = normalize_database_url(url)
    kwargs: Dict[str, Any] = {"pool_pre_ping": True}
    if async_url.startswith("sqlite+aiosqlite:"):
        # SQLite driver uses a thread internally; disable same-thread checks.
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = pool_size
    return create_async_engine(async_url, **kwargs)


class ConnectionRegistry:
    """One pooled engine per endpoint, shared by every component holding the registry."""

    def __init__(self, *, pool_size: int = 5) -> None:
        self._engines: Dict[str, AsyncEngine] = {}
        self._aliases: Dict[str, str] = {}
        self._pool_size = pool_size

    def register(
        self,
        endpoint_id: str,
        url: str,
        *,
        aliases: Iterable[str] = (),
        pool_size: Optional[int] = None,
    ) -> AsyncEngine:
        """Open a pool for the endpoint. Registering a known id is a no-op."""
        engine = self._engines.get(endpoint_id)
        if engine is None:
            engine = create_engine(url, pool_size=pool_size or self._pool_size)
            self._engines[endpoint_id] = engine
            logger.info("endpoint_registered", endpoint_id=endpoint_id)
        for alias in aliases:
            self._aliases[alias] = endpoint_id
        return engine

    def register_engine(self, endpoint_id: str, engine: AsyncEngine, *, aliases: Iterable[str] = ()) -> AsyncEngine:
        existing = self._engines.setdefault(endpoint_id, engine)
        for alias in aliases:
            self._aliases[alias] = endpoint_id
        return existing

    def resolve(self, endpoint_id: str) -> str:
        return self._aliases.get(endpoint_id, endpoint_id)

    def find(self, endpoint_id: str) -> Optional[AsyncEngine]:
        return self._engines.get(self.resolve(endpoint_id))

    def get(self, endpoint_id: str) -> AsyncEngine:
        engine = self.find(endpoint_id)
        if engine is None:
            raise EndpointNotFoundError(f"No connection registered for endpoint '{endpoint_id}'")
        return engine

    def __contains__(self, endpoint_id: object) -> bool:
        return isinstance(endpoint_id, str) and self.find(endpoint_id) is not None

    def endpoints(self) -> List[str]:
        return list(self._engines)

    async def unregister(self, endpoint_id: str) -> None:
        """Dispose the endpoint's pool and drop its aliases. Unknown ids are ignored."""
        key = self.resolve(endpoint_id)
        engine = self._engines.pop(key, None)
        self._aliases = {alias: target for alias, target in self._aliases.items() if target != key}
        if engine is None:
            return
        await engine.dispose()
        logger.info("endpoint_unregistered", endpoint_id=key)

    async def close_all(self) -> None:
        engines = list(self._engines.items())
        self._engines.clear()
        self._aliases.clear()
        for endpoint_id, engine in engines:
            try:
                await engine.dispose()
            except Exception as exc:  # noqa: BLE001
                logger.warning("endpoint_close_failed", endpoint_id=endpoint_id, error=str(exc))
