"""Per-table copy strategies used by the fork synchronizer.

Table names come from sync configuration, so every table is reflected on both
endpoints before any statement is built; a name that does not exist on either
side is rejected. Column names are taken from the reflected tables only.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from forkmesh.core.errors import SyncError, UnsafeIdentifierError
from forkmesh.core.models import ConflictResolution, SyncConfig, SyncDirection, SyncMode, TableStrategy

logger = structlog.get_logger(__name__)

BATCH_SIZE = 500

_TIMESTAMP_HINTS = ("timestamp", "updated")


async def reflect_table(engine: AsyncEngine, name: str) -> sa.Table:
    def _reflect(sync_conn: sa.Connection) -> Optional[sa.Table]:
        if not sa.inspect(sync_conn).has_table(name):
            return None
        return sa.Table(name, sa.MetaData(), autoload_with=sync_conn)

    async with engine.connect() as conn:
        table = await conn.run_sync(_reflect)
    if table is None:
        raise UnsafeIdentifierError(f"Table '{name}' does not exist on endpoint {engine.url.render_as_string()}")
    return table


def detect_strategy(table: sa.Table, row_filter: Optional[str] = None) -> TableStrategy:
    """Pick the primary key and the first column that looks like a modification time."""
    primary_key = next(iter(table.primary_key.columns.keys()), None)
    timestamp_column = next(
        (column.name for column in table.columns if any(hint in column.name.lower() for hint in _TIMESTAMP_HINTS)),
        None,
    )
    return TableStrategy(
        table=table.name,
        primary_key=primary_key,
        timestamp_column=timestamp_column,
        filter=row_filter,
    )


def upsert_statement(dialect_name: str, table: sa.Table, resolution: ConflictResolution) -> Any:
    """INSERT ... ON CONFLICT for the target table, following the conflict policy."""
    if dialect_name == "postgresql":
        stmt = postgresql.insert(table)
    elif dialect_name == "sqlite":
        stmt = sqlite.insert(table)
    else:
        raise SyncError(f"Upserts are not supported on '{dialect_name}'")

    key_columns = list(table.primary_key.columns.keys())
    if not key_columns:
        raise SyncError(f"Table '{table.name}' has no primary key to resolve conflicts on")
    if resolution is ConflictResolution.TARGET_WINS:
        return stmt.on_conflict_do_nothing(index_elements=key_columns)
    if resolution is ConflictResolution.MANUAL:
        raise SyncError("Manual conflict resolution cannot be applied automatically")

    updates: Dict[str, Any] = {}
    for column in table.columns:
        if column.name in key_columns:
            continue
        if resolution is ConflictResolution.MERGE:
            updates[column.name] = sa.func.coalesce(stmt.excluded[column.name], table.c[column.name])
        else:
            updates[column.name] = stmt.excluded[column.name]
    if not updates:
        return stmt.on_conflict_do_nothing(index_elements=key_columns)
    return stmt.on_conflict_do_update(index_elements=key_columns, set_=updates)


class TableCopier:
    """Copies one table from a source engine to a target engine."""

    def __init__(
        self,
        source: AsyncEngine,
        target: AsyncEngine,
        table_name: str,
        *,
        resolution: ConflictResolution = ConflictResolution.SOURCE_WINS,
    ) -> None:
        self.source = source
        self.target = target
        self.table_name = table_name
        self.resolution = resolution
        self._tables: Optional[Tuple[sa.Table, sa.Table]] = None

    async def tables(self) -> Tuple[sa.Table, sa.Table]:
        if self._tables is None:
            self._tables = (
                await reflect_table(self.source, self.table_name),
                await reflect_table(self.target, self.table_name),
            )
        return self._tables

    async def full(self) -> int:
        """Replace the target table with every source row in one transaction."""
        source_table, target_table = await self.tables()
        rows = await self._read(sa.select(source_table))
        async with self.target.begin() as conn:
            await _truncate(conn, target_table)
            await _insert_batches(conn, target_table.insert(), self._project(rows, target_table))
        return len(rows)

    async def incremental(self) -> int:
        """Upsert source rows strictly newer than the newest row on the target."""
        source_table, target_table = await self.tables()
        strategy = detect_strategy(source_table)
        column = strategy.timestamp_column
        if column is None or column not in target_table.c:
            raise SyncError(f"No timestamp column found for table {self.table_name}")

        async with self.target.connect() as conn:
            last_sync = (await conn.execute(sa.select(sa.func.max(target_table.c[column])))).scalar()

        query = sa.select(source_table)
        if last_sync is not None:
            query = query.where(source_table.c[column] > last_sync)
        rows = await self._read(query.order_by(source_table.c[column]))
        if not rows:
            return 0
        stmt = upsert_statement(self.target.dialect.name, target_table, self.resolution)
        async with self.target.begin() as conn:
            await _insert_batches(conn, stmt, self._project(rows, target_table))
        return len(rows)

    async def selective(self, predicate: Optional[str]) -> int:
        """Upsert source rows matching the predicate, one transaction per row.

        A row that fails to write is logged and skipped; the count only
        includes rows that were written.
        """
        source_table, target_table = await self.tables()
        query = sa.select(source_table)
        if predicate:
            query = query.where(sa.text(predicate))
        rows = await self._read(query)
        stmt = upsert_statement(self.target.dialect.name, target_table, self.resolution)
        key = next(iter(target_table.primary_key.columns.keys()))

        written = 0
        for row in self._project(rows, target_table):
            try:
                async with self.target.begin() as conn:
                    await conn.execute(stmt, [row])
            except Exception as exc:  # noqa: BLE001
                logger.warning("selective_row_failed", table=self.table_name, key=row.get(key), error=str(exc))
                continue
            written += 1
        return written

    async def _read(self, query: Any) -> List[Dict[str, Any]]:
        async with self.source.connect() as conn:
            result = await conn.execute(query)
            return [dict(row) for row in result.mappings().all()]

    @staticmethod
    def _project(rows: Sequence[Dict[str, Any]], table: sa.Table) -> List[Dict[str, Any]]:
        names = set(table.c.keys())
        return [{key: value for key, value in row.items() if key in names} for row in rows]


async def sync_table(source: AsyncEngine, target: AsyncEngine, table_name: str, config: SyncConfig) -> int:
    """Copy one table between two engines according to the job config."""
    if config.direction is SyncDirection.PULL:
        return await _copy(target, source, table_name, config)
    written = await _copy(source, target, table_name, config)
    if config.direction is SyncDirection.BIDIRECTIONAL:
        written += await _copy(target, source, table_name, config)
    return written


async def _copy(source: AsyncEngine, target: AsyncEngine, table_name: str, config: SyncConfig) -> int:
    copier = TableCopier(source, target, table_name, resolution=config.conflict_resolution)
    if config.mode is SyncMode.FULL:
        return await copier.full()
    if config.mode is SyncMode.INCREMENTAL:
        return await copier.incremental()
    return await copier.selective(config.filters.get(table_name))


async def _truncate(conn: AsyncConnection, table: sa.Table) -> None:
    if conn.dialect.name == "postgresql":
        quoted = conn.dialect.identifier_preparer.format_table(table)
        await conn.exec_driver_sql(f"TRUNCATE TABLE {quoted} CASCADE")
    else:
        await conn.execute(table.delete())


async def _insert_batches(conn: AsyncConnection, stmt: Any, rows: List[Dict[str, Any]]) -> None:
    for start in range(0, len(rows), BATCH_SIZE):
        await conn.execute(stmt, rows[start : start + BATCH_SIZE])
