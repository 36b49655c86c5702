"""Handlers for the task types agents understand out of the box."""
from __future__ import annotations

import json
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Set

import sqlalchemy as sa

from forkmesh.core.models import utcnow
from forkmesh.db.schema import corrections, learning_history
from forkmesh.tasks.handlers import HandlerRegistry, TaskContext, TaskHandler

_WRITE_KEYWORDS = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke|merge|copy|vacuum)\b",
    re.IGNORECASE,
)
_READ_PREFIXES = ("select", "with", "values", "table", "show", "explain")
_PREDICATE = re.compile(
    r"(?:(\w+)\.)?(\w+)\s*(?:=|<>|!=|<=|>=|<|>|\bLIKE\b|\bILIKE\b|\bIN\b|\bBETWEEN\b)",
    re.IGNORECASE,
)
_FROM_TABLE = re.compile(r"\bFROM\s+(\w+)", re.IGNORECASE)
_TIMEFRAME = re.compile(r"^(\d+)\s*([mhdw])$")
_TIMEFRAME_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def _now_iso() -> str:
    return utcnow().isoformat()


def _strip_sql(sql: str) -> str:
    without_comments = re.sub(r"--[^\n]*|/\*.*?\*/", " ", sql, flags=re.DOTALL)
    return " ".join(without_comments.split()).rstrip(";").strip()


def is_read_only(sql: str) -> bool:
    statement = _strip_sql(sql)
    if not statement or ";" in statement:
        return False
    if not statement.lower().startswith(_READ_PREFIXES):
        return False
    return _WRITE_KEYWORDS.search(statement) is None


def query_warnings(sql: str) -> List[str]:
    statement = _strip_sql(sql)
    lowered = statement.lower()
    warnings = []
    if re.search(r"select\s+\*", lowered):
        warnings.append("Avoid SELECT *; list the columns you need")
    if lowered.startswith(("select", "with")) and not re.search(r"\blimit\b", lowered):
        warnings.append("Query has no LIMIT clause")
    if re.search(r"\blike\s+'%", lowered):
        warnings.append("Leading wildcard in LIKE prevents index use")
    if not is_read_only(statement):
        warnings.append("Statement modifies data or schema")
    return warnings


def _predicate_columns(sql: str) -> List[tuple]:
    statement = _strip_sql(sql)
    where = re.split(r"\bWHERE\b", statement, maxsplit=1, flags=re.IGNORECASE)
    clauses = [where[1]] if len(where) > 1 else []
    clauses += re.findall(r"\bON\s+(.+?)(?:\bWHERE\b|\bJOIN\b|$)", statement, flags=re.IGNORECASE)
    found: List[tuple] = []
    for clause in clauses:
        for qualifier, column in _PREDICATE.findall(clause):
            if column.lower() in {"and", "or", "not"} or column.isdigit():
                continue
            if (qualifier, column) not in found:
                found.append((qualifier, column))
    return found


def parse_timeframe(value: Optional[str]) -> timedelta:
    match = _TIMEFRAME.match((value or "24h").strip().lower())
    if not match:
        raise ValueError(f"Unsupported timeframe '{value}', expected e.g. 30m, 24h, 7d")
    amount, unit = match.groups()
    return timedelta(**{_TIMEFRAME_UNITS[unit]: int(amount)})


def _inspect_tables(sync_conn: Any, tables: Sequence[str]) -> List[Dict[str, Any]]:
    inspector = sa.inspect(sync_conn)
    existing = inspector.get_table_names()
    reports = []
    for table in tables or existing:
        if table not in existing:
            reports.append({"table": table, "missing": True})
            continue
        indexed: Set[str] = set()
        for index in inspector.get_indexes(table):
            if index.get("column_names"):
                indexed.add(index["column_names"][0])
        for unique in inspector.get_unique_constraints(table):
            if unique.get("column_names"):
                indexed.add(unique["column_names"][0])
        primary_key = inspector.get_pk_constraint(table).get("constrained_columns") or []
        if primary_key:
            indexed.add(primary_key[0])
        reports.append(
            {
                "table": table,
                "missing": False,
                "primary_key": primary_key,
                "columns": [column["name"] for column in inspector.get_columns(table)],
                "foreign_key_columns": [
                    fk["constrained_columns"][0]
                    for fk in inspector.get_foreign_keys(table)
                    if fk.get("constrained_columns")
                ],
                "indexed": sorted(indexed),
            }
        )
    return reports


class AnalyzeSchemaHandler(TaskHandler):
    """Looks for missing primary keys and unindexed join/time columns on the fork."""

    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        tables = list(payload.get("tables") or [])
        operation = payload.get("operation") or "scan"
        focus = list(payload.get("focus") or ["all"])
        engine = context.require_engine()
        async with engine.connect() as conn:
            reports = await conn.run_sync(_inspect_tables, tables)

        wants_indexes = bool({"all", "indexes", "performance"} & set(focus))
        wants_constraints = bool({"all", "constraints"} & set(focus))
        recommendations = []
        for report in reports:
            table = report["table"]
            if report["missing"]:
                recommendations.append(
                    {
                        "table": table,
                        "type": "missing-table",
                        "suggestion": f"Table {table} does not exist on this fork",
                        "impact": "low",
                        "estimated_improvement": "0%",
                    }
                )
                continue
            if wants_constraints and not report["primary_key"]:
                recommendations.append(
                    {
                        "table": table,
                        "type": "primary-key",
                        "suggestion": f"Add a primary key to {table}",
                        "impact": "high",
                        "estimated_improvement": "required for upsert-based sync",
                    }
                )
            if not wants_indexes:
                continue
            for column in report["foreign_key_columns"]:
                if column not in report["indexed"]:
                    recommendations.append(
                        {
                            "table": table,
                            "type": "index",
                            "suggestion": f"Add index on {table}({column}) used by a foreign key",
                            "impact": "high",
                            "estimated_improvement": "50%",
                        }
                    )
            for column in report["columns"]:
                lowered = column.lower()
                time_like = "timestamp" in lowered or "updated" in lowered or lowered.endswith("_at")
                if time_like and column not in report["indexed"]:
                    recommendations.append(
                        {
                            "table": table,
                            "type": "index",
                            "suggestion": f"Add index on {table}({column}) for range filters and incremental sync",
                            "impact": "medium",
                            "estimated_improvement": "20%",
                        }
                    )

        return {
            "tables": [report["table"] for report in reports],
            "operation": operation,
            "focus": focus,
            "recommendations": recommendations,
            "timestamp": _now_iso(),
        }


class ValidateQueryHandler(TaskHandler):
    """Plans the query on the fork without running it."""

    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        sql = payload.get("sql")
        if not sql:
            raise ValueError("validate-query requires 'sql'")
        check_performance = bool(payload.get("checkPerformance"))
        engine = context.require_engine()

        warnings = query_warnings(sql)
        is_valid = True
        estimated_cost = None
        statement = _strip_sql(sql)
        async with engine.connect() as conn:
            try:
                if conn.dialect.name == "postgresql":
                    plan = (await conn.exec_driver_sql(f"EXPLAIN (FORMAT JSON) {statement}")).scalar()
                    if isinstance(plan, str):
                        plan = json.loads(plan)
                    total_cost = float(plan[0]["Plan"]["Total Cost"])
                    estimated_cost = "low" if total_cost < 100 else "medium" if total_cost < 10000 else "high"
                else:
                    rows = (await conn.exec_driver_sql(f"EXPLAIN QUERY PLAN {statement}")).all()
                    details = " ".join(str(row[-1]) for row in rows).upper()
                    estimated_cost = "medium" if "SCAN" in details else "low"
            except sa.exc.DBAPIError as exc:
                is_valid = False
                warnings.append(f"Query failed to plan: {exc.orig}")
            finally:
                await conn.rollback()

        return {
            "sql": sql,
            "isValid": is_valid,
            "isSafe": is_read_only(sql),
            "warnings": warnings,
            "suggestions": [w for w in warnings if "LIMIT" in w or "SELECT *" in w] if check_performance else [],
            "estimatedCost": estimated_cost if check_performance and is_valid else None,
            "timestamp": _now_iso(),
        }


class OptimizeQueryHandler(TaskHandler):
    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        sql = payload.get("sql")
        if not sql:
            raise ValueError("optimize-query requires 'sql'")
        suggest_indexes = bool(payload.get("suggestIndexes"))
        optimized = _strip_sql(sql)
        lowered = optimized.lower()

        improvements = []
        if optimized != sql.strip():
            improvements.append("Removed comments and redundant whitespace")
        if re.search(r"select\s+\*", lowered):
            improvements.append("Replace SELECT * with the specific columns needed")
        if lowered.startswith("select") and not re.search(r"\blimit\b", lowered):
            improvements.append("Add a LIMIT clause to bound result size")
        if re.search(r"\bor\b", lowered) and "where" in lowered:
            improvements.append("Consider rewriting OR predicates as UNION ALL to use indexes")

        indexes: List[Dict[str, str]] = []
        if suggest_indexes:
            default_table = _FROM_TABLE.search(optimized)
            existing: Dict[str, Set[str]] = {}
            if context.engine is not None:
                async with context.engine.connect() as conn:
                    reports = await conn.run_sync(_inspect_tables, [])
                existing = {report["table"]: set(report["indexed"]) for report in reports}
            for qualifier, column in _predicate_columns(optimized):
                table = qualifier or (default_table.group(1) if default_table else "")
                if column in existing.get(table, set()):
                    continue
                indexes.append({"table": table, "column": column, "type": "btree"})

        return {
            "originalSql": sql,
            "optimizedSql": optimized,
            "improvements": improvements,
            "indexes": indexes,
            "timestamp": _now_iso(),
        }


class AggregateLearningHandler(TaskHandler):
    """Summarizes what the fork has learned inside the requested window."""

    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        timeframe = payload.get("timeframe") or "24h"
        since = utcnow() - parse_timeframe(timeframe)
        include_metrics = bool(payload.get("includeMetrics"))
        engine = context.require_engine()

        async with engine.connect() as conn:
            has_history = await conn.run_sync(lambda sync_conn: sa.inspect(sync_conn).has_table(learning_history.name))
            has_corrections = await conn.run_sync(lambda sync_conn: sa.inspect(sync_conn).has_table(corrections.name))
            total = successful = correction_count = 0
            frequent: List[Any] = []
            if has_history:
                row = (
                    await conn.execute(
                        sa.select(
                            sa.func.count(),
                            sa.func.sum(sa.case((learning_history.c.success, 1), else_=0)),
                        ).where(learning_history.c.timestamp > since)
                    )
                ).one()
                total, successful = int(row[0] or 0), int(row[1] or 0)
            if has_corrections:
                correction_count = int(
                    (
                        await conn.execute(
                            sa.select(sa.func.count())
                            .select_from(corrections)
                            .where(corrections.c.timestamp > since)
                        )
                    ).scalar_one()
                )
                frequent = (
                    await conn.execute(
                        sa.select(corrections.c.original_query, sa.func.count().label("times"))
                        .where(corrections.c.timestamp > since)
                        .group_by(corrections.c.original_query)
                        .having(sa.func.count() > 2)
                        .order_by(sa.desc("times"))
                        .limit(10)
                    )
                ).all()

        success_rate = (successful / total * 100) if total else 0.0
        insights = [f"{total} queries learned in the last {timeframe}"]
        if total:
            insights.append(f"{success_rate:.1f}% of learned queries succeeded")
        for original_query, times in frequent:
            insights.append(f'Query "{original_query}" frequently corrected ({times} times)')
        if not has_history:
            insights.append("No learning history on this fork")

        return {
            "timeframe": timeframe,
            "totalLearnings": total,
            "insights": insights,
            "metrics": {
                "successRate": round(success_rate, 1),
                "corrections": correction_count,
                "correctionRate": round(correction_count / total * 100, 1) if total else 0.0,
            }
            if include_metrics
            else None,
            "timestamp": _now_iso(),
        }


class RunExperimentHandler(TaskHandler):
    """Scores competing strategies by success rate, speed and cost."""

    SUCCESS_WEIGHT = 0.4
    SPEED_WEIGHT = 0.3
    COST_WEIGHT = 0.3

    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        strategies = [self._normalize(item, i) for i, item in enumerate(payload.get("strategies") or [])]
        results: Dict[str, Any] = {"winner": None, "improvement": 0.0, "confidence": 0.0}
        if strategies:
            scored = self._score(strategies)
            winner, best = scored[0]
            results["winner"] = winner["id"]
            if len(scored) > 1:
                runner_up = scored[1][1]
                results["improvement"] = round((best - runner_up) / runner_up * 100, 1) if runner_up > 0 else 0.0
            results["confidence"] = self._confidence(strategies)
        return {
            "name": payload.get("name"),
            "strategies": [strategy["id"] for strategy in strategies],
            "duration": payload.get("duration"),
            "results": results,
            "timestamp": _now_iso(),
        }

    @staticmethod
    def _normalize(item: Any, position: int) -> Dict[str, Any]:
        if isinstance(item, str):
            return {"id": item, "successRate": 0.0, "avgResponseTime": 0.0, "avgQueryCost": 0.0, "totalQueries": 0}
        return {
            "id": str(item.get("id") or item.get("name") or f"strategy_{position}"),
            "successRate": float(item.get("successRate", 0.0)),
            "avgResponseTime": float(item.get("avgResponseTime", 0.0)),
            "avgQueryCost": float(item.get("avgQueryCost", 0.0)),
            "totalQueries": int(item.get("totalQueries", 0)),
        }

    def _score(self, strategies: List[Dict[str, Any]]) -> List[tuple]:
        max_time = max(s["avgResponseTime"] for s in strategies)
        max_cost = max(s["avgQueryCost"] for s in strategies)
        scored = []
        for strategy in strategies:
            speed = 1 - strategy["avgResponseTime"] / max_time if max_time > 0 else 1.0
            cost = 1 - strategy["avgQueryCost"] / max_cost if max_cost > 0 else 1.0
            score = (
                self.SUCCESS_WEIGHT * strategy["successRate"] / 100
                + self.SPEED_WEIGHT * speed
                + self.COST_WEIGHT * cost
            )
            scored.append((strategy, score))
        # sorted() is stable: ties keep the submitted order.
        return sorted(scored, key=lambda pair: pair[1], reverse=True)

    @staticmethod
    def _confidence(strategies: List[Dict[str, Any]]) -> float:
        if len(strategies) < 2:
            return 0.0
        smallest = min(s["totalQueries"] for s in strategies)
        if smallest < 10:
            return 50.0
        if smallest < 30:
            return 70.0
        if smallest < 100:
            return 85.0
        return 95.0


class EchoHandler(TaskHandler):
    async def execute(self, payload: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
        return {"status": "completed", "payload": payload, "processedAt": _now_iso()}


def default_registry() -> HandlerRegistry:
    echo = EchoHandler()
    return HandlerRegistry(
        {
            "analyze-schema": AnalyzeSchemaHandler(),
            "validate-query": ValidateQueryHandler(),
            "optimize-query": OptimizeQueryHandler(),
            "aggregate-learning": AggregateLearningHandler(),
            "run-experiment": RunExperimentHandler(),
            "custom": echo,
            "test-task": echo,
        }
    )
