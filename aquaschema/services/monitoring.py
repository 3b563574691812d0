from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import re
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.core.config import get_settings
from aquaschema.core.errors import QueryValidationError
from aquaschema.domain.models import (
    TENANT_STATUS_ACTIVE,
    DatabaseMetric,
    SlowQueryLog,
    TenantSchema,
)
from aquaschema.persistence.guards import is_valid_schema_name, require_schema_name
from aquaschema.persistence.sql import SqlRunner, get_sql_runner
from aquaschema.services.tenants import list_tenant_schemas


logger = logging.getLogger(__name__)

CONNECTION_WARNING_THRESHOLD = 0.7
CONNECTION_CRITICAL_THRESHOLD = 0.9
CACHE_HIT_WARNING_PERCENT = 90.0
SLOW_QUERY_WARNING_COUNT = 20
SLOW_QUERY_CRITICAL_COUNT = 100

MAX_EXPLAIN_QUERY_LENGTH = 10000
MAX_LOGGED_QUERY_LENGTH = 10000
MAX_NORMALIZED_QUERY_LENGTH = 500

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"
HEALTH_CRITICAL = "critical"

_FORBIDDEN_EXPLAIN_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(insert|update|delete|drop|create|alter|truncate|grant|revoke|vacuum|analyze)\b",
        r"--",
        r"/\*",
        r"\binto\s+outfile\b",
        r"\bload_file\b",
        r"\bpg_read_file\b",
        r"\bpg_write_file\b",
        r"\bpg_sleep\b",
        r"\bcopy\b",
        r"\bexec\b",
        r"\bexecute\b",
        r"\bdo\s*\$",
        r"\$\$.*\$\$",
        r"\bset\s+session\b",
        r"\bset\s+local\b",
        r"\braise\b",
        r"\bnotify\b",
        r"\blisten\b",
    )
)
_EXPLAIN_PREFIX = re.compile(r"^(select|with|values)\b", re.IGNORECASE)


@dataclass(frozen=True)
class QueryValidation:
    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class SlowQueryGroup:
    query: str
    count: int
    avg_time_ms: float


@dataclass(frozen=True)
class ConnectionStats:
    total: int
    active: int
    idle: int
    waiting: int
    max_connections: int
    utilization_percent: float


@dataclass(frozen=True)
class QueryPerformanceStats:
    total_queries: int
    avg_execution_time_ms: float
    slow_queries: int
    cache_hit_ratio: float
    queries_per_second: float


@dataclass(frozen=True)
class TenantStorage:
    tenant_id: str
    schema_name: str
    total_size_bytes: int
    data_size_bytes: int
    index_size_bytes: int
    table_count: int


@dataclass(frozen=True)
class StorageTotals:
    total_size_bytes: int
    data_size_bytes: int
    index_size_bytes: int


@dataclass(frozen=True)
class IndexRecommendation:
    table_name: str
    columns: list[str]
    index_type: str
    reason: str
    estimated_impact: str
    statement: str


@dataclass(frozen=True)
class HealthCheck:
    name: str
    status: str
    value: str
    message: str
    threshold: str | None = None


@dataclass(frozen=True)
class DatabaseHealth:
    status: str
    score: int
    checks: list[HealthCheck] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_schema_name(schema_name: str | None) -> bool:
    return is_valid_schema_name(schema_name)


def validate_query_for_explain(query: str) -> QueryValidation:
    """Decide whether ``query`` may be handed to ``EXPLAIN``.

    Only single read-only statements are accepted: no semicolons, no DDL/DML
    keywords, no comments, no file/sleep/copy/exec helpers, no dollar quoting
    and no session manipulation.
    """
    if ";" in query:
        return QueryValidation(valid=False, error="Semicolons are not allowed in queries")
    for pattern in _FORBIDDEN_EXPLAIN_PATTERNS:
        if pattern.search(query):
            return QueryValidation(valid=False, error="Query contains forbidden SQL patterns")
    if not _EXPLAIN_PREFIX.match(query.strip()):
        return QueryValidation(
            valid=False, error="Only SELECT, WITH, or VALUES queries can be analyzed"
        )
    if len(query) > MAX_EXPLAIN_QUERY_LENGTH:
        return QueryValidation(
            valid=False,
            error=f"Query exceeds maximum allowed length ({MAX_EXPLAIN_QUERY_LENGTH} chars)",
        )
    return QueryValidation(valid=True)


async def analyze_query(
    query: str,
    *,
    schema_name: str | None = None,
    sql_runner: SqlRunner | None = None,
) -> Any:
    # EXPLAIN without ANALYZE plans the statement but never executes it.
    if schema_name is not None:
        require_schema_name(schema_name)
    validation = validate_query_for_explain(query)
    if not validation.valid:
        raise QueryValidationError(f"Query validation failed: {validation.error}")

    runner = sql_runner or get_sql_runner()
    async with runner.transaction(schema_name or "public", commit=False) as tx:
        rows = await tx.fetch_all(f"EXPLAIN (FORMAT JSON, ANALYZE false) {query}")
    if not rows:
        return {}
    plan = rows[0].get("QUERY PLAN", {})
    if isinstance(plan, str):
        plan = json.loads(plan)
    return plan


def normalize_query(query: str) -> str:
    # Strip literals and parameters so repeated statements group together.
    normalized = re.sub(r"\$\d+", "?", query)
    normalized = re.sub(r"'[^']*'", "'?'", normalized)
    normalized = re.sub(r"\b\d+\b", "?", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return normalized[:MAX_NORMALIZED_QUERY_LENGTH]


async def log_slow_query(
    session: AsyncSession,
    *,
    query: str,
    execution_time_ms: int,
    tenant_id: str | None = None,
    schema_name: str | None = None,
    user_id: str | None = None,
) -> SlowQueryLog:
    entry = SlowQueryLog(
        id=str(uuid4()),
        tenant_id=tenant_id,
        schema_name=schema_name,
        query=query[:MAX_LOGGED_QUERY_LENGTH],
        normalized_query=normalize_query(query),
        execution_time_ms=int(execution_time_ms),
        user_id=user_id,
        recorded_at=_utc_now(),
    )
    session.add(entry)
    await session.commit()
    return entry


async def get_slow_queries(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    limit: int = 50,
    min_execution_time_ms: int | None = None,
    group_by_query: bool = False,
) -> list[SlowQueryLog] | list[SlowQueryGroup]:
    threshold = (
        min_execution_time_ms
        if min_execution_time_ms is not None
        else get_settings().slow_query_threshold_ms
    )
    filters = [SlowQueryLog.execution_time_ms >= threshold]
    if tenant_id:
        filters.append(SlowQueryLog.tenant_id == tenant_id)

    if group_by_query:
        count_column = func.count().label("count")
        rows = await session.execute(
            select(
                SlowQueryLog.normalized_query,
                count_column,
                func.avg(SlowQueryLog.execution_time_ms).label("avg_time"),
            )
            .where(*filters)
            .group_by(SlowQueryLog.normalized_query)
            .order_by(count_column.desc())
            .limit(limit)
        )
        return [
            SlowQueryGroup(query=query, count=int(count), avg_time_ms=float(avg_time or 0))
            for query, count, avg_time in rows.all()
        ]

    result = await session.execute(
        select(SlowQueryLog)
        .where(*filters)
        .order_by(SlowQueryLog.execution_time_ms.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_recent_slow_queries(session: AsyncSession, *, window: timedelta = timedelta(hours=1)) -> int:
    count = await session.scalar(
        select(func.count())
        .select_from(SlowQueryLog)
        .where(SlowQueryLog.recorded_at >= _utc_now() - window)
    )
    return int(count or 0)


async def get_connection_stats(session: AsyncSession) -> ConnectionStats:
    row = (
        await session.execute(
            text(
                "SELECT count(*) AS total, "
                "count(*) FILTER (WHERE state = 'active') AS active, "
                "count(*) FILTER (WHERE state = 'idle') AS idle, "
                "count(*) FILTER (WHERE wait_event IS NOT NULL AND state != 'idle') AS waiting "
                "FROM pg_stat_activity WHERE datname = current_database()"
            )
        )
    ).mappings().one()
    max_connections = int(
        (await session.execute(text("SHOW max_connections"))).scalar_one() or 100
    )
    total = int(row["total"] or 0)
    return ConnectionStats(
        total=total,
        active=int(row["active"] or 0),
        idle=int(row["idle"] or 0),
        waiting=int(row["waiting"] or 0),
        max_connections=max_connections,
        utilization_percent=(total / max_connections) * 100 if max_connections else 0.0,
    )


async def get_cache_hit_ratio(session: AsyncSession) -> float:
    ratio = await session.scalar(
        text(
            "SELECT sum(heap_blks_hit) / NULLIF(sum(heap_blks_hit) + sum(heap_blks_read), 0) "
            "FROM pg_statio_user_tables"
        )
    )
    return float(ratio or 0) * 100


async def get_query_performance_stats(session: AsyncSession) -> QueryPerformanceStats:
    settings = get_settings()
    cache_hit_ratio = await get_cache_hit_ratio(session)
    has_statements = await session.scalar(
        text("SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'pg_stat_statements')")
    )
    if not has_statements:
        # Fall back to our own slow query log when pg_stat_statements is not installed.
        slow = await session.scalar(select(func.count()).select_from(SlowQueryLog))
        return QueryPerformanceStats(
            total_queries=0,
            avg_execution_time_ms=0.0,
            slow_queries=int(slow or 0),
            cache_hit_ratio=cache_hit_ratio,
            queries_per_second=0.0,
        )
    row = (
        await session.execute(
            text(
                "SELECT sum(calls) AS total_queries, avg(mean_exec_time) AS avg_time, "
                "count(*) FILTER (WHERE mean_exec_time > :threshold) AS slow_queries "
                "FROM pg_stat_statements"
            ),
            {"threshold": settings.slow_query_threshold_ms},
        )
    ).mappings().one()
    reset_seconds = await session.scalar(
        text(
            "SELECT GREATEST(EXTRACT(epoch FROM (now() - stats_reset)), 1) "
            "FROM pg_stat_statements_info"
        )
    )
    total_queries = int(row["total_queries"] or 0)
    return QueryPerformanceStats(
        total_queries=total_queries,
        avg_execution_time_ms=float(row["avg_time"] or 0),
        slow_queries=int(row["slow_queries"] or 0),
        cache_hit_ratio=cache_hit_ratio,
        queries_per_second=total_queries / float(reset_seconds or 1),
    )


_SCHEMA_SIZE_SQL = (
    "SELECT "
    "COALESCE(SUM(pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename))), 0) AS total_size, "
    "COALESCE(SUM(pg_table_size(quote_ident(schemaname) || '.' || quote_ident(tablename))), 0) AS data_size, "
    "COALESCE(SUM(pg_indexes_size(quote_ident(schemaname) || '.' || quote_ident(tablename))), 0) AS index_size, "
    "count(*) AS table_count "
    "FROM pg_tables WHERE schemaname = :schema"
)


async def get_storage_by_tenant(session: AsyncSession) -> list[TenantStorage]:
    results: list[TenantStorage] = []
    for schema in await list_tenant_schemas(session):
        row = (
            await session.execute(text(_SCHEMA_SIZE_SQL), {"schema": schema.schema_name})
        ).mappings().one()
        results.append(
            TenantStorage(
                tenant_id=schema.tenant_id,
                schema_name=schema.schema_name,
                total_size_bytes=int(row["total_size"] or 0),
                data_size_bytes=int(row["data_size"] or 0),
                index_size_bytes=int(row["index_size"] or 0),
                table_count=int(row["table_count"] or 0),
            )
        )
    return results


async def get_total_storage(session: AsyncSession) -> StorageTotals:
    total = await session.scalar(text("SELECT pg_database_size(current_database())"))
    row = (
        await session.execute(
            text(
                "SELECT "
                "COALESCE(SUM(pg_table_size(quote_ident(schemaname) || '.' || quote_ident(tablename))), 0) AS data_size, "
                "COALESCE(SUM(pg_indexes_size(quote_ident(schemaname) || '.' || quote_ident(tablename))), 0) AS index_size "
                "FROM pg_tables WHERE schemaname NOT IN ('pg_catalog', 'information_schema')"
            )
        )
    ).mappings().one()
    return StorageTotals(
        total_size_bytes=int(total or 0),
        data_size_bytes=int(row["data_size"] or 0),
        index_size_bytes=int(row["index_size"] or 0),
    )


async def _suggest_index_columns(session: AsyncSession, schema_name: str, table_name: str) -> list[str]:
    # Foreign-key-like, timestamp, and status columns are the usual filter targets.
    result = await session.execute(
        text(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = :schema AND table_name = :table "
            "AND (column_name LIKE '%\\_id' OR column_name LIKE '%\\_at' OR column_name = 'status') "
            "ORDER BY ordinal_position LIMIT 3"
        ),
        {"schema": schema_name, "table": table_name},
    )
    return [str(value) for value in result.scalars().all()]


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


async def get_index_recommendations(
    session: AsyncSession, *, schema_name: str | None = None
) -> list[IndexRecommendation]:
    if schema_name is not None:
        require_schema_name(schema_name)
    schema_filter = "AND schemaname = :schema " if schema_name else ""
    params = {"schema": schema_name} if schema_name else {}

    recommendations: list[IndexRecommendation] = []
    seq_scans = await session.execute(
        text(
            "SELECT schemaname, relname AS table_name, seq_scan, idx_scan, n_live_tup AS row_count "
            "FROM pg_stat_user_tables "
            "WHERE seq_scan > COALESCE(idx_scan, 0) * 2 AND n_live_tup > 1000 "
            f"{schema_filter}"
            "ORDER BY seq_scan DESC LIMIT 10"
        ),
        params,
    )
    for table in seq_scans.mappings().all():
        columns = await _suggest_index_columns(session, table["schemaname"], table["table_name"])
        if not columns:
            continue
        row_count = int(table["row_count"] or 0)
        quoted_columns = ", ".join(_quote_identifier(column) for column in columns)
        recommendations.append(
            IndexRecommendation(
                table_name=f"{table['schemaname']}.{table['table_name']}",
                columns=columns,
                index_type="btree",
                reason=f"High sequential scan count ({table['seq_scan']}) with {row_count} rows",
                estimated_impact="high" if row_count > 10000 else "medium",
                statement=(
                    f"CREATE INDEX {_quote_identifier('idx_' + table['table_name'] + '_' + '_'.join(columns))} "
                    f"ON {_quote_identifier(table['schemaname'])}.{_quote_identifier(table['table_name'])} "
                    f"({quoted_columns})"
                ),
            )
        )

    unused = await session.execute(
        text(
            "SELECT schemaname, relname AS table_name, indexrelname AS index_name, "
            "pg_size_pretty(pg_relation_size(indexrelid)) AS index_size "
            "FROM pg_stat_user_indexes "
            "WHERE idx_scan = 0 AND schemaname NOT IN ('pg_catalog', 'information_schema') "
            f"{schema_filter}"
            "ORDER BY pg_relation_size(indexrelid) DESC LIMIT 10"
        ),
        params,
    )
    for index in unused.mappings().all():
        recommendations.append(
            IndexRecommendation(
                table_name=f"{index['schemaname']}.{index['table_name']}",
                columns=[],
                index_type="btree",
                reason=f"Unused index \"{index['index_name']}\" ({index['index_size']})",
                estimated_impact="low",
                statement=(
                    f"DROP INDEX IF EXISTS {_quote_identifier(index['schemaname'])}."
                    f"{_quote_identifier(index['index_name'])}"
                ),
            )
        )
    return recommendations


def score_health(
    *,
    connection_utilization: float,
    cache_hit_ratio: float,
    recent_slow_queries: int,
) -> DatabaseHealth:
    """Score database health from 0 to 100.

    ``connection_utilization`` is a fraction (0.0-1.0); ``cache_hit_ratio`` is a
    percentage. Each degraded signal subtracts a fixed penalty and adds an
    operator recommendation.
    """
    score = 100
    checks: list[HealthCheck] = []
    recommendations: list[str] = []
    utilization_label = f"{connection_utilization * 100:.1f}%"

    if connection_utilization >= CONNECTION_CRITICAL_THRESHOLD:
        checks.append(
            HealthCheck(
                name="Connection Pool",
                status="fail",
                value=utilization_label,
                threshold=f"{CONNECTION_CRITICAL_THRESHOLD * 100:.0f}%",
                message="Connection pool nearly exhausted",
            )
        )
        score -= 30
    elif connection_utilization >= CONNECTION_WARNING_THRESHOLD:
        checks.append(
            HealthCheck(
                name="Connection Pool",
                status="warn",
                value=utilization_label,
                threshold=f"{CONNECTION_WARNING_THRESHOLD * 100:.0f}%",
                message="Connection pool usage high",
            )
        )
        score -= 10
    else:
        checks.append(
            HealthCheck(
                name="Connection Pool",
                status="pass",
                value=utilization_label,
                message="Connection pool healthy",
            )
        )
    if connection_utilization >= CONNECTION_WARNING_THRESHOLD:
        recommendations.append("Consider increasing max_connections or using connection pooling")

    if cache_hit_ratio < CACHE_HIT_WARNING_PERCENT:
        checks.append(
            HealthCheck(
                name="Cache Hit Ratio",
                status="warn",
                value=f"{cache_hit_ratio:.1f}%",
                threshold=f"{CACHE_HIT_WARNING_PERCENT:.0f}%",
                message="Low cache hit ratio - consider increasing shared_buffers",
            )
        )
        recommendations.append("Review and optimize frequently accessed queries")
        score -= 10
    else:
        checks.append(
            HealthCheck(
                name="Cache Hit Ratio",
                status="pass",
                value=f"{cache_hit_ratio:.1f}%",
                message="Cache performing well",
            )
        )

    if recent_slow_queries > SLOW_QUERY_CRITICAL_COUNT:
        checks.append(
            HealthCheck(
                name="Slow Queries",
                status="fail",
                value=str(recent_slow_queries),
                threshold=str(SLOW_QUERY_CRITICAL_COUNT),
                message="High number of slow queries in last hour",
            )
        )
        score -= 20
    elif recent_slow_queries > SLOW_QUERY_WARNING_COUNT:
        checks.append(
            HealthCheck(
                name="Slow Queries",
                status="warn",
                value=str(recent_slow_queries),
                threshold=str(SLOW_QUERY_WARNING_COUNT),
                message="Elevated slow query count",
            )
        )
        score -= 5
    else:
        checks.append(
            HealthCheck(
                name="Slow Queries",
                status="pass",
                value=str(recent_slow_queries),
                message="Query performance normal",
            )
        )
    if recent_slow_queries > SLOW_QUERY_WARNING_COUNT:
        recommendations.append("Review slow queries and add appropriate indexes")

    score = max(0, score)
    if score >= 80:
        status = HEALTH_HEALTHY
    elif score >= 50:
        status = HEALTH_WARNING
    else:
        status = HEALTH_CRITICAL
    return DatabaseHealth(status=status, score=score, checks=checks, recommendations=recommendations)


async def get_database_health(session: AsyncSession) -> DatabaseHealth:
    connections = await get_connection_stats(session)
    cache_hit_ratio = await get_cache_hit_ratio(session)
    recent_slow = await count_recent_slow_queries(session)
    return score_health(
        connection_utilization=connections.utilization_percent / 100,
        cache_hit_ratio=cache_hit_ratio,
        recent_slow_queries=recent_slow,
    )


async def get_metrics_history(
    session: AsyncSession,
    *,
    hours: int = 24,
    tenant_id: str | None = None,
    metric_type: str = "system",
) -> list[DatabaseMetric]:
    since = _utc_now() - timedelta(hours=hours)
    statement = select(DatabaseMetric).where(
        DatabaseMetric.metric_type == metric_type,
        DatabaseMetric.recorded_at >= since,
    )
    if tenant_id:
        statement = statement.where(DatabaseMetric.tenant_id == tenant_id)
    result = await session.execute(statement.order_by(DatabaseMetric.recorded_at.asc()))
    return list(result.scalars().all())


async def refresh_tenant_stats(session: AsyncSession) -> int:
    # Copy catalog sizes onto tenant rows; values are informational only.
    refreshed = 0
    result = await session.execute(
        select(TenantSchema).where(TenantSchema.status == TENANT_STATUS_ACTIVE)
    )
    for schema in result.scalars().all():
        if not is_valid_schema_name(schema.schema_name):
            logger.warning("tenant_stats_skipped tenant=%s reason=invalid_schema_name", schema.tenant_id)
            continue
        sizes = (
            await session.execute(text(_SCHEMA_SIZE_SQL), {"schema": schema.schema_name})
        ).mappings().one()
        rows = await session.scalar(
            text(
                "SELECT COALESCE(SUM(n_live_tup), 0) FROM pg_stat_user_tables WHERE schemaname = :schema"
            ),
            {"schema": schema.schema_name},
        )
        schema.table_count = int(sizes["table_count"] or 0)
        schema.size_bytes = int(sizes["total_size"] or 0)
        schema.total_rows = int(rows or 0)
        schema.updated_at = _utc_now()
        refreshed += 1
    await session.commit()
    return refreshed
