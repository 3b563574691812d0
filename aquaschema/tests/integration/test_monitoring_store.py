from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from aquaschema.domain.models import DatabaseMetric
from aquaschema.services import monitoring
from aquaschema.services.monitoring import ConnectionStats


@pytest.mark.asyncio
async def test_log_slow_query_stores_normalized_form(session) -> None:
    entry = await monitoring.log_slow_query(
        session,
        query="SELECT * FROM orders WHERE id = 17",
        execution_time_ms=2300,
        tenant_id="acme",
        schema_name="tenant_acme",
        user_id="u-1",
    )
    assert entry.normalized_query == "SELECT * FROM orders WHERE id = ?"
    assert entry.recorded_at is not None


@pytest.mark.asyncio
async def test_slow_queries_respect_threshold_and_grouping(session) -> None:
    for query, elapsed in (
        ("SELECT * FROM orders WHERE id = 1", 1500),
        ("SELECT * FROM orders WHERE id = 2", 3000),
        ("SELECT * FROM users WHERE id = 3", 400),
    ):
        await monitoring.log_slow_query(session, query=query, execution_time_ms=elapsed, tenant_id="acme")
    await monitoring.log_slow_query(session, query="SELECT 1", execution_time_ms=9000, tenant_id="globex")

    default = await monitoring.get_slow_queries(session, tenant_id="acme")
    assert [entry.execution_time_ms for entry in default] == [3000, 1500]

    everything = await monitoring.get_slow_queries(session, tenant_id="acme", min_execution_time_ms=0)
    assert len(everything) == 3

    grouped = await monitoring.get_slow_queries(session, tenant_id="acme", group_by_query=True)
    assert len(grouped) == 1
    assert grouped[0].query == "SELECT * FROM orders WHERE id = ?"
    assert grouped[0].count == 2
    assert grouped[0].avg_time_ms == 2250.0


@pytest.mark.asyncio
async def test_recent_slow_query_count_uses_last_hour(session) -> None:
    old = await monitoring.log_slow_query(session, query="SELECT 1", execution_time_ms=5000)
    old.recorded_at = datetime.now(timezone.utc) - timedelta(hours=3)
    await session.commit()
    await monitoring.log_slow_query(session, query="SELECT 2", execution_time_ms=5000)

    assert await monitoring.count_recent_slow_queries(session) == 1


@pytest.mark.asyncio
async def test_database_health_combines_live_signals(session, monkeypatch) -> None:
    async def _connections(_session):
        return ConnectionStats(total=95, active=90, idle=5, waiting=0, max_connections=100, utilization_percent=95.0)

    async def _cache_ratio(_session):
        return 99.0

    monkeypatch.setattr(monitoring, "get_connection_stats", _connections)
    monkeypatch.setattr(monitoring, "get_cache_hit_ratio", _cache_ratio)

    health = await monitoring.get_database_health(session)

    assert health.score == 70
    assert health.status == "warning"


@pytest.mark.asyncio
async def test_metrics_history_window(session) -> None:
    now = datetime.now(timezone.utc)
    for hours_ago, metric_type, tenant_id in ((1, "system", None), (30, "system", None), (2, "tenant", "acme")):
        session.add(
            DatabaseMetric(
                id=str(uuid4()),
                tenant_id=tenant_id,
                metric_type=metric_type,
                metrics_json={"hours_ago": hours_ago},
                recorded_at=now - timedelta(hours=hours_ago),
            )
        )
    await session.commit()

    system = await monitoring.get_metrics_history(session)
    assert [metric.metrics_json["hours_ago"] for metric in system] == [1]

    week = await monitoring.get_metrics_history(session, hours=48)
    assert [metric.metrics_json["hours_ago"] for metric in week] == [30, 1]

    tenant = await monitoring.get_metrics_history(session, metric_type="tenant", tenant_id="acme")
    assert len(tenant) == 1
