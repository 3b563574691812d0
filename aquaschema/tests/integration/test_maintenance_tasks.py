from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from aquaschema.domain.models import DatabaseMetric, SchemaBackup, SlowQueryLog
from aquaschema.services import backup as backup_service
from aquaschema.services import maintenance, monitoring
from aquaschema.services.monitoring import ConnectionStats, QueryPerformanceStats, StorageTotals
from aquaschema.tests.utils.fakes import FakeBackupTransport, add_tenant


@pytest.mark.asyncio
async def test_daily_backups_cover_active_tenants(session) -> None:
    await add_tenant(session, "acme")
    await add_tenant(session, "globex")
    await add_tenant(session, "initech", status="suspended")
    transport = FakeBackupTransport()

    completed = await maintenance.run_daily_backups(session, transport=transport)

    assert completed == 2
    assert [request.schema_name for request in transport.captured] == ["tenant_acme", "tenant_globex"]
    backups = (await session.execute(select(SchemaBackup))).scalars().all()
    assert {backup.backup_type for backup in backups} == {"incremental"}
    assert {backup.retention_days for backup in backups} == {7}


@pytest.mark.asyncio
async def test_weekly_sweep_survives_one_failing_tenant(session) -> None:
    await add_tenant(session, "acme")
    await add_tenant(session, "globex")
    transport = FakeBackupTransport(fail_schemas={"tenant_acme"})

    completed = await maintenance.run_weekly_backups(session, transport=transport)

    assert completed == 1
    statuses = {
        backup.tenant_id: (backup.status, backup.backup_type, backup.retention_days)
        for backup in (await session.execute(select(SchemaBackup))).scalars().all()
    }
    assert statuses == {
        "acme": ("failed", "full", 30),
        "globex": ("completed", "full", 30),
    }


@pytest.mark.asyncio
async def test_sweeps_are_disabled_with_backups(session, monkeypatch) -> None:
    monkeypatch.setenv("BACKUP_ENABLED", "false")
    await add_tenant(session, "acme")
    transport = FakeBackupTransport()
    assert await maintenance.run_daily_backups(session, transport=transport) == 0
    assert await maintenance.cleanup_expired_backups(session) == 0
    assert transport.captured == []


@pytest.mark.asyncio
async def test_expired_backups_are_marked_not_deleted(session) -> None:
    await add_tenant(session, "acme")
    completed = await backup_service.create_backup(
        session, tenant_id="acme", retention_days=1, transport=FakeBackupTransport()
    )
    failed = await backup_service.create_backup(
        session,
        tenant_id="acme",
        retention_days=1,
        transport=FakeBackupTransport(fail_capture=RuntimeError("boom")),
    )
    fresh = await backup_service.create_backup(
        session, tenant_id="acme", retention_days=30, transport=FakeBackupTransport()
    )

    expired = await maintenance.cleanup_expired_backups(session, now=completed.created_at + timedelta(days=2))

    assert expired == 1
    for backup in (completed, failed, fresh):
        await session.refresh(backup)
    assert completed.status == "expired"
    assert failed.status == "failed"
    assert fresh.status == "completed"
    assert await session.scalar(select(func.count()).select_from(SchemaBackup)) == 3


@pytest.mark.asyncio
async def test_collect_and_prune_metrics(session, monkeypatch) -> None:
    async def _connections(_session):
        return ConnectionStats(total=10, active=4, idle=6, waiting=0, max_connections=100, utilization_percent=10.0)

    async def _performance(_session):
        return QueryPerformanceStats(
            total_queries=500, avg_execution_time_ms=2.5, slow_queries=1, cache_hit_ratio=99.0, queries_per_second=3.2
        )

    async def _storage(_session):
        return StorageTotals(total_size_bytes=900, data_size_bytes=600, index_size_bytes=300)

    monkeypatch.setattr(monitoring, "get_connection_stats", _connections)
    monkeypatch.setattr(monitoring, "get_query_performance_stats", _performance)
    monkeypatch.setattr(monitoring, "get_total_storage", _storage)

    metric = await maintenance.collect_metrics(session)
    assert metric is not None
    assert metric.metrics_json["active_connections"] == 4
    assert metric.metrics_json["cache_hit_ratio"] == 99.0
    assert metric.metrics_json["total_size_bytes"] == 900

    now = datetime.now(timezone.utc)
    stale = await monitoring.log_slow_query(session, query="SELECT 1", execution_time_ms=5000)
    metric.recorded_at = now - timedelta(days=45)
    stale.recorded_at = now - timedelta(days=45)
    await session.commit()
    await monitoring.log_slow_query(session, query="SELECT 2", execution_time_ms=5000)

    removed = await maintenance.cleanup_old_metrics(session, now=now)

    assert removed == 2
    assert await session.scalar(select(func.count()).select_from(DatabaseMetric)) == 0
    assert await session.scalar(select(func.count()).select_from(SlowQueryLog)) == 1


@pytest.mark.asyncio
async def test_monitoring_disabled_skips_collection(session, monkeypatch) -> None:
    monkeypatch.setenv("MONITORING_ENABLED", "false")
    assert await maintenance.collect_metrics(session) is None
    assert await maintenance.run_maintenance_task(session, "metrics_collect") == 0
    assert await maintenance.run_maintenance_task(session, "metrics_cleanup") == 0


@pytest.mark.asyncio
async def test_unknown_task_is_rejected(session) -> None:
    with pytest.raises(ValueError):
        await maintenance.run_maintenance_task(session, "defragment")  # type: ignore[arg-type]
