from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
import logging
from typing import Literal
from uuid import uuid4

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.core.config import get_settings
from aquaschema.domain.models import (
    BACKUP_STATUS_COMPLETED,
    BACKUP_STATUS_EXPIRED,
    DatabaseMetric,
    SchemaBackup,
    SlowQueryLog,
)
from aquaschema.services import monitoring
from aquaschema.services.backup import BackupType, create_backup
from aquaschema.services.backup_transport import BackupTransport
from aquaschema.services.tenants import list_active_tenant_schemas


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "backup_daily",
    "backup_weekly",
    "backup_cleanup_expired",
    "metrics_collect",
    "metrics_cleanup",
]


async def _backup_active_tenants(
    session: AsyncSession,
    *,
    backup_type: BackupType,
    retention_days: int,
    transport: BackupTransport | None,
) -> int:
    # One tenant failing never stops the sweep; failures are logged and the loop continues.
    tenant_ids = [tenant.tenant_id for tenant in await list_active_tenant_schemas(session)]
    completed = 0
    for tenant_id in tenant_ids:
        try:
            backup = await create_backup(
                session,
                tenant_id=tenant_id,
                backup_type=backup_type,
                retention_days=retention_days,
                transport=transport,
            )
        except Exception as exc:  # noqa: BLE001 - scheduled sweeps skip broken tenants
            await session.rollback()
            logger.warning(
                "scheduled_backup_error tenant=%s type=%s error=%s",
                tenant_id,
                backup_type,
                exc,
            )
            continue
        if backup.status == BACKUP_STATUS_COMPLETED:
            completed += 1
        else:
            logger.warning(
                "scheduled_backup_failed tenant=%s type=%s error=%s",
                tenant_id,
                backup_type,
                backup.error_message,
            )
    logger.info(
        "scheduled_backups_finished type=%s tenants=%s completed=%s",
        backup_type,
        len(tenant_ids),
        completed,
    )
    return completed


async def run_daily_backups(session: AsyncSession, *, transport: BackupTransport | None = None) -> int:
    # Incremental backups with a short retention window for every active tenant.
    settings = get_settings()
    if not settings.backup_enabled:
        return 0
    return await _backup_active_tenants(
        session,
        backup_type="incremental",
        retention_days=settings.daily_backup_retention_days,
        transport=transport,
    )


async def run_weekly_backups(session: AsyncSession, *, transport: BackupTransport | None = None) -> int:
    # Full backups kept for the long retention window.
    settings = get_settings()
    if not settings.backup_enabled:
        return 0
    return await _backup_active_tenants(
        session,
        backup_type="full",
        retention_days=settings.weekly_backup_retention_days,
        transport=transport,
    )


async def cleanup_expired_backups(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Metadata only: completed backups past their expiry flip to expired.
    settings = get_settings()
    if not settings.backup_enabled:
        return 0
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(SchemaBackup)
        .where(
            SchemaBackup.status == BACKUP_STATUS_COMPLETED,
            SchemaBackup.expires_at.is_not(None),
            SchemaBackup.expires_at < now,
        )
        .values(status=BACKUP_STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    expired = int(result.rowcount or 0)
    logger.info("expired_backups_marked count=%s", expired)
    return expired


async def collect_metrics(session: AsyncSession) -> DatabaseMetric | None:
    # Snapshot system-wide database metrics for the history endpoints.
    settings = get_settings()
    if not settings.monitoring_enabled:
        return None
    connections = await monitoring.get_connection_stats(session)
    performance = await monitoring.get_query_performance_stats(session)
    storage = await monitoring.get_total_storage(session)
    metric = DatabaseMetric(
        id=str(uuid4()),
        tenant_id=None,
        metric_type="system",
        metrics_json={
            "active_connections": connections.active,
            "idle_connections": connections.idle,
            "max_connections": connections.max_connections,
            "connection_utilization": connections.utilization_percent,
            **asdict(performance),
            **asdict(storage),
        },
        recorded_at=datetime.now(timezone.utc),
    )
    session.add(metric)
    await session.commit()
    logger.debug("metrics_collected metric_id=%s", metric.id)
    return metric


async def cleanup_old_metrics(session: AsyncSession, *, now: datetime | None = None) -> int:
    settings = get_settings()
    if not settings.monitoring_enabled:
        return 0
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.metrics_retention_days)
    metrics_deleted = await session.execute(delete(DatabaseMetric).where(DatabaseMetric.recorded_at < cutoff))
    slow_deleted = await session.execute(delete(SlowQueryLog).where(SlowQueryLog.recorded_at < cutoff))
    await session.commit()
    removed = int(metrics_deleted.rowcount or 0) + int(slow_deleted.rowcount or 0)
    logger.info("metrics_pruned count=%s", removed)
    return removed


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    # Dispatch by task name so CLI and worker entry points share one table.
    if task == "backup_daily":
        return await run_daily_backups(session)
    if task == "backup_weekly":
        return await run_weekly_backups(session)
    if task == "backup_cleanup_expired":
        return await cleanup_expired_backups(session)
    if task == "metrics_collect":
        return 1 if await collect_metrics(session) is not None else 0
    if task == "metrics_cleanup":
        return await cleanup_old_metrics(session)
    raise ValueError(f"Unknown maintenance task: {task}")
