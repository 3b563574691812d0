from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.domain.models import (
    MIGRATION_DIRECTION_UP,
    MIGRATION_STATUS_COMPLETED,
    MIGRATION_STATUS_FAILED,
    MIGRATION_STATUS_RUNNING,
    SchemaMigration,
)
from aquaschema.persistence.sql import SqlRunner
from aquaschema.services.migrations import executor
from aquaschema.services.migrations.registry import MigrationRegistry
from aquaschema.services.tenants import list_active_tenant_schemas


logger = logging.getLogger(__name__)

BATCH_STATUS_PENDING = "pending"


@dataclass(frozen=True)
class TenantMigrationState:
    tenant_id: str
    schema_name: str
    status: str
    migration_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchMigrationStatus:
    version: str
    total_tenants: int
    completed: int
    pending: int
    failed: int
    running: int
    tenants: list[TenantMigrationState] = field(default_factory=list)


async def run_batch_migration(
    session: AsyncSession,
    *,
    version: str,
    dry_run: bool = False,
    executed_by: str | None = None,
    registry: MigrationRegistry | None = None,
    sql_runner: SqlRunner | None = None,
) -> list[executor.MigrationResult]:
    """Apply ``version`` to every tenant that is active when the batch starts.

    Tenants run one after another. A tenant that raises is reported as a
    failed result and the loop moves on; tenants already migrated stay
    committed.
    """
    tenants = await list_active_tenant_schemas(session)
    # Snapshot identifiers up front; a failed tenant rolls the session back and expires loaded rows.
    targets = [(tenant.tenant_id, tenant.schema_name) for tenant in tenants]
    logger.info(
        "batch_migration_started version=%s tenants=%s dry_run=%s",
        version,
        len(targets),
        dry_run,
    )

    results: list[executor.MigrationResult] = []
    for tenant_id, schema_name in targets:
        try:
            result = await executor.run_migration(
                session,
                tenant_id=tenant_id,
                version=version,
                dry_run=dry_run,
                executed_by=executed_by,
                registry=registry,
                sql_runner=sql_runner,
            )
        except Exception as exc:  # noqa: BLE001 - one tenant must not stop the batch
            await session.rollback()
            logger.warning(
                "batch_migration_tenant_failed tenant=%s version=%s error=%s",
                tenant_id,
                version,
                exc,
            )
            result = executor.MigrationResult(
                migration_id="",
                tenant_id=tenant_id,
                schema_name=schema_name,
                status=MIGRATION_STATUS_FAILED,
                execution_time_ms=0,
                error=str(exc),
            )
        results.append(result)

    succeeded = sum(1 for result in results if result.succeeded)
    logger.info(
        "batch_migration_finished version=%s succeeded=%s failed=%s",
        version,
        succeeded,
        len(results) - succeeded,
    )
    return results


async def get_batch_migration_status(session: AsyncSession, version: str) -> BatchMigrationStatus:
    # Report the latest forward attempt per active tenant; tenants never attempted are pending.
    tenants = await list_active_tenant_schemas(session)
    result = await session.execute(
        select(SchemaMigration)
        .where(
            SchemaMigration.version == version,
            SchemaMigration.direction == MIGRATION_DIRECTION_UP,
            SchemaMigration.is_dry_run.is_(False),
        )
        .order_by(SchemaMigration.started_at.desc(), SchemaMigration.created_at.desc())
    )
    latest: dict[str, SchemaMigration] = {}
    for row in result.scalars().all():
        latest.setdefault(row.tenant_id, row)

    states: list[TenantMigrationState] = []
    for tenant in tenants:
        row = latest.get(tenant.tenant_id)
        if row is None:
            states.append(
                TenantMigrationState(
                    tenant_id=tenant.tenant_id,
                    schema_name=tenant.schema_name,
                    status=BATCH_STATUS_PENDING,
                )
            )
            continue
        # A rolled-back apply no longer counts; the tenant needs the version again.
        status = row.status
        if status not in {MIGRATION_STATUS_COMPLETED, MIGRATION_STATUS_FAILED, MIGRATION_STATUS_RUNNING}:
            status = BATCH_STATUS_PENDING
        states.append(
            TenantMigrationState(
                tenant_id=tenant.tenant_id,
                schema_name=tenant.schema_name,
                status=status,
                migration_id=row.id,
                error=row.error_message,
            )
        )

    def _count(status: str) -> int:
        return sum(1 for state in states if state.status == status)

    return BatchMigrationStatus(
        version=version,
        total_tenants=len(states),
        completed=_count(MIGRATION_STATUS_COMPLETED),
        pending=_count(BATCH_STATUS_PENDING),
        failed=_count(MIGRATION_STATUS_FAILED),
        running=_count(MIGRATION_STATUS_RUNNING),
        tenants=states,
    )
