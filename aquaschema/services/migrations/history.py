from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.domain.models import (
    MIGRATION_DIRECTION_UP,
    MIGRATION_STATUS_COMPLETED,
    SchemaMigration,
)
from aquaschema.services.migrations.registry import (
    MigrationPlan,
    MigrationRegistry,
    compare_versions,
    get_migration_registry,
)
from aquaschema.services.pagination import Page, paginate
from aquaschema.services.tenants import get_tenant_schema, list_active_tenant_schemas


@dataclass(frozen=True)
class MigrationSummary:
    total_migrations: int
    by_status: dict[str, int] = field(default_factory=dict)
    latest_version: str = "0.0.0"
    tenants_total: int = 0
    tenants_up_to_date: int = 0
    tenants_outdated: int = 0


async def list_applied_versions(session: AsyncSession, tenant_id: str) -> set[str]:
    result = await session.execute(
        select(SchemaMigration.version).where(
            SchemaMigration.tenant_id == tenant_id,
            SchemaMigration.status == MIGRATION_STATUS_COMPLETED,
            SchemaMigration.direction == MIGRATION_DIRECTION_UP,
            SchemaMigration.is_dry_run.is_(False),
        )
    )
    return set(result.scalars().all())


async def get_pending_migrations(
    session: AsyncSession,
    tenant_id: str,
    *,
    registry: MigrationRegistry | None = None,
) -> list[MigrationPlan]:
    # Registry order is preserved so operators can apply the list top to bottom.
    registry = registry or get_migration_registry()
    await get_tenant_schema(session, tenant_id)
    applied = await list_applied_versions(session, tenant_id)
    return [plan for plan in registry.list_available() if plan.version not in applied]


async def get_migration_history(session: AsyncSession, tenant_id: str) -> list[SchemaMigration]:
    result = await session.execute(
        select(SchemaMigration)
        .where(SchemaMigration.tenant_id == tenant_id)
        .order_by(SchemaMigration.started_at.desc(), SchemaMigration.created_at.desc())
    )
    return list(result.scalars().all())


async def list_migration_history(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    version: str | None = None,
    tenant_id: str | None = None,
) -> Page[SchemaMigration]:
    statement = select(SchemaMigration)
    if status:
        statement = statement.where(SchemaMigration.status == status)
    if version:
        statement = statement.where(SchemaMigration.version == version)
    if tenant_id:
        statement = statement.where(SchemaMigration.tenant_id == tenant_id)
    statement = statement.order_by(SchemaMigration.started_at.desc(), SchemaMigration.id)
    return await paginate(session, statement, page=page, limit=limit)


async def get_migration_summary(
    session: AsyncSession,
    *,
    registry: MigrationRegistry | None = None,
) -> MigrationSummary:
    registry = registry or get_migration_registry()
    rows = await session.execute(
        select(SchemaMigration.status, func.count()).group_by(SchemaMigration.status)
    )
    by_status = {status: int(count) for status, count in rows.all()}

    latest = registry.latest_version()
    tenants = await list_active_tenant_schemas(session)
    up_to_date = sum(
        1 for tenant in tenants if compare_versions(tenant.current_version, latest) >= 0
    )
    return MigrationSummary(
        total_migrations=sum(by_status.values()),
        by_status=by_status,
        latest_version=latest,
        tenants_total=len(tenants),
        tenants_up_to_date=up_to_date,
        tenants_outdated=len(tenants) - up_to_date,
    )
