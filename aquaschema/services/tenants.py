from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.core.errors import InvalidStateError, NotFoundError
from aquaschema.domain.models import (
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_MIGRATING,
    TenantSchema,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def find_tenant_schema(session: AsyncSession, tenant_id: str) -> TenantSchema | None:
    result = await session.execute(select(TenantSchema).where(TenantSchema.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_schema(session: AsyncSession, tenant_id: str) -> TenantSchema:
    # Resolve a tenant to its schema row or fail with a not-found signal.
    schema = await find_tenant_schema(session, tenant_id)
    if schema is None:
        raise NotFoundError(f"Schema not found for tenant: {tenant_id}")
    return schema


async def list_tenant_schemas(session: AsyncSession) -> list[TenantSchema]:
    result = await session.execute(select(TenantSchema).order_by(TenantSchema.created_at.desc()))
    return list(result.scalars().all())


async def list_active_tenant_schemas(session: AsyncSession) -> list[TenantSchema]:
    # Order by tenant id so batch runs and sweeps visit tenants deterministically.
    result = await session.execute(
        select(TenantSchema)
        .where(TenantSchema.status == TENANT_STATUS_ACTIVE)
        .order_by(TenantSchema.tenant_id)
    )
    return list(result.scalars().all())


async def acquire_migration_lease(session: AsyncSession, schema: TenantSchema) -> None:
    # Flip active -> migrating in one conditional update; losing the race means someone else holds it.
    tenant_id = schema.tenant_id
    result = await session.execute(
        update(TenantSchema)
        .where(
            TenantSchema.id == schema.id,
            TenantSchema.status == TENANT_STATUS_ACTIVE,
        )
        .values(status=TENANT_STATUS_MIGRATING, updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        await session.rollback()
        raise InvalidStateError(
            f"Tenant {tenant_id} is not active; a migration may already be in progress"
        )
    await session.commit()
    await session.refresh(schema)


async def release_migration_lease(
    session: AsyncSession,
    schema: TenantSchema,
    *,
    current_version: str | None = None,
    migrated_at: datetime | None = None,
) -> None:
    # Return the tenant to active, optionally advancing its version pointer.
    schema.status = TENANT_STATUS_ACTIVE
    schema.updated_at = _utc_now()
    if current_version is not None:
        schema.current_version = current_version
    if migrated_at is not None:
        schema.last_migration_at = migrated_at
    await session.commit()
