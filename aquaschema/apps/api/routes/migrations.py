from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.apps.api.deps import get_actor_id, get_db, get_registry, get_runner
from aquaschema.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from aquaschema.apps.api.response import PageResponse, SuccessEnvelope, success_response
from aquaschema.persistence.sql import SqlRunner
from aquaschema.services.migrations import batch, executor, history
from aquaschema.services.migrations.registry import MigrationRegistry


router = APIRouter(
    prefix="/admin/db/migrations",
    tags=["migrations"],
    responses=DEFAULT_ERROR_RESPONSES,
)

_VERSION_PATTERN = r"^[0-9A-Za-z][0-9A-Za-z.\-]{0,31}$"


class MigrationPlanResponse(BaseModel):
    id: str
    name: str
    version: str
    description: str
    up_script: str
    down_script: str
    affected_tables: list[str]
    estimated_duration_ms: int
    is_destructive: bool
    requires_downtime: bool


class MigrationResultResponse(BaseModel):
    migration_id: str
    tenant_id: str
    schema_name: str
    status: str
    execution_time_ms: int
    error: str | None = None


class MigrationRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    schema_name: str
    migration_name: str
    version: str
    direction: str
    status: str
    is_dry_run: bool
    executed_by: str | None
    started_at: datetime
    completed_at: datetime | None
    execution_time_ms: int | None
    affected_tables: list[str] | None
    error_message: str | None


class TenantMigrationStateResponse(BaseModel):
    tenant_id: str
    schema_name: str
    status: str
    migration_id: str | None = None
    error: str | None = None


class BatchStatusResponse(BaseModel):
    version: str
    total_tenants: int
    completed: int
    pending: int
    failed: int
    running: int
    tenants: list[TenantMigrationStateResponse]


class MigrationSummaryResponse(BaseModel):
    total_migrations: int
    by_status: dict[str, int]
    latest_version: str
    tenants_total: int
    tenants_up_to_date: int
    tenants_outdated: int


class RunMigrationRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    version: str = Field(pattern=_VERSION_PATTERN)
    dry_run: bool = False


class BatchMigrationRequest(BaseModel):
    version: str = Field(pattern=_VERSION_PATTERN)
    dry_run: bool = False


class RollbackMigrationRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    version: str = Field(pattern=_VERSION_PATTERN)


@router.get("", response_model=SuccessEnvelope[list[MigrationPlanResponse]])
async def list_available_migrations(
    request: Request,
    registry: MigrationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    return success_response(request=request, data=registry.list_available())


@router.get(
    "/tenants/{tenant_id}/pending",
    response_model=SuccessEnvelope[list[MigrationPlanResponse]],
)
async def list_pending_migrations(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: MigrationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    plans = await history.get_pending_migrations(db, tenant_id, registry=registry)
    return success_response(request=request, data=plans)


@router.post("/run", response_model=SuccessEnvelope[MigrationResultResponse])
async def run_migration(
    payload: RunMigrationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: MigrationRegistry = Depends(get_registry),
    runner: SqlRunner = Depends(get_runner),
    actor_id: str | None = Depends(get_actor_id),
) -> dict[str, Any]:
    # Failed executions are returned in the body; only precondition failures become errors.
    result = await executor.run_migration(
        db,
        tenant_id=payload.tenant_id,
        version=payload.version,
        dry_run=payload.dry_run,
        executed_by=actor_id,
        registry=registry,
        sql_runner=runner,
    )
    return success_response(request=request, data=result)


@router.post("/batch", response_model=SuccessEnvelope[list[MigrationResultResponse]])
async def run_batch_migration(
    payload: BatchMigrationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: MigrationRegistry = Depends(get_registry),
    runner: SqlRunner = Depends(get_runner),
    actor_id: str | None = Depends(get_actor_id),
) -> dict[str, Any]:
    registry.require(payload.version)
    results = await batch.run_batch_migration(
        db,
        version=payload.version,
        dry_run=payload.dry_run,
        executed_by=actor_id,
        registry=registry,
        sql_runner=runner,
    )
    return success_response(request=request, data=results)


@router.get("/batch/{version}/status", response_model=SuccessEnvelope[BatchStatusResponse])
async def get_batch_status(
    version: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    status = await batch.get_batch_migration_status(db, version)
    return success_response(request=request, data=status)


@router.post("/rollback", response_model=SuccessEnvelope[MigrationResultResponse])
async def rollback_migration(
    payload: RollbackMigrationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: MigrationRegistry = Depends(get_registry),
    runner: SqlRunner = Depends(get_runner),
    actor_id: str | None = Depends(get_actor_id),
) -> dict[str, Any]:
    result = await executor.rollback_migration(
        db,
        tenant_id=payload.tenant_id,
        version=payload.version,
        executed_by=actor_id,
        registry=registry,
        sql_runner=runner,
    )
    return success_response(request=request, data=result)


@router.get(
    "/tenants/{tenant_id}/history",
    response_model=SuccessEnvelope[list[MigrationRecordResponse]],
)
async def get_tenant_history(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await history.get_migration_history(db, tenant_id)
    return success_response(
        request=request,
        data=[MigrationRecordResponse.model_validate(row) for row in rows],
    )


@router.get("/history", response_model=SuccessEnvelope[PageResponse[MigrationRecordResponse]])
async def list_history(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: str | None = Query(default=None),
    version: str | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await history.list_migration_history(
        db,
        page=page,
        limit=limit,
        status=status,
        version=version,
        tenant_id=tenant_id,
    )
    payload = PageResponse[MigrationRecordResponse](
        items=[MigrationRecordResponse.model_validate(row) for row in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )
    return success_response(request=request, data=payload)


@router.get("/summary", response_model=SuccessEnvelope[MigrationSummaryResponse])
async def get_summary(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: MigrationRegistry = Depends(get_registry),
) -> dict[str, Any]:
    summary = await history.get_migration_summary(db, registry=registry)
    return success_response(request=request, data=summary)
