from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.apps.api.deps import get_db, get_transport
from aquaschema.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from aquaschema.apps.api.response import PageResponse, SuccessEnvelope, success_response
from aquaschema.services import backup as backup_service
from aquaschema.services.backup_transport import BackupTransport


router = APIRouter(
    prefix="/admin/db/backups",
    tags=["backups"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class BackupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    schema_name: str
    backup_type: str
    status: str
    file_name: str
    file_path: str
    is_compressed: bool
    is_encrypted: bool
    size_bytes: int | None
    checksum: str | None
    retention_days: int
    expires_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    metadata_json: dict[str, Any] | None
    created_at: datetime


class RestoreResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    backup_id: str
    tenant_id: str | None
    target_schema_name: str
    status: str
    is_point_in_time: bool
    point_in_time_target: datetime | None
    restored_tables: list[str] | None
    started_at: datetime | None
    completed_at: datetime | None
    execution_time_ms: int | None
    error_message: str | None


class BackupSummaryResponse(BaseModel):
    total_backups: int
    completed_backups: int
    failed_backups: int
    total_size_bytes: int
    avg_size_bytes: int
    oldest_backup: datetime | None
    newest_backup: datetime | None
    tenants_with_backup: int
    tenants_without_backup: int


class BackupScheduleResponse(BaseModel):
    daily_backup_enabled: bool
    weekly_backup_enabled: bool
    next_daily_backup: datetime
    next_weekly_backup: datetime
    last_daily_backup: datetime | None
    last_weekly_backup: datetime | None


class CreateBackupRequest(BaseModel):
    tenant_id: str | None = None
    backup_type: Literal["full", "incremental"] = "full"
    compress: bool = True
    encrypt: bool = False
    retention_days: int | None = Field(default=None, ge=1, le=3650)
    exclude_tables: list[str] = Field(default_factory=list)


class RestoreRequest(BaseModel):
    target_schema_name: str | None = None
    point_in_time: datetime | None = None
    tables_to_restore: list[str] | None = None
    skip_validation: bool = False


class PointInTimeRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    target_time: datetime


@router.post("", response_model=SuccessEnvelope[BackupResponse])
async def create_backup(
    payload: CreateBackupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    transport: BackupTransport = Depends(get_transport),
) -> dict[str, Any]:
    # A failed capture still returns 200 with the failed record.
    backup = await backup_service.create_backup(
        db,
        tenant_id=payload.tenant_id,
        backup_type=payload.backup_type,
        compress=payload.compress,
        encrypt=payload.encrypt,
        retention_days=payload.retention_days,
        exclude_tables=payload.exclude_tables,
        transport=transport,
    )
    return success_response(request=request, data=BackupResponse.model_validate(backup))


@router.get("", response_model=SuccessEnvelope[PageResponse[BackupResponse]])
async def list_backups(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: str | None = Query(default=None),
    backup_type: str | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await backup_service.list_backups(
        db,
        page=page,
        limit=limit,
        status=status,
        backup_type=backup_type,
        tenant_id=tenant_id,
    )
    payload = PageResponse[BackupResponse](
        items=[BackupResponse.model_validate(row) for row in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )
    return success_response(request=request, data=payload)


@router.get("/summary", response_model=SuccessEnvelope[BackupSummaryResponse])
async def get_backup_summary(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    summary = await backup_service.get_backup_summary(db)
    return success_response(request=request, data=summary)


@router.get("/schedule", response_model=SuccessEnvelope[BackupScheduleResponse])
async def get_backup_schedule(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    schedule = await backup_service.get_backup_schedule_status(db)
    return success_response(request=request, data=schedule)


@router.post("/point-in-time", response_model=SuccessEnvelope[RestoreResponse])
async def point_in_time_recovery(
    payload: PointInTimeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    transport: BackupTransport = Depends(get_transport),
) -> dict[str, Any]:
    restore = await backup_service.point_in_time_recovery(
        db,
        tenant_id=payload.tenant_id,
        target_time=payload.target_time,
        transport=transport,
    )
    return success_response(request=request, data=RestoreResponse.model_validate(restore))


@router.get("/restores/{restore_id}", response_model=SuccessEnvelope[RestoreResponse])
async def get_restore(
    restore_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    restore = await backup_service.get_restore(db, restore_id)
    return success_response(request=request, data=RestoreResponse.model_validate(restore))


@router.get("/tenants/{tenant_id}", response_model=SuccessEnvelope[list[BackupResponse]])
async def list_tenant_backups(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await backup_service.list_backups_for_tenant(db, tenant_id)
    return success_response(
        request=request, data=[BackupResponse.model_validate(row) for row in rows]
    )


@router.get("/tenants/{tenant_id}/restores", response_model=SuccessEnvelope[list[RestoreResponse]])
async def list_tenant_restores(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await backup_service.get_restore_history(db, tenant_id)
    return success_response(
        request=request, data=[RestoreResponse.model_validate(row) for row in rows]
    )


@router.get("/{backup_id}", response_model=SuccessEnvelope[BackupResponse])
async def get_backup(
    backup_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    backup = await backup_service.get_backup(db, backup_id)
    return success_response(request=request, data=BackupResponse.model_validate(backup))


@router.delete("/{backup_id}", response_model=SuccessEnvelope[dict[str, str]])
async def delete_backup(
    backup_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await backup_service.delete_backup(db, backup_id)
    return success_response(request=request, data={"id": backup_id, "status": "deleted"})


@router.post("/{backup_id}/restore", response_model=SuccessEnvelope[RestoreResponse])
async def restore_backup(
    backup_id: str,
    payload: RestoreRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    transport: BackupTransport = Depends(get_transport),
) -> dict[str, Any]:
    restore = await backup_service.restore_from_backup(
        db,
        backup_id=backup_id,
        target_schema_name=payload.target_schema_name,
        point_in_time=payload.point_in_time,
        tables_to_restore=payload.tables_to_restore,
        skip_validation=payload.skip_validation,
        transport=transport,
    )
    return success_response(request=request, data=RestoreResponse.model_validate(restore))
