from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Literal, Sequence
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.core.config import get_settings
from aquaschema.core.errors import ExecutionFailureError, InvalidStateError, NotFoundError
from aquaschema.domain.models import (
    BACKUP_STATUS_COMPLETED,
    BACKUP_STATUS_FAILED,
    BACKUP_STATUS_IN_PROGRESS,
    BACKUP_STATUS_PENDING,
    RESTORE_STATUS_COMPLETED,
    RESTORE_STATUS_FAILED,
    RESTORE_STATUS_IN_PROGRESS,
    RESTORE_STATUS_PENDING,
    TENANT_STATUS_ACTIVE,
    SchemaBackup,
    SchemaRestore,
    TenantSchema,
)
from aquaschema.persistence.guards import require_schema_name
from aquaschema.services.backup_transport import (
    BackupRequest,
    BackupTransport,
    get_backup_transport,
)
from aquaschema.services.pagination import Page, paginate
from aquaschema.services.tenants import get_tenant_schema


logger = logging.getLogger(__name__)

BackupType = Literal["full", "incremental"]
BACKUP_TYPES: tuple[str, ...] = ("full", "incremental")

# Whole-database backups (no tenant) capture the shared schema.
DEFAULT_SCHEMA_NAME = "public"

DAILY_BACKUP_HOUR_UTC = 2
WEEKLY_BACKUP_HOUR_UTC = 3
# datetime.weekday(): Monday is 0, Sunday is 6.
WEEKLY_BACKUP_WEEKDAY = 6


@dataclass(frozen=True)
class BackupSummary:
    total_backups: int
    completed_backups: int
    failed_backups: int
    total_size_bytes: int
    avg_size_bytes: int
    oldest_backup: datetime | None
    newest_backup: datetime | None
    tenants_with_backup: int
    tenants_without_backup: int


@dataclass(frozen=True)
class BackupScheduleStatus:
    daily_backup_enabled: bool
    weekly_backup_enabled: bool
    next_daily_backup: datetime
    next_weekly_backup: datetime
    last_daily_backup: datetime | None
    last_weekly_backup: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_backup_file_name(
    schema_name: str, backup_type: str, *, compress: bool, created_at: datetime
) -> str:
    # ISO timestamps carry ':' and '.', neither of which belongs in a file name.
    stamp = created_at.isoformat().replace(":", "-").replace(".", "-")
    extension = ".sql.gz" if compress else ".sql"
    return f"backup_{schema_name}_{backup_type}_{stamp}{extension}"


def build_backup_file_path(schema_name: str, file_name: str) -> str:
    base_path = get_settings().backup_base_path.rstrip("/")
    return f"{base_path}/{schema_name}/{file_name}"


async def create_backup(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    backup_type: BackupType = "full",
    compress: bool = True,
    encrypt: bool = False,
    retention_days: int | None = None,
    exclude_tables: Sequence[str] = (),
    transport: BackupTransport | None = None,
) -> SchemaBackup:
    """Capture one schema and record the attempt.

    Unknown tenants raise ``NotFoundError``. Once the record exists, capture
    errors never propagate: the record ends ``failed`` with the error message
    and is returned to the caller.
    """
    settings = get_settings()
    if backup_type not in BACKUP_TYPES:
        raise InvalidStateError(f"Unsupported backup type: {backup_type}")

    tenant: TenantSchema | None = None
    if tenant_id is not None:
        tenant = await get_tenant_schema(session, tenant_id)
        schema_name = tenant.schema_name
    else:
        schema_name = DEFAULT_SCHEMA_NAME
    require_schema_name(schema_name)

    retention = retention_days if retention_days is not None else settings.backup_retention_days
    now = _utc_now()
    file_name = build_backup_file_name(schema_name, backup_type, compress=compress, created_at=now)
    backup = SchemaBackup(
        id=str(uuid4()),
        tenant_id=tenant_id,
        schema_name=schema_name,
        backup_type=backup_type,
        status=BACKUP_STATUS_PENDING,
        file_name=file_name,
        file_path=build_backup_file_path(schema_name, file_name),
        is_compressed=compress,
        is_encrypted=encrypt,
        retention_days=retention,
        expires_at=now + timedelta(days=retention),
        created_at=now,
    )
    session.add(backup)
    await session.commit()

    backup.status = BACKUP_STATUS_IN_PROGRESS
    backup.started_at = _utc_now()
    await session.commit()
    logger.info(
        "backup_started backup_id=%s schema=%s type=%s",
        backup.id,
        schema_name,
        backup_type,
    )

    transport = transport or get_backup_transport()
    request = BackupRequest(
        backup_id=backup.id,
        schema_name=schema_name,
        backup_type=backup_type,
        file_name=file_name,
        file_path=backup.file_path,
        compress=compress,
        encrypt=encrypt,
        exclude_tables=tuple(exclude_tables),
    )
    try:
        capture = await transport.capture(request)
        if capture.size_bytes > settings.backup_max_size_bytes:
            raise ExecutionFailureError(
                f"Backup size {capture.size_bytes} exceeds limit {settings.backup_max_size_bytes}"
            )
    except Exception as exc:  # noqa: BLE001 - backup failures are surfaced via status/errors
        backup.status = BACKUP_STATUS_FAILED
        backup.error_message = str(exc)
        backup.completed_at = _utc_now()
        await session.commit()
        logger.warning("backup_failed backup_id=%s schema=%s error=%s", backup.id, schema_name, exc)
        return backup

    completed_at = _utc_now()
    metadata = dict(capture.metadata)
    if tenant is not None:
        metadata.setdefault("version", tenant.current_version)
    backup.status = BACKUP_STATUS_COMPLETED
    backup.size_bytes = capture.size_bytes
    backup.checksum = capture.checksum
    backup.metadata_json = metadata
    backup.completed_at = completed_at
    if tenant is not None:
        tenant.last_backup_at = completed_at
    await session.commit()
    logger.info(
        "backup_completed backup_id=%s schema=%s size_bytes=%s",
        backup.id,
        schema_name,
        capture.size_bytes,
    )
    return backup


async def get_backup(session: AsyncSession, backup_id: str) -> SchemaBackup:
    backup = await session.get(SchemaBackup, backup_id)
    if backup is None:
        raise NotFoundError(f"Backup not found: {backup_id}")
    return backup


async def list_backups_for_tenant(session: AsyncSession, tenant_id: str) -> list[SchemaBackup]:
    result = await session.execute(
        select(SchemaBackup)
        .where(SchemaBackup.tenant_id == tenant_id)
        .order_by(SchemaBackup.created_at.desc())
    )
    return list(result.scalars().all())


async def list_backups(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    backup_type: str | None = None,
    tenant_id: str | None = None,
) -> Page[SchemaBackup]:
    statement = select(SchemaBackup)
    if status:
        statement = statement.where(SchemaBackup.status == status)
    if backup_type:
        statement = statement.where(SchemaBackup.backup_type == backup_type)
    if tenant_id:
        statement = statement.where(SchemaBackup.tenant_id == tenant_id)
    statement = statement.order_by(SchemaBackup.created_at.desc(), SchemaBackup.id)
    return await paginate(session, statement, page=page, limit=limit)


async def delete_backup(session: AsyncSession, backup_id: str) -> None:
    # Removes the record only; artifact cleanup belongs to the storage lifecycle.
    await get_backup(session, backup_id)
    await session.execute(delete(SchemaBackup).where(SchemaBackup.id == backup_id))
    await session.commit()
    logger.info("backup_deleted backup_id=%s", backup_id)


async def _validate_backup_integrity(backup: SchemaBackup, transport: BackupTransport) -> list[str]:
    if not backup.checksum:
        return ["Backup checksum missing"]
    return await transport.verify(backup)


async def restore_from_backup(
    session: AsyncSession,
    *,
    backup_id: str,
    target_schema_name: str | None = None,
    point_in_time: datetime | None = None,
    tables_to_restore: list[str] | None = None,
    skip_validation: bool = False,
    transport: BackupTransport | None = None,
) -> SchemaRestore:
    """Restore a completed backup into its own schema or ``target_schema_name``.

    Incomplete backups and failed integrity checks raise ``InvalidStateError``
    before a restore record or transaction exists. Errors during the restore
    itself are recorded on the returned ``failed`` record.
    """
    backup = await get_backup(session, backup_id)
    if backup.status != BACKUP_STATUS_COMPLETED:
        raise InvalidStateError("Cannot restore from incomplete backup")
    target_schema = require_schema_name(target_schema_name or backup.schema_name)

    transport = transport or get_backup_transport()
    if not skip_validation:
        errors = await _validate_backup_integrity(backup, transport)
        if errors:
            raise InvalidStateError(
                "Backup integrity check failed", details={"errors": errors}
            )

    now = _utc_now()
    restore = SchemaRestore(
        id=str(uuid4()),
        backup_id=backup.id,
        tenant_id=backup.tenant_id,
        target_schema_name=target_schema,
        status=RESTORE_STATUS_PENDING,
        is_point_in_time=point_in_time is not None,
        point_in_time_target=point_in_time,
        created_at=now,
    )
    session.add(restore)
    await session.commit()

    restore.status = RESTORE_STATUS_IN_PROGRESS
    restore.started_at = _utc_now()
    await session.commit()
    logger.info(
        "restore_started restore_id=%s backup_id=%s target_schema=%s",
        restore.id,
        backup.id,
        target_schema,
    )

    started = time.monotonic()
    try:
        restored_tables = await transport.restore(
            backup,
            target_schema=target_schema,
            tables=list(tables_to_restore) if tables_to_restore is not None else None,
        )
    except Exception as exc:  # noqa: BLE001 - restore failures are surfaced via status/errors
        restore.status = RESTORE_STATUS_FAILED
        restore.error_message = str(exc)
        restore.completed_at = _utc_now()
        restore.execution_time_ms = int((time.monotonic() - started) * 1000)
        await session.commit()
        logger.warning("restore_failed restore_id=%s backup_id=%s error=%s", restore.id, backup.id, exc)
        return restore

    restore.status = RESTORE_STATUS_COMPLETED
    restore.restored_tables = restored_tables
    restore.completed_at = _utc_now()
    restore.execution_time_ms = int((time.monotonic() - started) * 1000)
    await session.commit()
    logger.info(
        "restore_completed restore_id=%s tables=%s elapsed_ms=%s",
        restore.id,
        len(restored_tables),
        restore.execution_time_ms,
    )
    return restore


async def point_in_time_recovery(
    session: AsyncSession,
    *,
    tenant_id: str,
    target_time: datetime,
    transport: BackupTransport | None = None,
) -> SchemaRestore:
    # Pick the newest completed backup strictly older than the target time.
    result = await session.execute(
        select(SchemaBackup)
        .where(
            SchemaBackup.tenant_id == tenant_id,
            SchemaBackup.status == BACKUP_STATUS_COMPLETED,
            SchemaBackup.created_at < target_time,
        )
        .order_by(SchemaBackup.created_at.desc())
        .limit(1)
    )
    backup = result.scalar_one_or_none()
    if backup is None:
        raise NotFoundError(f"No backup found before {target_time.isoformat()}")
    return await restore_from_backup(
        session,
        backup_id=backup.id,
        point_in_time=target_time,
        transport=transport,
    )


async def get_restore(session: AsyncSession, restore_id: str) -> SchemaRestore:
    restore = await session.get(SchemaRestore, restore_id)
    if restore is None:
        raise NotFoundError(f"Restore not found: {restore_id}")
    return restore


async def get_restore_history(session: AsyncSession, tenant_id: str) -> list[SchemaRestore]:
    result = await session.execute(
        select(SchemaRestore)
        .where(SchemaRestore.tenant_id == tenant_id)
        .order_by(SchemaRestore.created_at.desc())
    )
    return list(result.scalars().all())


async def get_backup_summary(session: AsyncSession) -> BackupSummary:
    totals = await session.execute(
        select(SchemaBackup.status, func.count()).group_by(SchemaBackup.status)
    )
    by_status = {status: int(count) for status, count in totals.all()}
    completed = (
        await session.execute(
            select(
                func.coalesce(func.sum(SchemaBackup.size_bytes), 0),
                func.min(SchemaBackup.created_at),
                func.max(SchemaBackup.created_at),
                func.count(func.distinct(SchemaBackup.tenant_id)),
            ).where(SchemaBackup.status == BACKUP_STATUS_COMPLETED)
        )
    ).one()
    total_size, oldest, newest, tenants_with_backup = completed
    completed_count = by_status.get(BACKUP_STATUS_COMPLETED, 0)
    active_tenants = await session.scalar(
        select(func.count()).select_from(TenantSchema).where(TenantSchema.status == TENANT_STATUS_ACTIVE)
    )
    return BackupSummary(
        total_backups=sum(by_status.values()),
        completed_backups=completed_count,
        failed_backups=by_status.get(BACKUP_STATUS_FAILED, 0),
        total_size_bytes=int(total_size or 0),
        avg_size_bytes=round(int(total_size or 0) / completed_count) if completed_count else 0,
        oldest_backup=oldest,
        newest_backup=newest,
        tenants_with_backup=int(tenants_with_backup or 0),
        tenants_without_backup=max(0, int(active_tenants or 0) - int(tenants_with_backup or 0)),
    )


def next_daily_backup(now: datetime) -> datetime:
    candidate = now.replace(hour=DAILY_BACKUP_HOUR_UTC, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_weekly_backup(now: datetime) -> datetime:
    days_ahead = (WEEKLY_BACKUP_WEEKDAY - now.weekday()) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(
        hour=WEEKLY_BACKUP_HOUR_UTC, minute=0, second=0, microsecond=0
    )
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


async def _latest_backup_time(session: AsyncSession, backup_type: str) -> datetime | None:
    return await session.scalar(
        select(func.max(SchemaBackup.created_at)).where(SchemaBackup.backup_type == backup_type)
    )


async def get_backup_schedule_status(
    session: AsyncSession, *, now: datetime | None = None
) -> BackupScheduleStatus:
    # Daily runs are incremental and weekly runs are full, both on fixed UTC slots.
    settings = get_settings()
    now = (now or _utc_now()).astimezone(timezone.utc)
    return BackupScheduleStatus(
        daily_backup_enabled=settings.backup_enabled,
        weekly_backup_enabled=settings.backup_enabled,
        next_daily_backup=next_daily_backup(now),
        next_weekly_backup=next_weekly_backup(now),
        last_daily_backup=await _latest_backup_time(session, "incremental"),
        last_weekly_backup=await _latest_backup_time(session, "full"),
    )

