from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from aquaschema.core.errors import InvalidSchemaNameError, InvalidStateError, NotFoundError
from aquaschema.domain.models import SchemaBackup, SchemaRestore
from aquaschema.services import backup as backup_service
from aquaschema.tests.utils.fakes import FakeBackupTransport, add_tenant


@pytest.mark.asyncio
async def test_create_backup_records_completed_capture(session) -> None:
    tenant = await add_tenant(session, "acme", current_version="1.2.0")
    transport = FakeBackupTransport()

    backup = await backup_service.create_backup(
        session, tenant_id="acme", exclude_tables=["orders"], transport=transport
    )

    assert backup.status == "completed"
    assert backup.schema_name == "tenant_acme"
    assert backup.size_bytes == 2048
    assert backup.checksum == "c0ffee"
    assert backup.metadata_json["tables"] == ["accounts"]
    assert backup.metadata_json["version"] == "1.2.0"
    assert backup.file_path == f"/backups/schemas/tenant_acme/{backup.file_name}"
    assert backup.file_name.endswith(".sql.gz")
    assert backup.expires_at - backup.created_at == timedelta(days=30)
    assert backup.started_at is not None and backup.completed_at is not None
    assert transport.captured[0].exclude_tables == ("orders",)
    assert tenant.last_backup_at == backup.completed_at


@pytest.mark.asyncio
async def test_create_backup_without_tenant_targets_shared_schema(session) -> None:
    backup = await backup_service.create_backup(
        session, backup_type="incremental", compress=False, retention_days=3, transport=FakeBackupTransport()
    )
    assert backup.tenant_id is None
    assert backup.schema_name == "public"
    assert backup.file_name.endswith(".sql")
    assert backup.retention_days == 3


@pytest.mark.asyncio
async def test_create_backup_preconditions_raise(session) -> None:
    await add_tenant(session, "broken", schema_name="bad;schema")
    with pytest.raises(NotFoundError):
        await backup_service.create_backup(session, tenant_id="ghost", transport=FakeBackupTransport())
    with pytest.raises(InvalidSchemaNameError):
        await backup_service.create_backup(session, tenant_id="broken", transport=FakeBackupTransport())
    with pytest.raises(InvalidStateError):
        await backup_service.create_backup(session, backup_type="differential", transport=FakeBackupTransport())
    assert await session.scalar(select(func.count()).select_from(SchemaBackup)) == 0


@pytest.mark.asyncio
async def test_capture_failure_returns_failed_record(session) -> None:
    tenant = await add_tenant(session, "acme")
    transport = FakeBackupTransport(fail_capture=RuntimeError("pg_dump exited 1"))

    backup = await backup_service.create_backup(session, tenant_id="acme", transport=transport)

    assert backup.status == "failed"
    assert backup.error_message == "pg_dump exited 1"
    assert backup.completed_at is not None
    assert tenant.last_backup_at is None


@pytest.mark.asyncio
async def test_oversized_capture_is_failed(session, monkeypatch) -> None:
    monkeypatch.setenv("BACKUP_MAX_SIZE_BYTES", "1024")
    await add_tenant(session, "acme")

    backup = await backup_service.create_backup(
        session, tenant_id="acme", transport=FakeBackupTransport(size_bytes=4096)
    )

    assert backup.status == "failed"
    assert "exceeds limit" in (backup.error_message or "")


@pytest.mark.asyncio
async def test_restore_completed_backup(session) -> None:
    await add_tenant(session, "acme")
    transport = FakeBackupTransport()
    backup = await backup_service.create_backup(session, tenant_id="acme", transport=transport)

    restore = await backup_service.restore_from_backup(
        session, backup_id=backup.id, target_schema_name="tenant_acme_copy", transport=transport
    )

    assert restore.status == "completed"
    assert restore.target_schema_name == "tenant_acme_copy"
    assert restore.tenant_id == "acme"
    assert restore.restored_tables == ["accounts", "orders"]
    assert restore.is_point_in_time is False
    assert restore.execution_time_ms is not None
    assert transport.restored == [(backup.id, "tenant_acme_copy", None)]


@pytest.mark.asyncio
async def test_restore_subset_of_tables(session) -> None:
    await add_tenant(session, "acme")
    transport = FakeBackupTransport()
    backup = await backup_service.create_backup(session, tenant_id="acme", transport=transport)

    restore = await backup_service.restore_from_backup(
        session, backup_id=backup.id, tables_to_restore=["orders"], transport=transport
    )

    assert restore.target_schema_name == "tenant_acme"
    assert restore.restored_tables == ["orders"]


@pytest.mark.asyncio
async def test_restore_rejects_incomplete_backup(session) -> None:
    await add_tenant(session, "acme")
    failed = await backup_service.create_backup(
        session, tenant_id="acme", transport=FakeBackupTransport(fail_capture=RuntimeError("disk full"))
    )

    with pytest.raises(InvalidStateError, match="incomplete backup"):
        await backup_service.restore_from_backup(session, backup_id=failed.id, transport=FakeBackupTransport())
    assert await session.scalar(select(func.count()).select_from(SchemaRestore)) == 0


@pytest.mark.asyncio
async def test_integrity_failure_blocks_restore_unless_skipped(session) -> None:
    await add_tenant(session, "acme")
    transport = FakeBackupTransport(verify_errors=["checksum mismatch: x.sql.gz"])
    backup = await backup_service.create_backup(session, tenant_id="acme", transport=transport)

    with pytest.raises(InvalidStateError) as excinfo:
        await backup_service.restore_from_backup(session, backup_id=backup.id, transport=transport)
    assert excinfo.value.details == {"errors": ["checksum mismatch: x.sql.gz"]}

    restore = await backup_service.restore_from_backup(
        session, backup_id=backup.id, skip_validation=True, transport=transport
    )
    assert restore.status == "completed"


@pytest.mark.asyncio
async def test_restore_failure_is_recorded(session) -> None:
    await add_tenant(session, "acme")
    transport = FakeBackupTransport(fail_restore=RuntimeError("psql failed"))
    backup = await backup_service.create_backup(session, tenant_id="acme", transport=transport)

    restore = await backup_service.restore_from_backup(session, backup_id=backup.id, transport=transport)

    assert restore.status == "failed"
    assert restore.error_message == "psql failed"
    assert restore.completed_at is not None
    history = await backup_service.get_restore_history(session, "acme")
    assert [item.id for item in history] == [restore.id]


@pytest.mark.asyncio
async def test_point_in_time_uses_newest_backup_before_target(session) -> None:
    await add_tenant(session, "acme")
    transport = FakeBackupTransport()
    older = await backup_service.create_backup(session, tenant_id="acme", transport=transport)
    newer = await backup_service.create_backup(session, tenant_id="acme", transport=transport)
    older.created_at = datetime(2026, 10, 10, tzinfo=timezone.utc)
    newer.created_at = datetime(2026, 10, 16, tzinfo=timezone.utc)
    await session.commit()

    target = datetime(2026, 10, 12, tzinfo=timezone.utc)
    restore = await backup_service.point_in_time_recovery(
        session, tenant_id="acme", target_time=target, transport=transport
    )

    assert restore.backup_id == older.id
    assert restore.is_point_in_time is True
    assert restore.point_in_time_target == target

    with pytest.raises(NotFoundError):
        await backup_service.point_in_time_recovery(
            session,
            tenant_id="acme",
            target_time=datetime(2026, 10, 1, tzinfo=timezone.utc),
            transport=transport,
        )


@pytest.mark.asyncio
async def test_lookup_listing_and_delete(session) -> None:
    await add_tenant(session, "acme")
    await add_tenant(session, "globex")
    transport = FakeBackupTransport()
    kept = await backup_service.create_backup(session, tenant_id="acme", transport=transport)
    await backup_service.create_backup(session, tenant_id="globex", backup_type="incremental", transport=transport)
    doomed = await backup_service.create_backup(session, tenant_id="acme", transport=transport)

    assert (await backup_service.get_backup(session, kept.id)).id == kept.id
    assert len(await backup_service.list_backups_for_tenant(session, "acme")) == 2

    page = await backup_service.list_backups(session, page=1, limit=2)
    assert page.total == 3
    assert len(page.items) == 2
    incremental = await backup_service.list_backups(session, backup_type="incremental")
    assert [item.tenant_id for item in incremental.items] == ["globex"]

    await backup_service.delete_backup(session, doomed.id)
    with pytest.raises(NotFoundError):
        await backup_service.get_backup(session, doomed.id)
    with pytest.raises(NotFoundError):
        await backup_service.delete_backup(session, doomed.id)
    with pytest.raises(NotFoundError):
        await backup_service.get_restore(session, "missing")


@pytest.mark.asyncio
async def test_backup_summary_and_schedule(session, fixed_now) -> None:
    await add_tenant(session, "acme")
    await add_tenant(session, "globex")
    await add_tenant(session, "initech")
    await backup_service.create_backup(session, tenant_id="acme", transport=FakeBackupTransport(size_bytes=1000))
    await backup_service.create_backup(
        session, tenant_id="acme", backup_type="incremental", transport=FakeBackupTransport(size_bytes=3000)
    )
    await backup_service.create_backup(
        session, tenant_id="globex", transport=FakeBackupTransport(fail_capture=RuntimeError("boom"))
    )

    summary = await backup_service.get_backup_summary(session)
    assert summary.total_backups == 3
    assert summary.completed_backups == 2
    assert summary.failed_backups == 1
    assert summary.total_size_bytes == 4000
    assert summary.avg_size_bytes == 2000
    assert summary.tenants_with_backup == 1
    assert summary.tenants_without_backup == 2
    assert summary.oldest_backup is not None and summary.newest_backup is not None

    schedule = await backup_service.get_backup_schedule_status(session, now=fixed_now)
    assert schedule.daily_backup_enabled is True
    assert schedule.next_daily_backup == datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)
    assert schedule.next_weekly_backup == datetime(2026, 10, 25, 3, 0, tzinfo=timezone.utc)
    assert schedule.last_daily_backup is not None
    assert schedule.last_weekly_backup is not None
