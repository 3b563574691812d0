from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.core.errors import InvalidStateError
from aquaschema.domain.models import (
    MIGRATION_DIRECTION_DOWN,
    MIGRATION_DIRECTION_UP,
    MIGRATION_STATUS_COMPLETED,
    MIGRATION_STATUS_FAILED,
    MIGRATION_STATUS_ROLLED_BACK,
    MIGRATION_STATUS_RUNNING,
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_MIGRATING,
    SchemaMigration,
    TenantSchema,
)
from aquaschema.persistence.sql import SqlRunner, get_sql_runner
from aquaschema.services.migrations.registry import (
    MigrationDefinition,
    MigrationRegistry,
    get_migration_registry,
)
from aquaschema.services.tenants import (
    acquire_migration_lease,
    get_tenant_schema,
    release_migration_lease,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    # Outcome of one migration or rollback attempt against one tenant.
    migration_id: str
    tenant_id: str
    schema_name: str
    status: str
    execution_time_ms: int
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == MIGRATION_STATUS_COMPLETED


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def find_applied_migration(
    session: AsyncSession, *, tenant_id: str, version: str
) -> SchemaMigration | None:
    # Dry runs and rollback rows never count as an applied migration.
    result = await session.execute(
        select(SchemaMigration)
        .where(
            SchemaMigration.tenant_id == tenant_id,
            SchemaMigration.version == version,
            SchemaMigration.status == MIGRATION_STATUS_COMPLETED,
            SchemaMigration.direction == MIGRATION_DIRECTION_UP,
            SchemaMigration.is_dry_run.is_(False),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _ensure_not_applied(session: AsyncSession, *, tenant_id: str, version: str) -> None:
    if await find_applied_migration(session, tenant_id=tenant_id, version=version) is not None:
        raise InvalidStateError(f"Migration {version} already applied to tenant {tenant_id}")


async def _start_attempt(
    session: AsyncSession,
    *,
    migration_id: str,
    schema: TenantSchema,
    definition: MigrationDefinition,
    direction: str,
    dry_run: bool,
    executed_by: str | None,
) -> SchemaMigration:
    # Persist the running row before any tenant SQL executes so crashes leave a trace.
    started_at = _utc_now()
    if direction == MIGRATION_DIRECTION_DOWN:
        name = f"rollback_{definition.name}"
        up_script, down_script = definition.down_script, definition.up_script
    else:
        name = definition.name
        up_script, down_script = definition.up_script, definition.down_script
    row = SchemaMigration(
        id=migration_id,
        tenant_id=schema.tenant_id,
        schema_name=schema.schema_name,
        migration_name=name,
        version=definition.version,
        direction=direction,
        status=MIGRATION_STATUS_RUNNING,
        up_script=up_script,
        down_script=down_script,
        is_dry_run=dry_run,
        executed_by=executed_by,
        started_at=started_at,
        affected_tables=list(definition.affected_tables),
        created_at=started_at,
    )
    session.add(row)
    await session.commit()
    return row


async def _record_failure(
    session: AsyncSession,
    *,
    row: SchemaMigration,
    schema: TenantSchema,
    error: str,
    elapsed_ms: int,
    release_lease: bool,
) -> MigrationResult:
    row.status = MIGRATION_STATUS_FAILED
    row.error_message = error
    row.completed_at = _utc_now()
    row.execution_time_ms = elapsed_ms
    if release_lease:
        # Version stays where it was; only the lease is returned.
        await release_migration_lease(session, schema)
    else:
        await session.commit()
    return MigrationResult(
        migration_id=row.id,
        tenant_id=row.tenant_id,
        schema_name=row.schema_name,
        status=MIGRATION_STATUS_FAILED,
        execution_time_ms=elapsed_ms,
        error=error,
    )


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def _abandon_attempt(
    session: AsyncSession,
    *,
    migration_id: str,
    schema_id: str,
    error: str,
    holds_lease: bool,
) -> None:
    """Close out an attempt that was interrupted outside the SQL block.

    Discards whatever the session had pending, fails the history row if it is
    still ``running`` and hands the lease back. Both updates are conditional,
    so running this after the normal bookkeeping already finished is a no-op.
    """
    await session.rollback()
    now = _utc_now()
    await session.execute(
        update(SchemaMigration)
        .where(
            SchemaMigration.id == migration_id,
            SchemaMigration.status == MIGRATION_STATUS_RUNNING,
        )
        .values(status=MIGRATION_STATUS_FAILED, completed_at=now, error_message=error)
        .execution_options(synchronize_session=False)
    )
    if holds_lease:
        await session.execute(
            update(TenantSchema)
            .where(
                TenantSchema.id == schema_id,
                TenantSchema.status == TENANT_STATUS_MIGRATING,
            )
            .values(status=TENANT_STATUS_ACTIVE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    await session.commit()


async def run_migration(
    session: AsyncSession,
    *,
    tenant_id: str,
    version: str,
    dry_run: bool = False,
    executed_by: str | None = None,
    registry: MigrationRegistry | None = None,
    sql_runner: SqlRunner | None = None,
) -> MigrationResult:
    """Apply one registered migration to one tenant schema.

    Precondition failures raise ``NotFoundError`` or ``InvalidStateError`` before
    any tenant SQL runs. Failures inside the migration transaction are rolled
    back, recorded on the history row, and returned as a failed result.
    Cancellation or a bookkeeping failure after the lease is taken fails the
    row, releases the lease and re-raises.

    A dry run executes the full up-script inside the transaction and rolls it
    back, so the script is validated without persisting DDL. The tenant row is
    never touched by a dry run.
    """
    registry = registry or get_migration_registry()
    runner = sql_runner or get_sql_runner()

    schema = await get_tenant_schema(session, tenant_id)
    definition = registry.require(version)

    if not dry_run:
        await _ensure_not_applied(session, tenant_id=tenant_id, version=version)
        await acquire_migration_lease(session, schema)
        try:
            # Another caller may have finished between the first check and the lease.
            await _ensure_not_applied(session, tenant_id=tenant_id, version=version)
        except BaseException:
            await release_migration_lease(session, schema)
            raise

    migration_id = str(uuid4())
    schema_id = schema.id
    schema_name = schema.schema_name
    try:
        row = await _start_attempt(
            session,
            migration_id=migration_id,
            schema=schema,
            definition=definition,
            direction=MIGRATION_DIRECTION_UP,
            dry_run=dry_run,
            executed_by=executed_by,
        )
        logger.info(
            "migration_started tenant=%s schema=%s version=%s dry_run=%s",
            tenant_id,
            schema_name,
            version,
            dry_run,
        )

        started = time.monotonic()
        try:
            async with runner.transaction(schema_name, commit=not dry_run) as tx:
                for statement in definition.up_statements:
                    await tx.execute(statement)
        except Exception as exc:  # noqa: BLE001 - failed attempts are recorded and returned
            elapsed_ms = _elapsed_ms(started)
            logger.warning(
                "migration_failed tenant=%s version=%s dry_run=%s error=%s",
                tenant_id,
                version,
                dry_run,
                exc,
            )
            return await _record_failure(
                session,
                row=row,
                schema=schema,
                error=str(exc),
                elapsed_ms=elapsed_ms,
                release_lease=not dry_run,
            )

        elapsed_ms = _elapsed_ms(started)
        completed_at = _utc_now()
        row.status = MIGRATION_STATUS_COMPLETED
        row.completed_at = completed_at
        row.execution_time_ms = elapsed_ms
        if dry_run:
            await session.commit()
        else:
            await release_migration_lease(
                session,
                schema,
                current_version=version,
                migrated_at=completed_at,
            )
    except IntegrityError:
        # The partial unique index caught a concurrent completed apply of the same version.
        await _abandon_attempt(
            session,
            migration_id=migration_id,
            schema_id=schema_id,
            error="Migration already applied",
            holds_lease=not dry_run,
        )
        raise InvalidStateError(f"Migration {version} already applied to tenant {tenant_id}") from None
    except BaseException as exc:
        logger.warning(
            "migration_interrupted tenant=%s version=%s dry_run=%s error=%s",
            tenant_id,
            version,
            dry_run,
            _describe(exc),
        )
        await _abandon_attempt(
            session,
            migration_id=migration_id,
            schema_id=schema_id,
            error=_describe(exc),
            holds_lease=not dry_run,
        )
        raise

    logger.info(
        "migration_completed tenant=%s version=%s dry_run=%s elapsed_ms=%s",
        tenant_id,
        version,
        dry_run,
        elapsed_ms,
    )
    return MigrationResult(
        migration_id=migration_id,
        tenant_id=tenant_id,
        schema_name=schema_name,
        status=MIGRATION_STATUS_COMPLETED,
        execution_time_ms=elapsed_ms,
    )


async def rollback_migration(
    session: AsyncSession,
    *,
    tenant_id: str,
    version: str,
    executed_by: str | None = None,
    registry: MigrationRegistry | None = None,
    sql_runner: SqlRunner | None = None,
) -> MigrationResult:
    """Undo a previously applied migration by running its down-script.

    The rollback is recorded as its own ``down`` history row. The original
    forward row only flips to ``rolled_back`` when the down-script commits.
    """
    registry = registry or get_migration_registry()
    runner = sql_runner or get_sql_runner()

    schema = await get_tenant_schema(session, tenant_id)
    if await find_applied_migration(session, tenant_id=tenant_id, version=version) is None:
        raise InvalidStateError(f"Migration {version} has not been applied to tenant {tenant_id}")
    definition = registry.require(version)

    await acquire_migration_lease(session, schema)
    try:
        original = await find_applied_migration(session, tenant_id=tenant_id, version=version)
    except BaseException:
        await release_migration_lease(session, schema)
        raise
    if original is None:
        await release_migration_lease(session, schema)
        raise InvalidStateError(f"Migration {version} has not been applied to tenant {tenant_id}")

    migration_id = str(uuid4())
    schema_id = schema.id
    schema_name = schema.schema_name
    try:
        row = await _start_attempt(
            session,
            migration_id=migration_id,
            schema=schema,
            definition=definition,
            direction=MIGRATION_DIRECTION_DOWN,
            dry_run=False,
            executed_by=executed_by,
        )
        logger.info(
            "rollback_started tenant=%s schema=%s version=%s",
            tenant_id,
            schema_name,
            version,
        )

        started = time.monotonic()
        try:
            async with runner.transaction(schema_name) as tx:
                for statement in definition.down_statements:
                    await tx.execute(statement)
        except Exception as exc:  # noqa: BLE001 - failed attempts are recorded and returned
            elapsed_ms = _elapsed_ms(started)
            logger.warning(
                "rollback_failed tenant=%s version=%s error=%s",
                tenant_id,
                version,
                exc,
            )
            return await _record_failure(
                session,
                row=row,
                schema=schema,
                error=str(exc),
                elapsed_ms=elapsed_ms,
                release_lease=True,
            )

        elapsed_ms = _elapsed_ms(started)
        completed_at = _utc_now()
        original.status = MIGRATION_STATUS_ROLLED_BACK
        row.status = MIGRATION_STATUS_COMPLETED
        row.completed_at = completed_at
        row.execution_time_ms = elapsed_ms
        await release_migration_lease(
            session,
            schema,
            current_version=registry.previous_version(version),
            migrated_at=completed_at,
        )
    except BaseException as exc:
        logger.warning(
            "rollback_interrupted tenant=%s version=%s error=%s",
            tenant_id,
            version,
            _describe(exc),
        )
        await _abandon_attempt(
            session,
            migration_id=migration_id,
            schema_id=schema_id,
            error=_describe(exc),
            holds_lease=True,
        )
        raise

    logger.info(
        "rollback_completed tenant=%s version=%s elapsed_ms=%s",
        tenant_id,
        version,
        elapsed_ms,
    )
    return MigrationResult(
        migration_id=migration_id,
        tenant_id=tenant_id,
        schema_name=schema_name,
        status=MIGRATION_STATUS_COMPLETED,
        execution_time_ms=elapsed_ms,
    )
