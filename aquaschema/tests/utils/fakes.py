from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.domain.models import TENANT_STATUS_ACTIVE, SchemaBackup, TenantSchema
from aquaschema.persistence.guards import quote_schema_name
from aquaschema.services.backup_transport import BackupCapture, BackupRequest


class StatementFailed(RuntimeError):
    pass


class _RecordingTransaction:
    def __init__(self, runner: "RecordingSqlRunner", schema_name: str) -> None:
        self._runner = runner
        self._schema_name = schema_name

    async def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> None:
        self._runner.statements.append((self._schema_name, statement))
        await self._runner.notify(self._schema_name, statement)
        self._runner.maybe_fail(self._schema_name, statement)

    async def fetch_all(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        self._runner.statements.append((self._schema_name, statement))
        self._runner.maybe_fail(self._schema_name, statement)
        for marker, rows in self._runner.rows.items():
            if marker in statement:
                return [dict(row) for row in rows]
        return []


class RecordingSqlRunner:
    """In-memory stand-in for the tenant SQL runner.

    Records every statement with its schema, and how each transaction ended
    (``committed`` or ``rolled_back``). ``fail_on`` raises when a statement
    contains the marker; ``fail_schemas`` limits failures to those schemas.
    ``on_statement`` is awaited before each executed statement, which lets a
    test raise arbitrary exceptions or change the database mid-transaction.
    """

    def __init__(
        self,
        *,
        fail_on: str | None = None,
        fail_schemas: set[str] | None = None,
        rows: Mapping[str, list[dict[str, Any]]] | None = None,
        on_statement: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self.fail_on = fail_on
        self.fail_schemas = fail_schemas
        self.rows = dict(rows or {})
        self.on_statement = on_statement
        self.statements: list[tuple[str, str]] = []
        self.transactions: list[tuple[str, str]] = []

    def maybe_fail(self, schema_name: str, statement: str) -> None:
        if self.fail_schemas is not None and schema_name not in self.fail_schemas:
            return
        if self.fail_schemas is not None and self.fail_on is None:
            raise StatementFailed(f"statement failed in {schema_name}")
        if self.fail_on is not None and self.fail_on in statement:
            raise StatementFailed(f"statement failed: {self.fail_on}")

    async def notify(self, schema_name: str, statement: str) -> None:
        if self.on_statement is not None:
            await self.on_statement(schema_name, statement)

    def statements_for(self, schema_name: str) -> list[str]:
        return [statement for schema, statement in self.statements if schema == schema_name]

    @asynccontextmanager
    async def transaction(
        self, schema_name: str, *, commit: bool = True
    ) -> AsyncIterator[_RecordingTransaction]:
        quote_schema_name(schema_name)
        try:
            yield _RecordingTransaction(self, schema_name)
        except BaseException:
            self.transactions.append((schema_name, "rolled_back"))
            raise
        self.transactions.append((schema_name, "committed" if commit else "rolled_back"))


@dataclass
class FakeBackupTransport:
    size_bytes: int = 2048
    checksum: str = "c0ffee"
    tables: list[str] = field(default_factory=lambda: ["accounts", "orders"])
    fail_capture: Exception | None = None
    fail_schemas: set[str] = field(default_factory=set)
    fail_restore: Exception | None = None
    verify_errors: list[str] = field(default_factory=list)
    captured: list[BackupRequest] = field(default_factory=list)
    restored: list[tuple[str, str, list[str] | None]] = field(default_factory=list)

    async def capture(self, request: BackupRequest) -> BackupCapture:
        self.captured.append(request)
        if self.fail_capture is not None:
            raise self.fail_capture
        if request.schema_name in self.fail_schemas:
            raise StatementFailed(f"capture failed for {request.schema_name}")
        tables = [table for table in self.tables if table not in request.exclude_tables]
        return BackupCapture(
            size_bytes=self.size_bytes,
            checksum=self.checksum,
            metadata={"table_count": len(tables), "row_count": 0, "tables": tables},
        )

    async def restore(
        self,
        backup: SchemaBackup,
        *,
        target_schema: str,
        tables: list[str] | None = None,
    ) -> list[str]:
        self.restored.append((backup.id, target_schema, tables))
        if self.fail_restore is not None:
            raise self.fail_restore
        if tables is None:
            return list((backup.metadata_json or {}).get("tables", []))
        return list(tables)

    async def verify(self, backup: SchemaBackup) -> list[str]:
        return list(self.verify_errors)


async def add_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    schema_name: str | None = None,
    status: str = TENANT_STATUS_ACTIVE,
    current_version: str = "0.0.0",
) -> TenantSchema:
    tenant = TenantSchema(
        id=str(uuid4()),
        tenant_id=tenant_id,
        schema_name=schema_name or f"tenant_{tenant_id}",
        status=status,
        current_version=current_version,
        created_at=datetime.now(timezone.utc),
    )
    session.add(tenant)
    await session.commit()
    return tenant
