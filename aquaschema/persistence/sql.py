from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from aquaschema.persistence.guards import quote_schema_name


class SchemaTransaction(Protocol):
    # Statement surface available inside one schema-scoped transaction.
    async def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> None:
        ...

    async def fetch_all(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        ...


class SqlRunner(Protocol):
    # Open one connection and one transaction scoped to a tenant schema.
    def transaction(
        self, schema_name: str, *, commit: bool = True
    ) -> AbstractAsyncContextManager[SchemaTransaction]:
        ...


class _ConnectionTransaction:
    def __init__(self, connection: AsyncConnection) -> None:
        self._connection = connection

    async def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> None:
        if params:
            await self._connection.execute(text(statement), dict(params))
            return
        # Raw DDL goes straight to the driver so literal colons are never parsed as binds.
        await self._connection.exec_driver_sql(statement)

    async def fetch_all(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        if params:
            result = await self._connection.execute(text(statement), dict(params))
        else:
            result = await self._connection.exec_driver_sql(statement)
        return [dict(row) for row in result.mappings().all()]


async def _scope_search_path(connection: AsyncConnection, quoted_schema: str) -> None:
    # SET LOCAL keeps the search path confined to this transaction.
    await connection.exec_driver_sql(f"SET LOCAL search_path TO {quoted_schema}")


@dataclass(frozen=True)
class EngineSqlRunner:
    engine: AsyncEngine

    @asynccontextmanager
    async def transaction(
        self, schema_name: str, *, commit: bool = True
    ) -> AsyncIterator[SchemaTransaction]:
        # Validate before acquiring a connection so bad names never reach the server.
        quoted = quote_schema_name(schema_name)
        connection = await self.engine.connect()
        try:
            transaction = await connection.begin()
            try:
                await _scope_search_path(connection, quoted)
                yield _ConnectionTransaction(connection)
            except BaseException:
                await transaction.rollback()
                raise
            if commit:
                await transaction.commit()
            else:
                await transaction.rollback()
        finally:
            await connection.close()


def get_sql_runner() -> SqlRunner:
    # Allow tests to monkeypatch statement execution without touching service code.
    from aquaschema.persistence.db import engine

    return EngineSqlRunner(engine)
