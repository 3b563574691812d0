from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.persistence.db import get_session
from aquaschema.persistence.sql import SqlRunner, get_sql_runner
from aquaschema.services.backup_transport import BackupTransport, get_backup_transport
from aquaschema.services.migrations.registry import MigrationRegistry, get_migration_registry


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str | None:
    # The upstream gateway authenticates admins and forwards the actor id.
    return x_actor_id


def get_registry() -> MigrationRegistry:
    return get_migration_registry()


def get_runner() -> SqlRunner:
    return get_sql_runner()


def get_transport() -> BackupTransport:
    return get_backup_transport()
