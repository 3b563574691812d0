from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on PostgreSQL while keeping the models portable for SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")

TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_MIGRATING = "migrating"
TENANT_STATUS_SUSPENDED = "suspended"

MIGRATION_STATUS_RUNNING = "running"
MIGRATION_STATUS_COMPLETED = "completed"
MIGRATION_STATUS_FAILED = "failed"
MIGRATION_STATUS_ROLLED_BACK = "rolled_back"

MIGRATION_DIRECTION_UP = "up"
MIGRATION_DIRECTION_DOWN = "down"

BACKUP_STATUS_PENDING = "pending"
BACKUP_STATUS_IN_PROGRESS = "in_progress"
BACKUP_STATUS_COMPLETED = "completed"
BACKUP_STATUS_FAILED = "failed"
BACKUP_STATUS_EXPIRED = "expired"

RESTORE_STATUS_PENDING = "pending"
RESTORE_STATUS_IN_PROGRESS = "in_progress"
RESTORE_STATUS_COMPLETED = "completed"
RESTORE_STATUS_FAILED = "failed"


class Base(DeclarativeBase):
    pass


class TenantSchema(Base):
    __tablename__ = "tenant_schemas"
    __table_args__ = (Index("ix_tenant_schemas_status", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, unique=True)
    # One database namespace per tenant; validated before any interpolation into SQL.
    schema_name: Mapped[str] = mapped_column(String, unique=True)
    # The migrating status doubles as the per-tenant migration lease.
    status: Mapped[str] = mapped_column(String, default=TENANT_STATUS_ACTIVE)
    current_version: Mapped[str] = mapped_column(String, default="0.0.0")
    # Periodically refreshed from the catalog; informational only.
    table_count: Mapped[int] = mapped_column(Integer, default=0)
    total_rows: Mapped[int] = mapped_column(BigInteger, default=0)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    connection_count: Mapped[int] = mapped_column(Integer, default=0)
    max_connections: Mapped[int] = mapped_column(Integer, default=10)
    last_migration_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_backup_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"
    __table_args__ = (
        Index("ix_schema_migrations_tenant_version", "tenant_id", "version"),
        Index("ix_schema_migrations_status", "status"),
        # Reject a second completed forward run for the same tenant/version at the storage layer.
        Index(
            "uq_schema_migrations_applied",
            "tenant_id",
            "version",
            unique=True,
            postgresql_where=text("status = 'completed' AND direction = 'up' AND NOT is_dry_run"),
            sqlite_where=text("status = 'completed' AND direction = 'up' AND NOT is_dry_run"),
        ),
    )

    # One row per attempt; rows are append-only apart from the completion update.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    schema_name: Mapped[str] = mapped_column(String)
    migration_name: Mapped[str] = mapped_column(String)
    version: Mapped[str] = mapped_column(String)
    direction: Mapped[str] = mapped_column(String, default=MIGRATION_DIRECTION_UP)
    status: Mapped[str] = mapped_column(String)
    # Rollback attempts store the down-script here and the up-script in down_script.
    up_script: Mapped[str] = mapped_column(Text)
    down_script: Mapped[str] = mapped_column(Text)
    is_dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    executed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    affected_tables: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SchemaBackup(Base):
    __tablename__ = "schema_backups"
    __table_args__ = (
        Index("ix_schema_backups_tenant_created", "tenant_id", "created_at"),
        Index("ix_schema_backups_status", "status"),
        Index("ix_schema_backups_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null tenant means a whole-database backup of the public schema.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    schema_name: Mapped[str] = mapped_column(String)
    backup_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    file_name: Mapped[str] = mapped_column(String)
    file_path: Mapped[str] = mapped_column(String)
    is_compressed: Mapped[bool] = mapped_column(Boolean, default=True)
    is_encrypted: Mapped[bool] = mapped_column(Boolean, default=False)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String, nullable=True)
    retention_days: Mapped[int] = mapped_column(Integer)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SchemaRestore(Base):
    __tablename__ = "schema_restores"
    __table_args__ = (
        Index("ix_schema_restores_backup_id", "backup_id"),
        Index("ix_schema_restores_tenant_id", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    backup_id: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_schema_name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    is_point_in_time: Mapped[bool] = mapped_column(Boolean, default=False)
    point_in_time_target: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    restored_tables: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DatabaseMetric(Base):
    __tablename__ = "database_metrics"
    __table_args__ = (Index("ix_database_metrics_type_recorded", "metric_type", "recorded_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metric_type: Mapped[str] = mapped_column(String, default="system")
    metrics_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SlowQueryLog(Base):
    __tablename__ = "slow_query_logs"
    __table_args__ = (
        Index("ix_slow_query_logs_recorded_at", "recorded_at"),
        Index("ix_slow_query_logs_tenant_id", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    schema_name: Mapped[str | None] = mapped_column(String, nullable=True)
    query: Mapped[str] = mapped_column(Text)
    # Literal-free form used to group repeated slow statements.
    normalized_query: Mapped[str] = mapped_column(Text)
    execution_time_ms: Mapped[int] = mapped_column(Integer)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
