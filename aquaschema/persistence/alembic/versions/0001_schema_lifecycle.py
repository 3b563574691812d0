"""tenant schema lifecycle tables

Revision ID: 0001_schema_lifecycle
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_schema_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # Registry of tenant namespaces and their current schema version.
    op.create_table(
        "tenant_schemas",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False, unique=True),
        sa.Column("schema_name", sa.String(), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("current_version", sa.String(), nullable=False, server_default="0.0.0"),
        sa.Column("table_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rows", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("connection_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_connections", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("last_migration_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_backup_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tenant_schemas_status", "tenant_schemas", ["status"], unique=False)

    # Append-only migration attempts, forward and rollback.
    op.create_table(
        "schema_migrations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("schema_name", sa.String(), nullable=False),
        sa.Column("migration_name", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("direction", sa.String(), nullable=False, server_default="up"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("up_script", sa.Text(), nullable=False),
        sa.Column("down_script", sa.Text(), nullable=False),
        sa.Column("is_dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("executed_by", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("affected_tables", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_schema_migrations_tenant_version",
        "schema_migrations",
        ["tenant_id", "version"],
        unique=False,
    )
    op.create_index("ix_schema_migrations_status", "schema_migrations", ["status"], unique=False)
    # At most one completed forward run per tenant/version.
    op.create_index(
        "uq_schema_migrations_applied",
        "schema_migrations",
        ["tenant_id", "version"],
        unique=True,
        postgresql_where=sa.text("status = 'completed' AND direction = 'up' AND NOT is_dry_run"),
    )

    op.create_table(
        "schema_backups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("schema_name", sa.String(), nullable=False),
        sa.Column("backup_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("is_compressed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("checksum", sa.String(), nullable=True),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_schema_backups_tenant_created",
        "schema_backups",
        ["tenant_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_schema_backups_status", "schema_backups", ["status"], unique=False)
    op.create_index("ix_schema_backups_expires_at", "schema_backups", ["expires_at"], unique=False)

    op.create_table(
        "schema_restores",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("backup_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("target_schema_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("is_point_in_time", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("point_in_time_target", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_tables", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_schema_restores_backup_id", "schema_restores", ["backup_id"], unique=False)
    op.create_index("ix_schema_restores_tenant_id", "schema_restores", ["tenant_id"], unique=False)

    op.create_table(
        "database_metrics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("metric_type", sa.String(), nullable=False, server_default="system"),
        sa.Column("metrics_json", postgresql.JSONB(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_database_metrics_type_recorded",
        "database_metrics",
        ["metric_type", "recorded_at"],
        unique=False,
    )

    op.create_table(
        "slow_query_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("schema_name", sa.String(), nullable=True),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("normalized_query", sa.Text(), nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_slow_query_logs_recorded_at", "slow_query_logs", ["recorded_at"], unique=False)
    op.create_index("ix_slow_query_logs_tenant_id", "slow_query_logs", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_slow_query_logs_tenant_id", table_name="slow_query_logs")
    op.drop_index("ix_slow_query_logs_recorded_at", table_name="slow_query_logs")
    op.drop_table("slow_query_logs")

    op.drop_index("ix_database_metrics_type_recorded", table_name="database_metrics")
    op.drop_table("database_metrics")

    op.drop_index("ix_schema_restores_tenant_id", table_name="schema_restores")
    op.drop_index("ix_schema_restores_backup_id", table_name="schema_restores")
    op.drop_table("schema_restores")

    op.drop_index("ix_schema_backups_expires_at", table_name="schema_backups")
    op.drop_index("ix_schema_backups_status", table_name="schema_backups")
    op.drop_index("ix_schema_backups_tenant_created", table_name="schema_backups")
    op.drop_table("schema_backups")

    op.drop_index("uq_schema_migrations_applied", table_name="schema_migrations")
    op.drop_index("ix_schema_migrations_status", table_name="schema_migrations")
    op.drop_index("ix_schema_migrations_tenant_version", table_name="schema_migrations")
    op.drop_table("schema_migrations")

    op.drop_index("ix_tenant_schemas_status", table_name="tenant_schemas")
    op.drop_table("tenant_schemas")
