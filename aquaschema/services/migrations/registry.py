"""Compiled-in catalogue of tenant schema migrations.

The registry is built once at import time and never mutated. Declaration order
must equal ascending version order under numeric-aware comparison, so that
"1.10.0" sorts after "1.2.0"; construction fails otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cmp_to_key
from types import MappingProxyType
from typing import Iterable, Mapping

from aquaschema.core.errors import NotFoundError


INITIAL_VERSION = "0.0.0"

_BASE_DURATION_MS = 5000
_PER_TABLE_DURATION_MS = 2000
_DESTRUCTIVE_DURATION_MS = 10000


@dataclass(frozen=True)
class MigrationDefinition:
    version: str
    name: str
    description: str
    up_statements: tuple[str, ...]
    down_statements: tuple[str, ...]
    affected_tables: tuple[str, ...]
    is_destructive: bool = False
    requires_downtime: bool = False

    @property
    def up_script(self) -> str:
        return ";\n".join(self.up_statements) + ";"

    @property
    def down_script(self) -> str:
        return ";\n".join(self.down_statements) + ";"


@dataclass(frozen=True)
class MigrationPlan:
    # Registry entry as exposed to operators, with a rough duration estimate.
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


def _segment_key(segment: str) -> tuple[int, int, str]:
    # Numeric segments sort numerically and ahead of any non-numeric segment.
    if segment.isdigit():
        return (0, int(segment), "")
    return (1, 0, segment)


def version_key(version: str) -> tuple[tuple[int, int, str], ...]:
    return tuple(_segment_key(segment) for segment in version.split("."))


def compare_versions(left: str, right: str) -> int:
    left_key = version_key(left)
    right_key = version_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def sort_versions(versions: Iterable[str]) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions))


def estimate_duration_ms(definition: MigrationDefinition) -> int:
    duration = _BASE_DURATION_MS + _PER_TABLE_DURATION_MS * len(definition.affected_tables)
    if definition.is_destructive:
        duration += _DESTRUCTIVE_DURATION_MS
    return duration


class MigrationRegistry:
    def __init__(self, definitions: Iterable[MigrationDefinition]) -> None:
        ordered = tuple(definitions)
        versions = [definition.version for definition in ordered]
        if len(set(versions)) != len(versions):
            raise ValueError("Migration versions must be unique")
        if versions != sort_versions(versions):
            raise ValueError("Migrations must be declared in ascending version order")
        self._definitions = ordered
        self._by_version: Mapping[str, MigrationDefinition] = MappingProxyType(
            {definition.version: definition for definition in ordered}
        )
        self._positions: Mapping[str, int] = MappingProxyType(
            {version: index for index, version in enumerate(versions)}
        )

    def __len__(self) -> int:
        return len(self._definitions)

    @property
    def definitions(self) -> tuple[MigrationDefinition, ...]:
        return self._definitions

    def versions(self) -> list[str]:
        return [definition.version for definition in self._definitions]

    def find(self, version: str) -> MigrationDefinition | None:
        return self._by_version.get(version)

    def require(self, version: str) -> MigrationDefinition:
        definition = self.find(version)
        if definition is None:
            raise NotFoundError(f"Migration version not found: {version}")
        return definition

    def previous_version(self, version: str) -> str:
        # Registry order, not a lexical sort, decides what "previous" means.
        position = self._positions.get(version)
        if position is None:
            raise NotFoundError(f"Migration version not found: {version}")
        if position == 0:
            return INITIAL_VERSION
        return self._definitions[position - 1].version

    def latest_version(self) -> str:
        if not self._definitions:
            return INITIAL_VERSION
        return self._definitions[-1].version

    def list_available(self) -> list[MigrationPlan]:
        return [
            MigrationPlan(
                id=f"migration_{definition.version.replace('.', '_')}",
                name=definition.name,
                version=definition.version,
                description=definition.description,
                up_script=definition.up_script,
                down_script=definition.down_script,
                affected_tables=list(definition.affected_tables),
                estimated_duration_ms=estimate_duration_ms(definition),
                is_destructive=definition.is_destructive,
                requires_downtime=definition.requires_downtime,
            )
            for definition in self._definitions
        ]


_DEFINITIONS = (
    MigrationDefinition(
        version="1.0.0",
        name="initial_schema",
        description="Initial schema setup with metadata and audit tables",
        up_statements=(
            """CREATE TABLE IF NOT EXISTS "_metadata" (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                key VARCHAR(100) NOT NULL UNIQUE,
                value JSONB,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )""",
            """CREATE TABLE IF NOT EXISTS "_audit_log" (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                entity_type VARCHAR(100),
                entity_id VARCHAR(100),
                action VARCHAR(50),
                old_data JSONB,
                new_data JSONB,
                user_id VARCHAR(100),
                ip_address VARCHAR(45),
                created_at TIMESTAMP DEFAULT NOW()
            )""",
        ),
        down_statements=(
            'DROP TABLE IF EXISTS "_audit_log"',
            'DROP TABLE IF EXISTS "_metadata"',
        ),
        affected_tables=("_metadata", "_audit_log"),
    ),
    MigrationDefinition(
        version="1.1.0",
        name="add_tenant_settings",
        description="Add tenant-specific settings table",
        up_statements=(
            """CREATE TABLE IF NOT EXISTS "tenant_settings" (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                category VARCHAR(100) NOT NULL,
                key VARCHAR(100) NOT NULL,
                value JSONB,
                is_encrypted BOOLEAN DEFAULT false,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW(),
                UNIQUE(category, key)
            )""",
            'CREATE INDEX IF NOT EXISTS idx_tenant_settings_category ON "tenant_settings"(category)',
        ),
        down_statements=(
            "DROP INDEX IF EXISTS idx_tenant_settings_category",
            'DROP TABLE IF EXISTS "tenant_settings"',
        ),
        affected_tables=("tenant_settings",),
    ),
    MigrationDefinition(
        version="1.2.0",
        name="add_data_export_logs",
        description="Add data export tracking table",
        up_statements=(
            """CREATE TABLE IF NOT EXISTS "data_exports" (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                export_type VARCHAR(50) NOT NULL,
                format VARCHAR(20) NOT NULL,
                status VARCHAR(20) DEFAULT 'pending',
                file_path VARCHAR(500),
                file_size BIGINT,
                row_count INT,
                requested_by VARCHAR(100),
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT NOW()
            )""",
            'CREATE INDEX IF NOT EXISTS idx_data_exports_status ON "data_exports"(status)',
            'CREATE INDEX IF NOT EXISTS idx_data_exports_created ON "data_exports"(created_at DESC)',
        ),
        down_statements=(
            "DROP INDEX IF EXISTS idx_data_exports_created",
            "DROP INDEX IF EXISTS idx_data_exports_status",
            'DROP TABLE IF EXISTS "data_exports"',
        ),
        affected_tables=("data_exports",),
    ),
    MigrationDefinition(
        version="1.3.0",
        name="add_activity_tracking",
        description="Add user activity tracking table",
        up_statements=(
            """CREATE TABLE IF NOT EXISTS "user_activities" (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id VARCHAR(100) NOT NULL,
                activity_type VARCHAR(50) NOT NULL,
                entity_type VARCHAR(100),
                entity_id VARCHAR(100),
                metadata JSONB,
                ip_address VARCHAR(45),
                user_agent TEXT,
                created_at TIMESTAMP DEFAULT NOW()
            )""",
            'CREATE INDEX IF NOT EXISTS idx_user_activities_user ON "user_activities"(user_id)',
            'CREATE INDEX IF NOT EXISTS idx_user_activities_type ON "user_activities"(activity_type)',
            'CREATE INDEX IF NOT EXISTS idx_user_activities_created ON "user_activities"(created_at DESC)',
        ),
        down_statements=(
            "DROP INDEX IF EXISTS idx_user_activities_created",
            "DROP INDEX IF EXISTS idx_user_activities_type",
            "DROP INDEX IF EXISTS idx_user_activities_user",
            'DROP TABLE IF EXISTS "user_activities"',
        ),
        affected_tables=("user_activities",),
    ),
)

_DEFAULT_REGISTRY = MigrationRegistry(_DEFINITIONS)


def get_migration_registry() -> MigrationRegistry:
    return _DEFAULT_REGISTRY
