from aquaschema.services.migrations.batch import (
    BatchMigrationStatus,
    get_batch_migration_status,
    run_batch_migration,
)
from aquaschema.services.migrations.executor import (
    MigrationResult,
    rollback_migration,
    run_migration,
)
from aquaschema.services.migrations.history import (
    MigrationSummary,
    get_migration_history,
    get_migration_summary,
    get_pending_migrations,
    list_migration_history,
)
from aquaschema.services.migrations.registry import (
    MigrationDefinition,
    MigrationPlan,
    MigrationRegistry,
    compare_versions,
    get_migration_registry,
)

__all__ = [
    "BatchMigrationStatus",
    "MigrationDefinition",
    "MigrationPlan",
    "MigrationRegistry",
    "MigrationResult",
    "MigrationSummary",
    "compare_versions",
    "get_batch_migration_status",
    "get_migration_history",
    "get_migration_registry",
    "get_migration_summary",
    "get_pending_migrations",
    "list_migration_history",
    "rollback_migration",
    "run_batch_migration",
    "run_migration",
]
