from __future__ import annotations

import pytest

from aquaschema.core.errors import NotFoundError
from aquaschema.services.migrations.registry import (
    INITIAL_VERSION,
    MigrationDefinition,
    MigrationRegistry,
    compare_versions,
    estimate_duration_ms,
    get_migration_registry,
    sort_versions,
)


def _definition(version: str, **overrides) -> MigrationDefinition:
    values = {
        "version": version,
        "name": f"m_{version.replace('.', '_')}",
        "description": "test migration",
        "up_statements": ("CREATE TABLE a (id INT)",),
        "down_statements": ("DROP TABLE a",),
        "affected_tables": ("a",),
    }
    values.update(overrides)
    return MigrationDefinition(**values)


def test_compare_versions_is_numeric_per_segment() -> None:
    # 1.10.0 must land after 1.2.0 even though it sorts first as text.
    assert compare_versions("1.10.0", "1.2.0") == 1
    assert compare_versions("1.2.0", "1.10.0") == -1
    assert compare_versions("2.0.0", "2.0.0") == 0
    assert sort_versions(["1.10.0", "1.2.0", "1.0.0"]) == ["1.0.0", "1.2.0", "1.10.0"]


def test_default_registry_is_ascending_and_complete() -> None:
    registry = get_migration_registry()
    assert registry.versions() == ["1.0.0", "1.1.0", "1.2.0", "1.3.0"]
    assert registry.latest_version() == "1.3.0"
    assert registry.versions() == sort_versions(registry.versions())


def test_previous_version_follows_registry_order() -> None:
    registry = get_migration_registry()
    assert registry.previous_version("1.0.0") == INITIAL_VERSION
    assert registry.previous_version("1.2.0") == "1.1.0"
    with pytest.raises(NotFoundError):
        registry.previous_version("9.9.9")


def test_require_unknown_version_raises_not_found() -> None:
    registry = get_migration_registry()
    assert registry.find("9.9.9") is None
    with pytest.raises(NotFoundError):
        registry.require("9.9.9")


def test_registry_rejects_duplicate_versions() -> None:
    with pytest.raises(ValueError):
        MigrationRegistry([_definition("1.0.0"), _definition("1.0.0")])


def test_registry_rejects_out_of_order_declarations() -> None:
    with pytest.raises(ValueError):
        MigrationRegistry([_definition("1.10.0"), _definition("1.2.0")])


def test_empty_registry_reports_initial_version() -> None:
    registry = MigrationRegistry([])
    assert len(registry) == 0
    assert registry.latest_version() == INITIAL_VERSION
    assert registry.list_available() == []


def test_duration_estimate_scales_with_tables_and_destructive_flag() -> None:
    assert estimate_duration_ms(_definition("1.0.0", affected_tables=("a", "b"))) == 9000
    assert estimate_duration_ms(_definition("1.0.0", affected_tables=(), is_destructive=True)) == 15000


def test_list_available_exposes_scripts_and_ids() -> None:
    registry = MigrationRegistry(
        [
            _definition(
                "1.0.0",
                up_statements=("CREATE TABLE a (id INT)", "CREATE INDEX ix_a ON a(id)"),
            )
        ]
    )
    plan = registry.list_available()[0]
    assert plan.id == "migration_1_0_0"
    assert plan.up_script == "CREATE TABLE a (id INT);\nCREATE INDEX ix_a ON a(id);"
    assert plan.down_script == "DROP TABLE a;"
    assert plan.affected_tables == ["a"]
    assert plan.estimated_duration_ms == 7000
