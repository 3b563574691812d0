from __future__ import annotations

import pytest

from aquaschema.core.errors import InvalidSchemaNameError, QueryValidationError
from aquaschema.services import monitoring
from aquaschema.tests.utils.fakes import RecordingSqlRunner


@pytest.mark.parametrize(
    "query",
    [
        "SELECT * FROM accounts WHERE id = 1",
        "  with recent AS (SELECT 1) SELECT * FROM recent",
        "VALUES (1), (2)",
    ],
)
def test_read_only_queries_are_accepted(query: str) -> None:
    assert monitoring.validate_query_for_explain(query).valid


@pytest.mark.parametrize(
    ("query", "error_fragment"),
    [
        ("SELECT 1; DROP TABLE accounts", "Semicolons"),
        ("DELETE FROM accounts", "forbidden"),
        ("SELECT pg_sleep(10)", "forbidden"),
        ("SELECT 1 -- trailing comment", "forbidden"),
        ("SELECT /* hidden */ 1", "forbidden"),
        ("SELECT pg_read_file('/etc/passwd')", "forbidden"),
        ("SHOW search_path", "Only SELECT"),
        ("SELECT " + "x" * 10001, "maximum allowed length"),
    ],
)
def test_unsafe_queries_are_rejected(query: str, error_fragment: str) -> None:
    validation = monitoring.validate_query_for_explain(query)
    assert not validation.valid
    assert error_fragment in (validation.error or "")


def test_normalize_query_strips_literals() -> None:
    normalized = monitoring.normalize_query(
        "SELECT *  FROM users\n WHERE id = 42 AND name = 'bob' AND org = $1"
    )
    assert normalized == "SELECT * FROM users WHERE id = ? AND name = '?' AND org = ?"


def test_normalize_query_truncates_long_statements() -> None:
    assert len(monitoring.normalize_query("SELECT " + "a, " * 400 + "b FROM t")) == 500


@pytest.mark.asyncio
async def test_analyze_query_rejects_before_touching_the_database() -> None:
    runner = RecordingSqlRunner()
    with pytest.raises(QueryValidationError):
        await monitoring.analyze_query("DROP TABLE accounts", sql_runner=runner)
    assert runner.statements == []


@pytest.mark.asyncio
async def test_analyze_query_rejects_invalid_schema_name() -> None:
    runner = RecordingSqlRunner()
    with pytest.raises(InvalidSchemaNameError):
        await monitoring.analyze_query("SELECT 1", schema_name="bad;name", sql_runner=runner)
    assert runner.statements == []


@pytest.mark.asyncio
async def test_analyze_query_returns_plan_without_committing() -> None:
    runner = RecordingSqlRunner(rows={"EXPLAIN": [{"QUERY PLAN": '[{"Plan": {"Node Type": "Seq Scan"}}]'}]})
    plan = await monitoring.analyze_query(
        "SELECT * FROM accounts", schema_name="tenant_acme", sql_runner=runner
    )
    assert plan == [{"Plan": {"Node Type": "Seq Scan"}}]
    assert runner.statements == [
        ("tenant_acme", "EXPLAIN (FORMAT JSON, ANALYZE false) SELECT * FROM accounts")
    ]
    assert runner.transactions == [("tenant_acme", "rolled_back")]
