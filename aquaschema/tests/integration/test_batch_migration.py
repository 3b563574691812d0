from __future__ import annotations

import pytest

from aquaschema.services.migrations import batch, executor
from aquaschema.tests.utils.fakes import RecordingSqlRunner, add_tenant


@pytest.mark.asyncio
async def test_batch_continues_past_a_failing_tenant(session) -> None:
    for tenant_id in ("alpha", "bravo", "charlie"):
        await add_tenant(session, tenant_id)
    await add_tenant(session, "delta", status="suspended")
    runner = RecordingSqlRunner(fail_schemas={"tenant_bravo"})

    results = await batch.run_batch_migration(
        session, version="1.0.0", executed_by="ops", sql_runner=runner
    )

    assert [(result.tenant_id, result.status) for result in results] == [
        ("alpha", "completed"),
        ("bravo", "failed"),
        ("charlie", "completed"),
    ]
    assert runner.statements_for("tenant_delta") == []

    status = await batch.get_batch_migration_status(session, "1.0.0")
    assert status.total_tenants == 3
    assert (status.completed, status.failed, status.pending, status.running) == (2, 1, 0, 0)
    failed = next(state for state in status.tenants if state.tenant_id == "bravo")
    assert failed.error


@pytest.mark.asyncio
async def test_batch_reports_unexpected_errors_as_failed_results(session, monkeypatch) -> None:
    for tenant_id in ("alpha", "bravo", "charlie"):
        await add_tenant(session, tenant_id)
    original = executor.get_tenant_schema

    async def _flaky_lookup(db_session, tenant_id: str):
        if tenant_id == "bravo":
            raise RuntimeError("lookup exploded")
        return await original(db_session, tenant_id)

    monkeypatch.setattr(executor, "get_tenant_schema", _flaky_lookup)

    results = await batch.run_batch_migration(session, version="1.0.0", sql_runner=RecordingSqlRunner())

    bravo = results[1]
    assert bravo.status == "failed"
    assert bravo.migration_id == ""
    assert bravo.execution_time_ms == 0
    assert bravo.schema_name == "tenant_bravo"
    assert bravo.error == "lookup exploded"
    assert results[0].succeeded and results[2].succeeded


@pytest.mark.asyncio
async def test_batch_skips_already_applied_tenants_as_failures(session) -> None:
    await add_tenant(session, "alpha")
    await add_tenant(session, "bravo")
    runner = RecordingSqlRunner()
    await executor.run_migration(session, tenant_id="alpha", version="1.0.0", sql_runner=runner)

    results = await batch.run_batch_migration(session, version="1.0.0", sql_runner=runner)

    assert results[0].status == "failed"
    assert "already applied" in (results[0].error or "")
    assert results[1].succeeded


@pytest.mark.asyncio
async def test_batch_status_treats_untried_and_rolled_back_as_pending(session) -> None:
    await add_tenant(session, "alpha")
    await add_tenant(session, "bravo")
    runner = RecordingSqlRunner()
    await executor.run_migration(session, tenant_id="alpha", version="1.0.0", sql_runner=runner)
    await executor.rollback_migration(session, tenant_id="alpha", version="1.0.0", sql_runner=runner)

    status = await batch.get_batch_migration_status(session, "1.0.0")

    assert status.pending == 2
    assert status.completed == 0
    assert {state.status for state in status.tenants} == {"pending"}


@pytest.mark.asyncio
async def test_batch_dry_run_leaves_status_pending(session) -> None:
    await add_tenant(session, "alpha")
    results = await batch.run_batch_migration(
        session, version="1.0.0", dry_run=True, sql_runner=RecordingSqlRunner()
    )
    assert results[0].succeeded
    status = await batch.get_batch_migration_status(session, "1.0.0")
    assert status.pending == 1
