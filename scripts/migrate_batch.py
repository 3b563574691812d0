from __future__ import annotations

import argparse
import asyncio

from aquaschema.core.logging import configure_logging
from aquaschema.persistence.db import SessionLocal
from aquaschema.services.migrations import get_batch_migration_status, run_batch_migration


async def _run_batch(version: str, dry_run: bool, actor: str | None) -> int:
    # Roll a version across every active tenant, one tenant at a time.
    async with SessionLocal() as session:
        results = await run_batch_migration(
            session, version=version, dry_run=dry_run, executed_by=actor
        )
        for result in results:
            line = f"tenant={result.tenant_id} status={result.status} elapsed_ms={result.execution_time_ms}"
            if result.error:
                line += f" error={result.error}"
            print(line)
        status = await get_batch_migration_status(session, version)
    print(
        f"version={status.version} total={status.total_tenants} completed={status.completed} "
        f"pending={status.pending} failed={status.failed}"
    )
    return sum(1 for result in results if not result.succeeded)


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply a migration to all active tenants")
    parser.add_argument("--version", required=True)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--actor", default="cli")
    args = parser.parse_args()

    configure_logging()
    failures = asyncio.run(_run_batch(args.version, args.dry_run, args.actor))
    raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
    main()
