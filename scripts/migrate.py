from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from aquaschema.core.logging import configure_logging
from aquaschema.persistence.db import SessionLocal
from aquaschema.services.migrations import rollback_migration, run_migration


async def _run(tenant_id: str, version: str, *, dry_run: bool, rollback: bool, actor: str | None) -> bool:
    # Apply or undo a single tenant migration from the CLI.
    async with SessionLocal() as session:
        if rollback:
            result = await rollback_migration(
                session, tenant_id=tenant_id, version=version, executed_by=actor
            )
        else:
            result = await run_migration(
                session,
                tenant_id=tenant_id,
                version=version,
                dry_run=dry_run,
                executed_by=actor,
            )
    print(json.dumps(asdict(result), indent=2))
    return result.succeeded


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply or roll back a migration for one tenant")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--version", required=True)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--rollback", action="store_true")
    parser.add_argument("--actor", default="cli")
    args = parser.parse_args()
    if args.dry_run and args.rollback:
        parser.error("--dry-run cannot be combined with --rollback")

    configure_logging()
    ok = asyncio.run(
        _run(args.tenant, args.version, dry_run=args.dry_run, rollback=args.rollback, actor=args.actor)
    )
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
