from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import sys

from aquaschema.core.logging import configure_logging
from aquaschema.domain.models import RESTORE_STATUS_COMPLETED
from aquaschema.persistence.db import SessionLocal
from aquaschema.services.backup import point_in_time_recovery, restore_from_backup


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _run_restore(args: argparse.Namespace) -> bool:
    async with SessionLocal() as session:
        if args.point_in_time:
            restore = await point_in_time_recovery(
                session, tenant_id=args.tenant, target_time=_parse_time(args.point_in_time)
            )
        else:
            tables = [item.strip() for item in args.tables.split(",") if item.strip()] if args.tables else None
            restore = await restore_from_backup(
                session,
                backup_id=args.backup_id,
                target_schema_name=args.target_schema,
                tables_to_restore=tables,
                skip_validation=args.skip_validation,
            )
        print(f"restore_id={restore.id}")
        print(f"status={restore.status}")
        if restore.error_message:
            print(f"error={restore.error_message}")
        return restore.status == RESTORE_STATUS_COMPLETED


def main() -> None:
    # Restore from a known backup id, or the newest backup before a point in time.
    parser = argparse.ArgumentParser(description="Restore a tenant schema backup")
    parser.add_argument("--backup-id", default=None)
    parser.add_argument("--target-schema", default=None)
    parser.add_argument("--tables", default=None)
    parser.add_argument("--skip-validation", action="store_true")
    parser.add_argument("--tenant", default=None)
    parser.add_argument("--point-in-time", default=None)
    args = parser.parse_args()
    if args.point_in_time and not args.tenant:
        parser.error("--point-in-time requires --tenant")
    if not args.point_in_time and not args.backup_id:
        parser.error("--backup-id is required unless --point-in-time is given")

    configure_logging()
    if not asyncio.run(_run_restore(args)):
        sys.exit(1)


if __name__ == "__main__":
    main()
