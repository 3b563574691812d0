from __future__ import annotations

import argparse
import asyncio

from aquaschema.core.logging import configure_logging
from aquaschema.persistence.db import SessionLocal
from aquaschema.services.backup import create_backup


async def _run_backup(tenant_id: str | None, backup_type: str, encrypt: bool, retention_days: int | None) -> bool:
    # Capture one tenant schema (or the shared schema) for operator workflows.
    async with SessionLocal() as session:
        backup = await create_backup(
            session,
            tenant_id=tenant_id,
            backup_type=backup_type,  # type: ignore[arg-type]
            encrypt=encrypt,
            retention_days=retention_days,
        )
        print(f"backup_id={backup.id}")
        print(f"status={backup.status}")
        print(f"file_path={backup.file_path}")
        if backup.error_message:
            print(f"error={backup.error_message}")
        return backup.error_message is None


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a tenant schema backup")
    parser.add_argument("--tenant", default=None)
    parser.add_argument("--type", default="full", choices=["full", "incremental"])
    parser.add_argument("--encrypt", action="store_true")
    parser.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args()

    configure_logging()
    ok = asyncio.run(_run_backup(args.tenant, args.type, args.encrypt, args.retention_days))
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
