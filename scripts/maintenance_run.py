from __future__ import annotations

import argparse
import asyncio

from aquaschema.core.logging import configure_logging
from aquaschema.persistence.db import SessionLocal
from aquaschema.services.maintenance import run_maintenance_task


_TASKS = ["backup_daily", "backup_weekly", "backup_cleanup_expired", "metrics_collect", "metrics_cleanup"]


async def _run(task: str) -> None:
    # Run one scheduled maintenance task out of band.
    async with SessionLocal() as session:
        count = await run_maintenance_task(session, task)  # type: ignore[arg-type]
    print(f"task={task} count={count}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a maintenance task once")
    parser.add_argument("task", choices=_TASKS)
    args = parser.parse_args()

    configure_logging()
    asyncio.run(_run(args.task))


if __name__ == "__main__":
    main()
