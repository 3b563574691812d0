from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from aquaschema.core.config import get_settings
from aquaschema.core.logging import configure_logging
from aquaschema.persistence.db import SessionLocal
from aquaschema.services.maintenance import MaintenanceTask, run_maintenance_task


logger = logging.getLogger(__name__)


async def _run(task: MaintenanceTask) -> int:
    # Each cron tick gets its own session so a failed sweep cannot poison the next.
    async with SessionLocal() as session:
        count = await run_maintenance_task(session, task)
    logger.info("maintenance_task_finished task=%s count=%s", task, count)
    return count


async def backup_daily(ctx) -> int:
    return await _run("backup_daily")


async def backup_weekly(ctx) -> int:
    return await _run("backup_weekly")


async def backup_cleanup_expired(ctx) -> int:
    return await _run("backup_cleanup_expired")


async def metrics_collect(ctx) -> int:
    return await _run("metrics_collect")


async def metrics_cleanup(ctx) -> int:
    return await _run("metrics_cleanup")


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("maintenance_worker_started")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    functions = [
        backup_daily,
        backup_weekly,
        backup_cleanup_expired,
        metrics_collect,
        metrics_cleanup,
    ]
    # Fixed UTC schedule mirroring the documented cron expressions in settings.
    cron_jobs = [
        cron(backup_daily, hour=2, minute=0),
        cron(backup_weekly, weekday="sun", hour=3, minute=0),
        cron(backup_cleanup_expired, hour=4, minute=0),
        cron(metrics_collect, minute=set(range(0, 60, 5))),
        cron(metrics_cleanup, hour=0, minute=0),
    ]
    on_startup = _startup
