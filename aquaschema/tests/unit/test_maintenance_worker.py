from __future__ import annotations

from aquaschema.workers.maintenance_worker import (
    WorkerSettings,
    backup_cleanup_expired,
    backup_daily,
    backup_weekly,
    metrics_cleanup,
    metrics_collect,
)


def test_worker_registers_every_maintenance_task() -> None:
    assert WorkerSettings.functions == [
        backup_daily,
        backup_weekly,
        backup_cleanup_expired,
        metrics_collect,
        metrics_cleanup,
    ]


def test_cron_schedule_matches_backup_slots() -> None:
    jobs = {job.coroutine: job for job in WorkerSettings.cron_jobs}
    assert jobs[backup_daily].hour == 2
    assert jobs[backup_weekly].hour == 3
    assert jobs[backup_cleanup_expired].hour == 4
    assert jobs[metrics_cleanup].hour == 0
    assert jobs[metrics_collect].minute == set(range(0, 60, 5))
