"""APScheduler integration."""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .maintenance import purge_orphaned_uploads, vacuum_database

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler | None:
    global _scheduler
    if not settings.enable_scheduler:
        return None
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        vacuum_database,
        "interval",
        hours=settings.sqlite_vacuum_hours,
        id="vacuum",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.add_job(
        purge_orphaned_uploads,
        "interval",
        hours=settings.upload_sweep_hours,
        id="upload-sweep",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
