import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from schoolmarks.config import settings
from schoolmarks.db import SessionLocal
from schoolmarks.metrics import run_timed_job
from schoolmarks.services.batch_job_service import cleanup_old_jobs
from schoolmarks.services.notification_service import cleanup_old_notifications


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task) -> None:
    run_timed_job(label, lambda: _with_db(task))


def batch_job_cleanup_job():
    _run_job('batch_job_cleanup', lambda db: cleanup_old_jobs(db))


def notification_cleanup_job():
    _run_job('notification_cleanup', lambda db: cleanup_old_notifications(db))


def _parse_hhmm(value: str, default_hour: int = 2, default_minute: int = 0) -> tuple[int, int]:
    try:
        hour_raw, minute_raw = (value or '').split(':', 1)
        hour = int(hour_raw)
        minute = int(minute_raw)
    except ValueError:
        logger.warning('scheduler_invalid_time value=%s', value)
        return default_hour, default_minute
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        logger.warning('scheduler_invalid_time value=%s', value)
        return default_hour, default_minute
    return hour, minute


def start_scheduler():
    cleanup_hour, cleanup_minute = _parse_hhmm(settings.batch_job_cleanup_time)
    scheduler.add_job(
        batch_job_cleanup_job,
        'cron',
        hour=cleanup_hour,
        minute=cleanup_minute,
        id='batch_job_cleanup',
        replace_existing=True,
    )
    notification_offset = cleanup_hour * 60 + cleanup_minute + 30
    scheduler.add_job(
        notification_cleanup_job,
        'cron',
        hour=(notification_offset // 60) % 24,
        minute=notification_offset % 60,
        id='notification_cleanup',
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
