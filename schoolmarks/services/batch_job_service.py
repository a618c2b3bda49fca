from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from schoolmarks.config import settings
from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.domain.errors import IllegalTransitionError, MarksValidationError, NotFoundError, PermissionDeniedError
from schoolmarks.models import (
    ACTIVE_BATCH_JOB_STATUSES,
    TERMINAL_BATCH_JOB_STATUSES,
    AcademicYear,
    BatchJob,
    BatchJobStatus,
    BatchJobType,
    NotificationType,
    User,
)
from schoolmarks.services.notification_service import (
    NotificationDispatcher,
    dispatch_safely,
    get_notification_dispatcher,
)


logger = logging.getLogger(__name__)


def _load_json(raw: str | None, fallback):
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return fallback


def _append_error(job: BatchJob, message: str, *, now: datetime, fatal: bool = False) -> None:
    errors = _load_json(job.error_log_json, [])
    entry = {'timestamp': now.isoformat(), 'message': message}
    if fatal:
        entry['fatal'] = True
    errors.append(entry)
    job.error_log_json = json.dumps(errors)


def _get_job(db: Session, job_id: int, *, lock: bool = False) -> BatchJob:
    query = db.query(BatchJob).filter(BatchJob.id == job_id)
    if lock:
        query = query.with_for_update().populate_existing()
    job = query.first()
    if not job:
        raise NotFoundError('Job not found')
    return job


def _format_duration(started_at: datetime | None, completed_at: datetime | None, now: datetime) -> str | None:
    if not started_at:
        return None
    seconds = max(0, int(((completed_at or now) - started_at).total_seconds()))
    return f'{seconds // 60}m {seconds % 60}s'


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def format_job_status(job: BatchJob, *, time_provider: TimeProvider = default_time_provider) -> dict:
    return {
        'id': job.id,
        'type': job.job_type,
        'name': job.job_name,
        'status': job.status,
        'progress': {
            'percent': float(job.progress_percent or 0.0),
            'processed': job.processed_items,
            'total': job.total_items,
            'successful': job.successful_items,
            'failed': job.failed_items,
            'skipped': job.skipped_items,
        },
        'timing': {
            'started': _iso(job.started_at),
            'completed': _iso(job.completed_at),
            'estimated': _iso(job.estimated_completion),
            'duration': _format_duration(job.started_at, job.completed_at, time_provider.naive_now()),
        },
        'errors': _load_json(job.error_log_json, []),
        'results': _load_json(job.result_summary_json, {}),
        'metadata': _load_json(job.metadata_json, {}),
        'initiated_by': job.initiated_by,
        'academic_year_id': job.academic_year_id,
        'created_at': _iso(job.created_at),
    }


def create_job(
    db: Session,
    *,
    job_type: BatchJobType | str,
    job_name: str,
    initiated_by: int,
    total_items: int = 0,
    academic_year_id: int | None = None,
    metadata: dict | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> BatchJob:
    try:
        clean_type = BatchJobType(job_type).value
    except ValueError as exc:
        raise MarksValidationError(f'Unknown job type: {job_type}') from exc
    if int(total_items) < 0:
        raise MarksValidationError('Total items cannot be negative')
    now = time_provider.naive_now()
    job = BatchJob(
        job_type=clean_type,
        job_name=(job_name or clean_type).strip(),
        initiated_by=initiated_by,
        academic_year_id=academic_year_id,
        status=BatchJobStatus.PENDING.value,
        total_items=int(total_items),
        processed_items=0,
        successful_items=0,
        failed_items=0,
        skipped_items=0,
        progress_percent=0.0,
        result_summary_json='{}',
        error_log_json='[]',
        metadata_json=json.dumps(metadata or {}, default=str),
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info('batch_job_created job_id=%s type=%s total=%s initiated_by=%s', job.id, job.job_type, job.total_items, initiated_by)
    return job


def start_job(db: Session, job_id: int, *, time_provider: TimeProvider = default_time_provider) -> BatchJob:
    job = _get_job(db, job_id, lock=True)
    if job.status != BatchJobStatus.PENDING.value:
        db.rollback()
        raise IllegalTransitionError(f'Cannot start job with status: {job.status}')
    now = time_provider.naive_now()
    job.status = BatchJobStatus.IN_PROGRESS.value
    job.started_at = now
    job.updated_at = now
    db.commit()
    db.refresh(job)
    logger.info('batch_job_started job_id=%s', job.id)
    return job


def update_job_progress(
    db: Session,
    job_id: int,
    *,
    successful: int = 0,
    failed: int = 0,
    skipped: int = 0,
    error: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> BatchJob:
    """Add non-negative deltas to the job counters and re-derive progress."""
    deltas = {'successful': int(successful), 'failed': int(failed), 'skipped': int(skipped)}
    negative = [name for name, value in deltas.items() if value < 0]
    if negative:
        raise MarksValidationError(f'Progress deltas cannot be negative: {", ".join(negative)}')

    job = _get_job(db, job_id, lock=True)
    if job.status != BatchJobStatus.IN_PROGRESS.value:
        db.rollback()
        raise IllegalTransitionError(f'Cannot update progress of job with status: {job.status}')

    now = time_provider.naive_now()
    job.successful_items = int(job.successful_items or 0) + deltas['successful']
    job.failed_items = int(job.failed_items or 0) + deltas['failed']
    job.skipped_items = int(job.skipped_items or 0) + deltas['skipped']
    job.processed_items = job.successful_items + job.failed_items + job.skipped_items
    if job.total_items > 0:
        job.progress_percent = min(100.0, round(job.processed_items / job.total_items * 100.0, 2))
    if error:
        _append_error(job, error, now=now)
    if job.processed_items > 0 and job.started_at:
        elapsed = (now - job.started_at).total_seconds()
        remaining = max(0, job.total_items - job.processed_items)
        job.estimated_completion = now + timedelta(seconds=elapsed / job.processed_items * remaining)
    job.updated_at = now
    db.commit()
    db.refresh(job)
    return job


def _finish_guard(db: Session, job: BatchJob) -> None:
    if job.status not in ACTIVE_BATCH_JOB_STATUSES:
        db.rollback()
        raise IllegalTransitionError(f'Job already finished with status: {job.status}')


def complete_job(
    db: Session,
    job_id: int,
    *,
    result_summary: dict | None = None,
    dispatcher: NotificationDispatcher | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> BatchJob:
    job = _get_job(db, job_id, lock=True)
    _finish_guard(db, job)
    now = time_provider.naive_now()
    summary = result_summary or {}
    job.status = BatchJobStatus.COMPLETED.value
    job.completed_at = now
    job.updated_at = now
    job.progress_percent = 100.0
    job.result_summary_json = json.dumps(summary, default=str)
    db.commit()
    db.refresh(job)
    logger.info(
        'batch_job_completed job_id=%s successful=%s failed=%s total=%s',
        job.id,
        job.successful_items,
        job.failed_items,
        job.total_items,
    )

    sender = dispatcher or get_notification_dispatcher()
    dispatch_safely(
        'batch_job_completed',
        lambda: sender.notify_user(
            user_id=job.initiated_by,
            notification_type=NotificationType.REPORT_GENERATED,
            title=f'{job.job_name} - Completed',
            message=(
                f'Batch operation completed: {job.successful_items} successful, '
                f'{job.failed_items} failed out of {job.total_items} total.'
            ),
            data={'job_id': job.id, 'job_type': job.job_type, 'results': summary},
        ),
    )
    return job


def fail_job(
    db: Session,
    job_id: int,
    *,
    error_message: str,
    dispatcher: NotificationDispatcher | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> BatchJob:
    job = _get_job(db, job_id, lock=True)
    _finish_guard(db, job)
    now = time_provider.naive_now()
    job.status = BatchJobStatus.FAILED.value
    job.completed_at = now
    job.updated_at = now
    _append_error(job, error_message, now=now, fatal=True)
    db.commit()
    db.refresh(job)
    logger.warning('batch_job_failed job_id=%s error=%s', job.id, error_message)

    sender = dispatcher or get_notification_dispatcher()
    dispatch_safely(
        'batch_job_failed',
        lambda: sender.notify_user(
            user_id=job.initiated_by,
            notification_type=NotificationType.SYSTEM_ALERT,
            title=f'{job.job_name} - Failed',
            message=f'Batch operation failed: {error_message}',
            data={'job_id': job.id, 'job_type': job.job_type, 'error': error_message},
        ),
    )
    return job


def cancel_job(
    db: Session,
    job_id: int,
    *,
    actor_id: int,
    time_provider: TimeProvider = default_time_provider,
) -> BatchJob:
    job = _get_job(db, job_id, lock=True)
    if int(job.initiated_by) != int(actor_id):
        db.rollback()
        raise PermissionDeniedError('Not authorized to cancel this job')
    if job.status not in ACTIVE_BATCH_JOB_STATUSES:
        db.rollback()
        raise IllegalTransitionError('Cannot cancel a completed or failed job')
    now = time_provider.naive_now()
    job.status = BatchJobStatus.CANCELLED.value
    job.completed_at = now
    job.updated_at = now
    db.commit()
    db.refresh(job)
    logger.info('batch_job_cancelled job_id=%s actor_id=%s', job.id, actor_id)
    return job


def get_job_status(db: Session, job_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict:
    return format_job_status(_get_job(db, job_id), time_provider=time_provider)


def list_active_jobs_for_user(db: Session, user_id: int) -> list[dict]:
    rows = (
        db.query(BatchJob)
        .filter(BatchJob.initiated_by == user_id, BatchJob.status.in_(ACTIVE_BATCH_JOB_STATUSES))
        .order_by(BatchJob.created_at.desc(), BatchJob.id.desc())
        .all()
    )
    return [format_job_status(row) for row in rows]


def get_job_history_for_user(db: Session, user_id: int, *, limit: int = 20, offset: int = 0) -> dict:
    limit = max(1, min(int(limit or 20), 100))
    offset = max(0, int(offset or 0))
    query = db.query(BatchJob).filter(BatchJob.initiated_by == user_id)
    total = query.count()
    rows = query.order_by(BatchJob.created_at.desc(), BatchJob.id.desc()).offset(offset).limit(limit).all()
    return {'jobs': [format_job_status(row) for row in rows], 'total': total}


def list_all_active_jobs(db: Session) -> list[dict]:
    rows = (
        db.query(BatchJob, User, AcademicYear)
        .outerjoin(User, User.id == BatchJob.initiated_by)
        .outerjoin(AcademicYear, AcademicYear.id == BatchJob.academic_year_id)
        .filter(BatchJob.status.in_(ACTIVE_BATCH_JOB_STATUSES))
        .order_by(BatchJob.created_at.desc(), BatchJob.id.desc())
        .all()
    )
    items = []
    for job, initiator, academic_year in rows:
        payload = format_job_status(job)
        payload['initiator'] = (
            {'id': initiator.id, 'name': initiator.full_name, 'email': initiator.email} if initiator else None
        )
        payload['academic_year'] = academic_year.year_name if academic_year else None
        items.append(payload)
    return items


def cleanup_old_jobs(
    db: Session,
    *,
    retention_days: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> int:
    days = int(retention_days if retention_days is not None else settings.batch_job_retention_days)
    cutoff = time_provider.naive_now() - timedelta(days=days)
    deleted = (
        db.query(BatchJob)
        .filter(BatchJob.status.in_(TERMINAL_BATCH_JOB_STATUSES), BatchJob.completed_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info('batch_jobs_cleanup deleted=%s retention_days=%s', deleted, days)
    return int(deleted)
