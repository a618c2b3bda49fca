from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.domain.errors import IllegalTransitionError, MarksError, MarksValidationError
from schoolmarks.models import BatchJob, BatchJobStatus, BatchJobType
from schoolmarks.services import batch_job_service
from schoolmarks.services.marksheet_service import approve_marksheet, clean_rejection_reason, reject_marksheet
from schoolmarks.services.notification_service import NotificationDispatcher, get_notification_dispatcher


logger = logging.getLogger(__name__)

REVIEW_ACTIONS = ('approve', 'reject')


def _job_is_running(db: Session, job_id: int) -> bool:
    status = db.query(BatchJob.status).filter(BatchJob.id == job_id).scalar()
    return status == BatchJobStatus.IN_PROGRESS.value


def _record_progress(db: Session, job_id: int, *, time_provider: TimeProvider, **deltas) -> bool:
    try:
        batch_job_service.update_job_progress(db, job_id, time_provider=time_provider, **deltas)
    except IllegalTransitionError:
        logger.warning('marks_bulk_review_job_stopped job_id=%s', job_id)
        return False
    return True


def _abort_job(
    db: Session,
    job_id: int,
    error_message: str,
    *,
    dispatcher: NotificationDispatcher,
    time_provider: TimeProvider,
) -> None:
    db.rollback()
    try:
        batch_job_service.fail_job(
            db,
            job_id,
            error_message=error_message,
            dispatcher=dispatcher,
            time_provider=time_provider,
        )
    except (MarksError, SQLAlchemyError):
        db.rollback()
        logger.exception('marks_bulk_review_fail_job_failed job_id=%s', job_id)


def review_marksheets_in_batch(
    db: Session,
    *,
    marksheet_ids: list[int],
    action: str,
    reviewer_id: int,
    reason: str | None = None,
    ip_address: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Approve or reject several marksheets, tracking the run as a marks_review job.

    Each marksheet goes through its own lifecycle transaction; one failure is
    recorded against the job and the run continues with the next id. The run
    stops early when the job is cancelled, and an unexpected error marks the
    job failed before it propagates.
    """
    clean_action = (action or '').strip().lower()
    if clean_action not in REVIEW_ACTIONS:
        raise MarksValidationError('Action must be approve or reject')
    ids = list(dict.fromkeys(int(marksheet_id) for marksheet_id in marksheet_ids or []))
    if not ids:
        raise MarksValidationError('At least one marksheet id is required')
    comments = clean_rejection_reason(reason) if clean_action == 'reject' else None
    sender = dispatcher or get_notification_dispatcher()

    job = batch_job_service.create_job(
        db,
        job_type=BatchJobType.MARKS_REVIEW,
        job_name=f'Bulk {clean_action} of {len(ids)} marksheet(s)',
        initiated_by=reviewer_id,
        total_items=len(ids),
        metadata={'action': clean_action, 'marksheet_ids': ids},
        time_provider=time_provider,
    )
    job_id = job.id

    succeeded: list[int] = []
    failed: list[dict] = []
    stopped = False
    try:
        batch_job_service.start_job(db, job_id, time_provider=time_provider)
        for marksheet_id in ids:
            if not _job_is_running(db, job_id):
                stopped = True
                break
            try:
                if clean_action == 'approve':
                    approve_marksheet(
                        db,
                        marksheet_id,
                        reviewer_id=reviewer_id,
                        ip_address=ip_address,
                        dispatcher=sender,
                        time_provider=time_provider,
                    )
                else:
                    reject_marksheet(
                        db,
                        marksheet_id,
                        reviewer_id=reviewer_id,
                        reason=comments,
                        ip_address=ip_address,
                        dispatcher=sender,
                        time_provider=time_provider,
                    )
            except (MarksError, SQLAlchemyError) as exc:
                message = exc.message if isinstance(exc, MarksError) else 'Database error, operation was not applied'
                failed.append({'marksheet_id': marksheet_id, 'error': message})
                if not _record_progress(
                    db,
                    job_id,
                    failed=1,
                    error=f'Marksheet {marksheet_id}: {message}',
                    time_provider=time_provider,
                ):
                    stopped = True
                    break
                continue
            succeeded.append(marksheet_id)
            if not _record_progress(db, job_id, successful=1, time_provider=time_provider):
                stopped = True
                break

        if stopped:
            job_view = batch_job_service.get_job_status(db, job_id, time_provider=time_provider)
        else:
            summary = {'action': clean_action, 'succeeded': succeeded, 'failed': failed}
            finished = batch_job_service.complete_job(
                db,
                job_id,
                result_summary=summary,
                dispatcher=sender,
                time_provider=time_provider,
            )
            job_view = batch_job_service.format_job_status(finished, time_provider=time_provider)
    except Exception as exc:
        logger.exception('marks_bulk_review_aborted job_id=%s', job_id)
        _abort_job(
            db,
            job_id,
            f'Bulk {clean_action} aborted: {exc}',
            dispatcher=sender,
            time_provider=time_provider,
        )
        raise

    logger.info(
        'marks_bulk_review job_id=%s action=%s succeeded=%s failed=%s stopped=%s',
        job_id,
        clean_action,
        len(succeeded),
        len(failed),
        stopped,
    )
    return {
        'job': job_view,
        'succeeded': succeeded,
        'failed': failed,
        'stopped': stopped,
    }
