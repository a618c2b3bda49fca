from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Any

from sqlalchemy.orm import Session, joinedload

from schoolmarks.config import settings
from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.domain.errors import IllegalTransitionError, MarksError, MarksValidationError, NotFoundError
from schoolmarks.metrics import timed_service
from schoolmarks.models import (
    EDITABLE_MARKSHEET_STATUSES,
    AcademicYear,
    AuditAction,
    Mark,
    Marksheet,
    MarksheetStatus,
    School,
    Subject,
    User,
)
from schoolmarks.services.audit_service import MARKSHEET_ENTITY, marksheet_snapshot, write_audit_log
from schoolmarks.services.mark_service import (
    bulk_upsert_marks,
    calculate_totals,
    count_marks,
    serialize_mark,
    validate_mark_entries,
)
from schoolmarks.services.notification_service import (
    NotificationDispatcher,
    dispatch_safely,
    get_notification_dispatcher,
)


logger = logging.getLogger(__name__)


@contextmanager
def _transaction(db: Session, event: str, marksheet_id: int | None):
    try:
        yield
        db.commit()
    except MarksError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.exception('%s_failed marksheet_id=%s', event, marksheet_id)
        raise


def _lock_marksheet(db: Session, marksheet_id: int) -> Marksheet:
    marksheet = (
        db.query(Marksheet)
        .filter(Marksheet.id == marksheet_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not marksheet:
        raise NotFoundError('Marksheet not found')
    return marksheet


def _user_name(db: Session, user_id: int | None) -> str:
    if not user_id:
        return 'Unknown'
    user = db.query(User).filter(User.id == user_id).first()
    return user.full_name if user else 'Unknown'


def _subject_name(marksheet: Marksheet) -> str:
    return marksheet.subject.name if marksheet.subject else 'Unknown Subject'


def _class_name(marksheet: Marksheet) -> str:
    return marksheet.class_name or 'Unknown Class'


def serialize_marksheet(marksheet: Marksheet, *, include_marks: bool = True) -> dict:
    marks = list(marksheet.marks or [])
    payload = {
        'id': marksheet.id,
        'subject_id': marksheet.subject_id,
        'subject': _subject_name(marksheet),
        'school_id': marksheet.school_id,
        'academic_year_id': marksheet.academic_year_id,
        'academic_year_enrollment_id': marksheet.academic_year_enrollment_id,
        'student_subject_enrollment_id': marksheet.student_subject_enrollment_id,
        'course_part_id': marksheet.course_part_id,
        'class_name': marksheet.class_name,
        'marks_obtained': marksheet.marks_obtained,
        'max_marks': marksheet.max_marks,
        'status': marksheet.status,
        'remarks': marksheet.remarks,
        'rejection_comments': marksheet.rejection_comments,
        'submitted_by': marksheet.submitted_by,
        'submitted_at': marksheet.submitted_at.isoformat() if marksheet.submitted_at else None,
        'approved_by': marksheet.approved_by,
        'approved_at': marksheet.approved_at.isoformat() if marksheet.approved_at else None,
        'is_locked': bool(marksheet.is_locked),
        'last_auto_save': marksheet.last_auto_save.isoformat() if marksheet.last_auto_save else None,
        'created_by': marksheet.created_by,
        'created_at': marksheet.created_at.isoformat() if marksheet.created_at else None,
        'modified_by': marksheet.modified_by,
        'modified_at': marksheet.modified_at.isoformat() if marksheet.modified_at else None,
        'totals': calculate_totals(marks),
    }
    if include_marks:
        payload['marks'] = [serialize_mark(mark) for mark in marks]
    return payload


def _ensure_editable(marksheet: Marksheet) -> None:
    if marksheet.status not in EDITABLE_MARKSHEET_STATUSES or marksheet.is_locked:
        raise IllegalTransitionError(f'Cannot edit marksheet with status: {marksheet.status}')


def _require_reference(db: Session, model, ref_id: int | None, message: str) -> None:
    if not ref_id or not db.query(model.id).filter(model.id == ref_id).first():
        raise NotFoundError(message)


def _create_marksheet(
    db: Session,
    *,
    actor_id: int,
    subject_id: int | None,
    school_id: int | None,
    academic_year_id: int | None,
    academic_year_enrollment_id: int | None,
    student_subject_enrollment_id: int | None,
    course_part_id: int | None,
    class_name: str,
    remarks: str | None,
    now,
) -> Marksheet:
    _require_reference(db, Subject, subject_id, 'Subject not found')
    _require_reference(db, School, school_id, 'School not found')
    _require_reference(db, AcademicYear, academic_year_id, 'Academic year not found')
    if student_subject_enrollment_id:
        duplicate = (
            db.query(Marksheet.id)
            .filter(
                Marksheet.student_subject_enrollment_id == student_subject_enrollment_id,
                Marksheet.course_part_id.is_(None) if course_part_id is None else Marksheet.course_part_id == course_part_id,
                Marksheet.academic_year_id == academic_year_id,
            )
            .first()
        )
        if duplicate:
            raise MarksValidationError(
                'Marksheet already exists for this enrollment, course part and academic year'
            )
    marksheet = Marksheet(
        subject_id=subject_id,
        school_id=school_id,
        academic_year_id=academic_year_id,
        academic_year_enrollment_id=academic_year_enrollment_id,
        student_subject_enrollment_id=student_subject_enrollment_id,
        course_part_id=course_part_id,
        class_name=class_name or '',
        remarks=remarks,
        status=MarksheetStatus.DRAFT.value,
        marks_obtained=0.0,
        max_marks=0,
        is_locked=False,
        created_by=actor_id,
        created_at=now,
        modified_by=actor_id,
        modified_at=now,
    )
    db.add(marksheet)
    db.flush()
    return marksheet


@timed_service('enter_marks')
def enter_marks(
    db: Session,
    *,
    actor_id: int,
    marksheet_id: int | None = None,
    subject_id: int | None = None,
    school_id: int | None = None,
    academic_year_id: int | None = None,
    academic_year_enrollment_id: int | None = None,
    student_subject_enrollment_id: int | None = None,
    course_part_id: int | None = None,
    class_name: str = '',
    remarks: str | None = None,
    marks: list[Any] | None = None,
    ip_address: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Create a Draft marksheet, or edit a Draft/rejected one, and upsert its marks.

    Mark entries follow the best-effort batch contract: invalid entries are
    reported under ``marks.failed`` while the rest are saved.
    """
    now = time_provider.naive_now()
    entries = list(marks or [])
    with _transaction(db, 'marks_entry', marksheet_id):
        if marksheet_id:
            marksheet = _lock_marksheet(db, marksheet_id)
            _ensure_editable(marksheet)
            before = marksheet_snapshot(marksheet)
            if remarks is not None:
                marksheet.remarks = remarks
            if class_name:
                marksheet.class_name = class_name
            marksheet.modified_by = actor_id
            marksheet.modified_at = now
            action = AuditAction.UPDATE
        else:
            marksheet = _create_marksheet(
                db,
                actor_id=actor_id,
                subject_id=subject_id,
                school_id=school_id,
                academic_year_id=academic_year_id,
                academic_year_enrollment_id=academic_year_enrollment_id,
                student_subject_enrollment_id=student_subject_enrollment_id,
                course_part_id=course_part_id,
                class_name=class_name,
                remarks=remarks,
                now=now,
            )
            before = None
            action = AuditAction.CREATE

        batch_result = bulk_upsert_marks(db, marksheet.id, entries, time_provider=time_provider)
        write_audit_log(
            db,
            actor_id=actor_id,
            action=action,
            entity_type=MARKSHEET_ENTITY,
            entity_id=marksheet.id,
            before=before,
            after=marksheet_snapshot(marksheet),
            details={
                'status': marksheet.status,
                'subject_id': marksheet.subject_id,
                'marks_count': len(entries),
                'marks_result': batch_result.counts(),
            },
            ip_address=ip_address,
            time_provider=time_provider,
        )
    db.refresh(marksheet)
    logger.info(
        'marksheet_%s marksheet_id=%s actor_id=%s',
        'created' if action == AuditAction.CREATE else 'updated',
        marksheet.id,
        actor_id,
    )
    return {'marksheet': serialize_marksheet(marksheet), 'marks': batch_result.as_dict()}


def auto_save_draft(
    db: Session,
    marksheet_id: int,
    *,
    actor_id: int,
    marks: list[Any] | None = None,
    remarks: str | None = None,
    ip_address: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    now = time_provider.naive_now()
    entries = list(marks or [])
    with _transaction(db, 'marks_auto_save', marksheet_id):
        marksheet = _lock_marksheet(db, marksheet_id)
        _ensure_editable(marksheet)
        before = marksheet_snapshot(marksheet)
        if remarks is not None:
            marksheet.remarks = remarks
        batch_result = bulk_upsert_marks(db, marksheet.id, entries, time_provider=time_provider)
        marksheet.last_auto_save = now
        marksheet.modified_by = actor_id
        marksheet.modified_at = now
        write_audit_log(
            db,
            actor_id=actor_id,
            action=AuditAction.UPDATE,
            entity_type=MARKSHEET_ENTITY,
            entity_id=marksheet.id,
            before=before,
            after=marksheet_snapshot(marksheet),
            details={'auto_save': True, 'marks_result': batch_result.counts()},
            ip_address=ip_address,
            time_provider=time_provider,
        )
    db.refresh(marksheet)
    logger.info('marksheet_auto_saved marksheet_id=%s actor_id=%s', marksheet.id, actor_id)
    return {
        'marksheet_id': marksheet.id,
        'last_auto_save': marksheet.last_auto_save.isoformat() if marksheet.last_auto_save else None,
        'marks': batch_result.as_dict(),
    }


def submit_marksheet(
    db: Session,
    marksheet_id: int,
    *,
    actor_id: int,
    ip_address: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    now = time_provider.naive_now()
    with _transaction(db, 'marksheet_submit', marksheet_id):
        marksheet = _lock_marksheet(db, marksheet_id)
        if marksheet.status not in EDITABLE_MARKSHEET_STATUSES:
            raise IllegalTransitionError(f'Cannot submit marksheet with status: {marksheet.status}')
        if count_marks(db, marksheet.id) == 0:
            raise IllegalTransitionError('Cannot submit marksheet without any marks')
        before = marksheet_snapshot(marksheet)
        marksheet.status = MarksheetStatus.SUBMITTED.value
        marksheet.submitted_by = actor_id
        marksheet.submitted_at = now
        marksheet.modified_by = actor_id
        marksheet.modified_at = now
        write_audit_log(
            db,
            actor_id=actor_id,
            action=AuditAction.SUBMIT,
            entity_type=MARKSHEET_ENTITY,
            entity_id=marksheet.id,
            before=before,
            after=marksheet_snapshot(marksheet),
            details={'status': marksheet.status},
            ip_address=ip_address,
            time_provider=time_provider,
        )
    db.refresh(marksheet)
    logger.info('marksheet_submitted marksheet_id=%s actor_id=%s', marksheet.id, actor_id)

    sender = dispatcher or get_notification_dispatcher()
    teacher_name = _user_name(db, actor_id)
    dispatch_safely(
        'marks_submitted',
        lambda: sender.notify_submitted(
            school_id=marksheet.school_id,
            teacher_name=teacher_name,
            class_name=_class_name(marksheet),
            subject_name=_subject_name(marksheet),
            marksheet_id=marksheet.id,
        ),
    )
    return serialize_marksheet(marksheet)


def approve_marksheet(
    db: Session,
    marksheet_id: int,
    *,
    reviewer_id: int,
    ip_address: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    now = time_provider.naive_now()
    with _transaction(db, 'marksheet_approve', marksheet_id):
        marksheet = _lock_marksheet(db, marksheet_id)
        if marksheet.status != MarksheetStatus.SUBMITTED.value:
            raise IllegalTransitionError(
                f'Cannot approve marksheet with status: {marksheet.status}. '
                'Only submitted marksheets can be approved.'
            )
        before = marksheet_snapshot(marksheet)
        marksheet.status = MarksheetStatus.APPROVED.value
        marksheet.approved_by = reviewer_id
        marksheet.approved_at = now
        marksheet.is_locked = True
        marksheet.modified_by = reviewer_id
        marksheet.modified_at = now
        write_audit_log(
            db,
            actor_id=reviewer_id,
            action=AuditAction.APPROVE,
            entity_type=MARKSHEET_ENTITY,
            entity_id=marksheet.id,
            before=before,
            after=marksheet_snapshot(marksheet),
            details={'previous_status': before['status'], 'new_status': marksheet.status},
            ip_address=ip_address,
            time_provider=time_provider,
        )
    db.refresh(marksheet)
    logger.info('marksheet_approved marksheet_id=%s reviewer_id=%s', marksheet.id, reviewer_id)

    if marksheet.submitted_by:
        sender = dispatcher or get_notification_dispatcher()
        approver_name = _user_name(db, reviewer_id)
        dispatch_safely(
            'marks_approved',
            lambda: sender.notify_approved(
                teacher_user_id=marksheet.submitted_by,
                class_name=_class_name(marksheet),
                subject_name=_subject_name(marksheet),
                marksheet_id=marksheet.id,
                approver_name=approver_name,
            ),
        )
    return serialize_marksheet(marksheet)


def clean_rejection_reason(reason: str | None) -> str:
    """Validate a rejection reason before any transaction is opened."""
    cleaned = (reason or '').strip()
    if not cleaned:
        raise MarksValidationError('Rejection reason is required')
    min_length = settings.rejection_reason_min_length
    if len(cleaned) < min_length:
        raise MarksValidationError(f'Rejection reason must be at least {min_length} characters')
    return cleaned


def reject_marksheet(
    db: Session,
    marksheet_id: int,
    *,
    reviewer_id: int,
    reason: str | None,
    ip_address: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    comments = clean_rejection_reason(reason)
    now = time_provider.naive_now()
    with _transaction(db, 'marksheet_reject', marksheet_id):
        marksheet = _lock_marksheet(db, marksheet_id)
        if marksheet.status != MarksheetStatus.SUBMITTED.value:
            raise IllegalTransitionError(
                f'Cannot reject marksheet with status: {marksheet.status}. '
                'Only submitted marksheets can be rejected.'
            )
        before = marksheet_snapshot(marksheet)
        marksheet.status = MarksheetStatus.REJECTED.value
        marksheet.rejection_comments = comments
        marksheet.approved_by = reviewer_id
        marksheet.approved_at = now
        marksheet.modified_by = reviewer_id
        marksheet.modified_at = now
        write_audit_log(
            db,
            actor_id=reviewer_id,
            action=AuditAction.REJECT,
            entity_type=MARKSHEET_ENTITY,
            entity_id=marksheet.id,
            before=before,
            after=marksheet_snapshot(marksheet),
            details={
                'previous_status': before['status'],
                'new_status': marksheet.status,
                'rejection_reason': comments,
            },
            ip_address=ip_address,
            time_provider=time_provider,
        )
    db.refresh(marksheet)
    logger.info('marksheet_rejected marksheet_id=%s reviewer_id=%s', marksheet.id, reviewer_id)

    if marksheet.submitted_by:
        sender = dispatcher or get_notification_dispatcher()
        rejector_name = _user_name(db, reviewer_id)
        dispatch_safely(
            'marks_rejected',
            lambda: sender.notify_rejected(
                teacher_user_id=marksheet.submitted_by,
                class_name=_class_name(marksheet),
                subject_name=_subject_name(marksheet),
                marksheet_id=marksheet.id,
                rejection_comments=comments,
                rejector_name=rejector_name,
            ),
        )
    return serialize_marksheet(marksheet)


def delete_marksheet(
    db: Session,
    marksheet_id: int,
    *,
    actor_id: int,
    ip_address: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    with _transaction(db, 'marksheet_delete', marksheet_id):
        marksheet = _lock_marksheet(db, marksheet_id)
        if marksheet.status not in EDITABLE_MARKSHEET_STATUSES or marksheet.is_locked:
            raise IllegalTransitionError(f'Cannot delete marksheet with status: {marksheet.status}')
        write_audit_log(
            db,
            actor_id=actor_id,
            action=AuditAction.DELETE,
            entity_type=MARKSHEET_ENTITY,
            entity_id=marksheet.id,
            before=marksheet_snapshot(marksheet),
            details={'marks_count': count_marks(db, marksheet.id)},
            ip_address=ip_address,
            time_provider=time_provider,
        )
        db.delete(marksheet)
    logger.info('marksheet_deleted marksheet_id=%s actor_id=%s', marksheet_id, actor_id)
    return {'id': marksheet_id, 'deleted': True}


def get_marksheet(db: Session, marksheet_id: int) -> dict:
    marksheet = (
        db.query(Marksheet)
        .options(joinedload(Marksheet.subject), joinedload(Marksheet.marks).joinedload(Mark.subject))
        .filter(Marksheet.id == marksheet_id)
        .first()
    )
    if not marksheet:
        raise NotFoundError('Marksheet not found')
    return serialize_marksheet(marksheet)


def _page_params(page: int | None, limit: int | None) -> tuple[int, int]:
    clean_page = max(1, int(page or 1))
    clean_limit = int(limit or settings.marks_page_limit_default)
    clean_limit = max(1, min(clean_limit, settings.marks_page_limit_max))
    return clean_page, clean_limit


@timed_service('list_marksheets')
def list_marksheets(
    db: Session,
    *,
    academic_year_id: int | None = None,
    subject_id: int | None = None,
    school_id: int | None = None,
    status: str | None = None,
    academic_year_enrollment_id: int | None = None,
    student_subject_enrollment_id: int | None = None,
    page: int | None = 1,
    limit: int | None = None,
) -> dict:
    page, limit = _page_params(page, limit)
    query = db.query(Marksheet)
    if academic_year_id:
        query = query.filter(Marksheet.academic_year_id == academic_year_id)
    if subject_id:
        query = query.filter(Marksheet.subject_id == subject_id)
    if school_id:
        query = query.filter(Marksheet.school_id == school_id)
    if status:
        query = query.filter(Marksheet.status == status)
    if academic_year_enrollment_id:
        query = query.filter(Marksheet.academic_year_enrollment_id == academic_year_enrollment_id)
    if student_subject_enrollment_id:
        query = query.filter(Marksheet.student_subject_enrollment_id == student_subject_enrollment_id)

    total = query.count()
    rows = (
        query.options(joinedload(Marksheet.subject), joinedload(Marksheet.marks))
        .order_by(Marksheet.created_at.desc(), Marksheet.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        'marksheets': [serialize_marksheet(row, include_marks=False) for row in rows],
        'pagination': {
            'total': total,
            'page': page,
            'limit': limit,
            'total_pages': (total + limit - 1) // limit,
        },
    }


def list_pending_marksheets(
    db: Session,
    *,
    school_id: int | None = None,
    academic_year_id: int | None = None,
    search: str | None = None,
) -> list[dict]:
    query = (
        db.query(Marksheet)
        .join(Subject, Subject.id == Marksheet.subject_id)
        .filter(Marksheet.status == MarksheetStatus.SUBMITTED.value)
    )
    if school_id:
        query = query.filter(Marksheet.school_id == school_id)
    if academic_year_id:
        query = query.filter(Marksheet.academic_year_id == academic_year_id)
    term = (search or '').strip()
    if term:
        query = query.filter(Subject.name.ilike(f'%{term}%'))
    rows = (
        query.options(joinedload(Marksheet.marks))
        .order_by(Marksheet.submitted_at.desc(), Marksheet.id.desc())
        .all()
    )
    return [serialize_marksheet(row) for row in rows]


def list_student_marksheets(
    db: Session,
    academic_year_enrollment_id: int,
    *,
    academic_year_id: int | None = None,
) -> list[dict]:
    query = db.query(Marksheet).filter(Marksheet.academic_year_enrollment_id == academic_year_enrollment_id)
    if academic_year_id:
        query = query.filter(Marksheet.academic_year_id == academic_year_id)
    rows = (
        query.options(joinedload(Marksheet.subject), joinedload(Marksheet.marks))
        .order_by(Marksheet.created_at.desc(), Marksheet.id.desc())
        .all()
    )
    return [serialize_marksheet(row) for row in rows]


def validate_marks(db: Session, entries: list[Any]) -> dict:
    return validate_mark_entries(db, list(entries or []))
