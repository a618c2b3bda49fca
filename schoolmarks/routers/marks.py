from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from schoolmarks.core.roles import Capability
from schoolmarks.core.router_guard import require_auth_user, require_capability
from schoolmarks.core.service_response import unwrap_result
from schoolmarks.db import get_db
from schoolmarks.domain.results import run_service
from schoolmarks.route_logging import EndpointNameRoute, resolve_client_ip
from schoolmarks.schemas import BatchReviewRequest, DraftRequest, MarksEntryRequest, RejectRequest, ValidateMarksRequest
from schoolmarks.services import marksheet_service, statistics_service
from schoolmarks.services.audit_service import MARKSHEET_ENTITY, list_audit_trail
from schoolmarks.services.bulk_review_service import review_marksheets_in_batch
from schoolmarks.services.notification_service import NotificationDispatcher, get_notification_dispatcher


router = APIRouter(prefix='/api/marks', tags=['Marks'], route_class=EndpointNameRoute)


def _mark_entries(payload) -> list[dict]:
    return [entry.model_dump() for entry in payload.marks]


@router.post('/entry')
def enter_marks(payload: MarksEntryRequest, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.ENTER_MARKS)
    result = run_service(
        marksheet_service.enter_marks,
        db,
        actor_id=user['user_id'],
        marksheet_id=payload.marksheet_id,
        subject_id=payload.subject_id,
        school_id=payload.school_id or user['school_id'] or None,
        academic_year_id=payload.academic_year_id,
        academic_year_enrollment_id=payload.academic_year_enrollment_id,
        student_subject_enrollment_id=payload.student_subject_enrollment_id,
        course_part_id=payload.course_part_id,
        class_name=payload.class_name,
        remarks=payload.remarks,
        marks=_mark_entries(payload),
        ip_address=resolve_client_ip(request),
    )
    return unwrap_result(result)


@router.post('/draft')
def auto_save_draft(payload: DraftRequest, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.ENTER_MARKS)
    result = run_service(
        marksheet_service.auto_save_draft,
        db,
        payload.marksheet_id,
        actor_id=user['user_id'],
        marks=_mark_entries(payload),
        remarks=payload.remarks,
        ip_address=resolve_client_ip(request),
    )
    return unwrap_result(result)


@router.post('/validate')
def validate_marks(payload: ValidateMarksRequest, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.ENTER_MARKS)
    return unwrap_result(run_service(marksheet_service.validate_marks, db, _mark_entries(payload)))


@router.get('/pending')
def pending_marksheets(
    request: Request,
    academic_year_id: int | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_capability(user, Capability.REVIEW_MARKSHEETS)
    rows = unwrap_result(
        run_service(
            marksheet_service.list_pending_marksheets,
            db,
            school_id=user['school_id'] or None,
            academic_year_id=academic_year_id,
            search=search,
        )
    )
    return {'marksheets': rows, 'count': len(rows)}


@router.get('/marksheets')
def list_marksheets(
    request: Request,
    academic_year_id: int | None = Query(default=None),
    subject_id: int | None = Query(default=None),
    school_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    academic_year_enrollment_id: int | None = Query(default=None),
    student_subject_enrollment_id: int | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_capability(user, Capability.VIEW_MARKSHEETS)
    result = run_service(
        marksheet_service.list_marksheets,
        db,
        academic_year_id=academic_year_id,
        subject_id=subject_id,
        school_id=school_id,
        status=status,
        academic_year_enrollment_id=academic_year_enrollment_id,
        student_subject_enrollment_id=student_subject_enrollment_id,
        page=page,
        limit=limit,
    )
    return unwrap_result(result)


@router.get('/marksheets/{marksheet_id}')
def get_marksheet(marksheet_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.VIEW_MARKSHEET)
    return unwrap_result(run_service(marksheet_service.get_marksheet, db, marksheet_id))


@router.get('/marksheets/{marksheet_id}/statistics')
def marksheet_statistics(marksheet_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.VIEW_STATISTICS)
    return unwrap_result(run_service(statistics_service.get_marksheet_statistics, db, marksheet_id))


@router.get('/marksheets/{marksheet_id}/audit')
def marksheet_audit_trail(marksheet_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.REVIEW_MARKSHEETS)
    entries = list_audit_trail(db, entity_type=MARKSHEET_ENTITY, entity_id=marksheet_id)
    return {'marksheet_id': marksheet_id, 'entries': entries}


@router.post('/marksheets/{marksheet_id}/submit')
def submit_marksheet(
    marksheet_id: int,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    user = require_auth_user(request)
    require_capability(user, Capability.ENTER_MARKS)
    result = run_service(
        marksheet_service.submit_marksheet,
        db,
        marksheet_id,
        actor_id=user['user_id'],
        ip_address=resolve_client_ip(request),
        dispatcher=dispatcher,
    )
    return unwrap_result(result)


@router.post('/approve/{marksheet_id}')
def approve_marksheet(
    marksheet_id: int,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    user = require_auth_user(request)
    require_capability(user, Capability.REVIEW_MARKSHEETS)
    result = run_service(
        marksheet_service.approve_marksheet,
        db,
        marksheet_id,
        reviewer_id=user['user_id'],
        ip_address=resolve_client_ip(request),
        dispatcher=dispatcher,
    )
    return unwrap_result(result)


@router.post('/reject/{marksheet_id}')
def reject_marksheet(
    marksheet_id: int,
    payload: RejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    user = require_auth_user(request)
    require_capability(user, Capability.REVIEW_MARKSHEETS)
    result = run_service(
        marksheet_service.reject_marksheet,
        db,
        marksheet_id,
        reviewer_id=user['user_id'],
        reason=payload.reason,
        ip_address=resolve_client_ip(request),
        dispatcher=dispatcher,
    )
    return unwrap_result(result)


@router.post('/review/batch')
def review_batch(
    payload: BatchReviewRequest,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    user = require_auth_user(request)
    require_capability(user, Capability.REVIEW_MARKSHEETS)
    result = run_service(
        review_marksheets_in_batch,
        db,
        marksheet_ids=payload.marksheet_ids,
        action=payload.action,
        reviewer_id=user['user_id'],
        reason=payload.reason,
        ip_address=resolve_client_ip(request),
        dispatcher=dispatcher,
    )
    return unwrap_result(result)


@router.delete('/marksheets/{marksheet_id}')
def delete_marksheet(marksheet_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.ENTER_MARKS)
    result = run_service(
        marksheet_service.delete_marksheet,
        db,
        marksheet_id,
        actor_id=user['user_id'],
        ip_address=resolve_client_ip(request),
    )
    return unwrap_result(result)


@router.get('/subjects/{subject_id}/statistics')
def subject_statistics(
    subject_id: int,
    request: Request,
    academic_year_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_capability(user, Capability.VIEW_STATISTICS)
    result = run_service(
        statistics_service.get_subject_statistics,
        db,
        subject_id,
        academic_year_id=academic_year_id,
    )
    return unwrap_result(result)


@router.get('/students/{enrollment_id}/marksheets')
def student_marksheets(
    enrollment_id: int,
    request: Request,
    academic_year_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_capability(user, Capability.VIEW_MARKSHEET)
    rows = unwrap_result(
        run_service(
            marksheet_service.list_student_marksheets,
            db,
            enrollment_id,
            academic_year_id=academic_year_id,
        )
    )
    return {'enrollment_id': enrollment_id, 'marksheets': rows}
