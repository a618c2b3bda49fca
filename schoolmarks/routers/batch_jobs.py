from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from schoolmarks.core.roles import Capability
from schoolmarks.core.router_guard import require_auth_user, require_capability
from schoolmarks.core.service_response import unwrap_result
from schoolmarks.db import get_db
from schoolmarks.domain.results import run_service
from schoolmarks.route_logging import EndpointNameRoute
from schoolmarks.services import batch_job_service


router = APIRouter(prefix='/api/batch-jobs', tags=['Batch Jobs'], route_class=EndpointNameRoute)


@router.get('/active')
def active_jobs(request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    jobs = batch_job_service.list_active_jobs_for_user(db, user['user_id'])
    return {'jobs': jobs, 'count': len(jobs)}


@router.get('/history')
def job_history(
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    history = batch_job_service.get_job_history_for_user(db, user['user_id'], limit=limit, offset=offset)
    return {**history, 'limit': limit, 'offset': offset}


@router.get('/admin/active')
def all_active_jobs(request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.MONITOR_BATCH_JOBS)
    jobs = batch_job_service.list_all_active_jobs(db)
    return {'jobs': jobs, 'count': len(jobs)}


@router.post('/admin/cleanup')
def cleanup_jobs(request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    require_capability(user, Capability.MONITOR_BATCH_JOBS)
    deleted = unwrap_result(run_service(batch_job_service.cleanup_old_jobs, db))
    return {'deleted_count': deleted}


@router.get('/{job_id}')
def job_status(job_id: int, request: Request, db: Session = Depends(get_db)):
    require_auth_user(request)
    return unwrap_result(run_service(batch_job_service.get_job_status, db, job_id))


@router.post('/{job_id}/cancel')
def cancel_job(job_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    job = unwrap_result(run_service(batch_job_service.cancel_job, db, job_id, actor_id=user['user_id']))
    return batch_job_service.format_job_status(job)
