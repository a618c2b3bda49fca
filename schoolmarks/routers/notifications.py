from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from schoolmarks.core.router_guard import require_auth_user
from schoolmarks.db import get_db
from schoolmarks.route_logging import EndpointNameRoute
from schoolmarks.services import notification_service


router = APIRouter(prefix='/api/notifications', tags=['Notifications'], route_class=EndpointNameRoute)


@router.get('')
def list_notifications(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    return notification_service.list_notifications(
        db,
        user['user_id'],
        page=page,
        limit=limit,
        unread_only=unread_only,
    )


@router.get('/unread')
def unread_notifications(
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    payload = notification_service.list_notifications(db, user['user_id'], limit=limit, unread_only=True)
    return {'notifications': payload['notifications'], 'count': len(payload['notifications'])}


@router.get('/count')
def unread_count(request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    return {'unread_count': notification_service.unread_count(db, user['user_id'])}


@router.patch('/read-all')
def mark_all_read(request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    return {'updated': notification_service.mark_all_as_read(db, user['user_id'])}


@router.patch('/{notification_id}/read')
def mark_read(notification_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    if not notification_service.mark_as_read(db, notification_id, user['user_id']):
        raise HTTPException(status_code=404, detail='Notification not found')
    return {'id': notification_id, 'is_read': True}


@router.delete('/{notification_id}')
def delete_notification(notification_id: int, request: Request, db: Session = Depends(get_db)):
    user = require_auth_user(request)
    if not notification_service.delete_notification(db, notification_id, user['user_id']):
        raise HTTPException(status_code=404, detail='Notification not found')
    return {'id': notification_id, 'deleted': True}
