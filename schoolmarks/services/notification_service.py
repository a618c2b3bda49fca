from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from schoolmarks.config import settings
from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.db import SessionLocal
from schoolmarks.models import Notification, NotificationType, Role, User


logger = logging.getLogger(__name__)

MARKSHEET_REFERENCE = 'marksheet'


class NotificationDispatcher:
    """Side channel informed of marksheet transitions and batch-job outcomes.

    Every method returns True when the notification was recorded. Callers treat
    False (or an exception) as non-fatal.
    """

    def notify_submitted(
        self,
        *,
        school_id: int,
        teacher_name: str,
        class_name: str,
        subject_name: str,
        marksheet_id: int,
    ) -> bool:
        raise NotImplementedError

    def notify_approved(
        self,
        *,
        teacher_user_id: int,
        class_name: str,
        subject_name: str,
        marksheet_id: int,
        approver_name: str,
    ) -> bool:
        raise NotImplementedError

    def notify_rejected(
        self,
        *,
        teacher_user_id: int,
        class_name: str,
        subject_name: str,
        marksheet_id: int,
        rejection_comments: str,
        rejector_name: str,
    ) -> bool:
        raise NotImplementedError

    def notify_user(
        self,
        *,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        raise NotImplementedError


class NullNotificationDispatcher(NotificationDispatcher):
    def notify_submitted(self, **_kwargs) -> bool:
        return False

    def notify_approved(self, **_kwargs) -> bool:
        return False

    def notify_rejected(self, **_kwargs) -> bool:
        return False

    def notify_user(self, **_kwargs) -> bool:
        return False


class DatabaseNotificationDispatcher(NotificationDispatcher):
    """Stores in-app notifications using its own session, never the caller's."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        time_provider: TimeProvider = default_time_provider,
    ):
        self._session_factory = session_factory
        self._time_provider = time_provider

    def _store(self, rows: list[Notification]) -> bool:
        if not rows:
            return False
        db = self._session_factory()
        try:
            now = self._time_provider.naive_now()
            for row in rows:
                row.created_at = now
                db.add(row)
            db.commit()
            return True
        except Exception:
            db.rollback()
            logger.exception('notification_store_failed count=%s', len(rows))
            return False
        finally:
            db.close()

    def _principal_ids(self, school_id: int) -> list[int]:
        db = self._session_factory()
        try:
            rows = (
                db.query(User.id)
                .filter(
                    User.role == Role.PRINCIPAL.value,
                    User.is_active.is_(True),
                    or_(User.school_id == school_id, User.school_id.is_(None)),
                )
                .order_by(User.id.asc())
                .all()
            )
            return [int(row.id) for row in rows]
        finally:
            db.close()

    def notify_submitted(
        self,
        *,
        school_id: int,
        teacher_name: str,
        class_name: str,
        subject_name: str,
        marksheet_id: int,
    ) -> bool:
        principal_ids = self._principal_ids(school_id)
        if not principal_ids:
            logger.warning('marks_submitted_no_principal school_id=%s marksheet_id=%s', school_id, marksheet_id)
            return False
        data = {
            'teacher_name': teacher_name,
            'class_name': class_name,
            'subject_name': subject_name,
            'marksheet_id': marksheet_id,
        }
        rows = [
            Notification(
                user_id=principal_id,
                type=NotificationType.MARKS_SUBMITTED.value,
                title='New Marks Submission',
                message=f'{teacher_name} has submitted marks for {subject_name} in {class_name} for approval.',
                data_json=json.dumps(data),
                reference_type=MARKSHEET_REFERENCE,
                reference_id=marksheet_id,
            )
            for principal_id in principal_ids
        ]
        return self._store(rows)

    def notify_approved(
        self,
        *,
        teacher_user_id: int,
        class_name: str,
        subject_name: str,
        marksheet_id: int,
        approver_name: str,
    ) -> bool:
        data = {
            'class_name': class_name,
            'subject_name': subject_name,
            'marksheet_id': marksheet_id,
            'approver_name': approver_name,
        }
        return self._store(
            [
                Notification(
                    user_id=teacher_user_id,
                    type=NotificationType.MARKS_APPROVED.value,
                    title='Marks Approved',
                    message=(
                        f'Your marks submission for {subject_name} in {class_name} '
                        f'has been approved by {approver_name}.'
                    ),
                    data_json=json.dumps(data),
                    reference_type=MARKSHEET_REFERENCE,
                    reference_id=marksheet_id,
                )
            ]
        )

    def notify_rejected(
        self,
        *,
        teacher_user_id: int,
        class_name: str,
        subject_name: str,
        marksheet_id: int,
        rejection_comments: str,
        rejector_name: str,
    ) -> bool:
        data = {
            'class_name': class_name,
            'subject_name': subject_name,
            'marksheet_id': marksheet_id,
            'rejection_comments': rejection_comments,
            'rejector_name': rejector_name,
        }
        return self._store(
            [
                Notification(
                    user_id=teacher_user_id,
                    type=NotificationType.MARKS_REJECTED.value,
                    title='Marks Rejected',
                    message=(
                        f'Your marks submission for {subject_name} in {class_name} was rejected. '
                        f'Reason: {rejection_comments}'
                    ),
                    data_json=json.dumps(data),
                    reference_type=MARKSHEET_REFERENCE,
                    reference_id=marksheet_id,
                )
            ]
        )

    def notify_user(
        self,
        *,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        return self._store(
            [
                Notification(
                    user_id=user_id,
                    type=notification_type.value,
                    title=title,
                    message=message,
                    data_json=json.dumps(data or {}, default=str),
                )
            ]
        )


_dispatcher: NotificationDispatcher | None = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        if settings.enable_notifications:
            _dispatcher = DatabaseNotificationDispatcher()
        else:
            _dispatcher = NullNotificationDispatcher()
    return _dispatcher


def set_notification_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def dispatch_safely(label: str, send: Callable[[], bool]) -> bool:
    """Run a dispatcher call after commit; failures are logged, never raised."""
    try:
        sent = bool(send())
    except Exception:
        logger.exception('notification_dispatch_failed event=%s', label)
        return False
    if not sent:
        logger.warning('notification_not_sent event=%s', label)
    return sent


def serialize_notification(row: Notification) -> dict:
    return {
        'id': row.id,
        'type': row.type,
        'title': row.title,
        'message': row.message,
        'data': json.loads(row.data_json or '{}'),
        'is_read': bool(row.is_read),
        'read_at': row.read_at.isoformat() if row.read_at else None,
        'reference_type': row.reference_type,
        'reference_id': row.reference_id,
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }


def list_notifications(
    db: Session,
    user_id: int,
    *,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
) -> dict:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 20), 100))
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    total = query.count()
    rows = (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        'notifications': [serialize_notification(row) for row in rows],
        'pagination': {
            'total': total,
            'page': page,
            'limit': limit,
            'total_pages': (total + limit - 1) // limit,
        },
    }


def unread_count(db: Session, user_id: int) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def mark_as_read(
    db: Session,
    notification_id: int,
    user_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> bool:
    updated = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .update({'is_read': True, 'read_at': time_provider.naive_now()}, synchronize_session=False)
    )
    db.commit()
    return updated > 0


def mark_all_as_read(db: Session, user_id: int, *, time_provider: TimeProvider = default_time_provider) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({'is_read': True, 'read_at': time_provider.naive_now()}, synchronize_session=False)
    )
    db.commit()
    return int(updated)


def delete_notification(db: Session, notification_id: int, user_id: int) -> bool:
    deleted = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


def cleanup_old_notifications(
    db: Session,
    *,
    days_old: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> int:
    retention = int(days_old if days_old is not None else settings.notification_retention_days)
    cutoff = time_provider.naive_now() - timedelta(days=retention)
    deleted = (
        db.query(Notification)
        .filter(Notification.created_at < cutoff, Notification.is_read.is_(True))
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info('notifications_cleanup deleted=%s retention_days=%s', deleted, retention)
    return int(deleted)
