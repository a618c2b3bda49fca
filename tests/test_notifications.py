import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from schoolmarks.core.time_provider import TimeProvider
from schoolmarks.db import Base, get_db
from schoolmarks.models import Notification, NotificationType, School, User
from schoolmarks.routers import notifications as notifications_router
from schoolmarks.services import notification_service
from schoolmarks.services.auth_service import issue_access_token
from schoolmarks.services.notification_service import DatabaseNotificationDispatcher, dispatch_safely


class FixedTimeProvider(TimeProvider):
    def __init__(self, fixed_now: datetime):
        self._fixed_now = fixed_now

    def now(self) -> datetime:
        return self._fixed_now


class NotificationTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_notifications.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

        app = FastAPI()
        app.include_router(notifications_router.router)

        def override_get_db():
            db = cls._session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls):
        cls.client.close()
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.time_provider = FixedTimeProvider(datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc))
        self.dispatcher = DatabaseNotificationDispatcher(self._session_factory, time_provider=self.time_provider)
        db = self._session_factory()
        try:
            db.query(Notification).delete()
            db.query(User).delete()
            db.query(School).delete()
            school = School(name='Eastbrook School', code='EBS')
            other_school = School(name='Westbrook School', code='WBS')
            db.add_all([school, other_school])
            db.flush()
            teacher = User(email='teacher@example.com', first_name='Maya', last_name='Lindqvist', role='teacher', school_id=school.id)
            principal = User(email='principal@example.com', first_name='Omar', last_name='Haddad', role='principal', school_id=school.id)
            district_principal = User(email='district@example.com', first_name='Grace', last_name='Achieng', role='principal', school_id=None)
            elsewhere = User(email='west@example.com', first_name='Pavel', last_name='Novak', role='principal', school_id=other_school.id)
            inactive = User(email='retired@example.com', first_name='Ruth', last_name='Bell', role='principal', school_id=school.id, is_active=False)
            db.add_all([teacher, principal, district_principal, elsewhere, inactive])
            db.commit()
            self.school_id = school.id
            self.teacher_id = teacher.id
            self.principal_id = principal.id
            self.district_principal_id = district_principal.id
            self.teacher_headers = {'Authorization': f"Bearer {issue_access_token(teacher)['token']}"}
            self.principal_headers = {'Authorization': f"Bearer {issue_access_token(principal)['token']}"}
        finally:
            db.close()

    def test_submission_reaches_active_principals_of_the_school(self):
        sent = self.dispatcher.notify_submitted(
            school_id=self.school_id,
            teacher_name='Maya Lindqvist',
            class_name='Grade 7 A',
            subject_name='Geography',
            marksheet_id=55,
        )
        self.assertTrue(sent)
        db = self._session_factory()
        try:
            rows = db.query(Notification).order_by(Notification.user_id.asc()).all()
            self.assertEqual(sorted(row.user_id for row in rows), sorted([self.principal_id, self.district_principal_id]))
            row = rows[0]
            self.assertEqual(row.type, NotificationType.MARKS_SUBMITTED.value)
            self.assertEqual(row.reference_type, 'marksheet')
            self.assertEqual(row.reference_id, 55)
            self.assertEqual(row.created_at, datetime(2026, 10, 17, 12, 0))
            self.assertEqual(json.loads(row.data_json)['subject_name'], 'Geography')
        finally:
            db.close()

    def test_submission_without_any_principal_is_not_sent(self):
        db = self._session_factory()
        try:
            db.query(User).filter(User.role == 'principal').delete()
            db.commit()
        finally:
            db.close()
        sent = self.dispatcher.notify_submitted(
            school_id=self.school_id,
            teacher_name='Maya Lindqvist',
            class_name='Grade 7 A',
            subject_name='Geography',
            marksheet_id=56,
        )
        self.assertFalse(sent)

    def test_dispatch_safely_swallows_channel_errors(self):
        def broken():
            raise ConnectionError('smtp down')

        self.assertFalse(dispatch_safely('test_event', broken))
        self.assertFalse(dispatch_safely('test_event', lambda: False))
        self.assertTrue(dispatch_safely('test_event', lambda: True))

    def test_inbox_endpoints(self):
        self.dispatcher.notify_rejected(
            teacher_user_id=self.teacher_id,
            class_name='Grade 7 A',
            subject_name='Geography',
            marksheet_id=57,
            rejection_comments='Map work not graded',
            rejector_name='Omar Haddad',
        )
        self.dispatcher.notify_user(
            user_id=self.teacher_id,
            notification_type=NotificationType.REPORT_GENERATED,
            title='Export - Completed',
            message='Done',
        )

        listing = self.client.get('/api/notifications', headers=self.teacher_headers)
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()['pagination']['total'], 2)
        self.assertEqual(self.client.get('/api/notifications/count', headers=self.teacher_headers).json(), {'unread_count': 2})

        first_id = listing.json()['notifications'][0]['id']
        read = self.client.patch(f'/api/notifications/{first_id}/read', headers=self.teacher_headers)
        self.assertEqual(read.status_code, 200)
        self.assertEqual(self.client.get('/api/notifications/unread', headers=self.teacher_headers).json()['count'], 1)

        foreign = self.client.patch(f'/api/notifications/{first_id}/read', headers=self.principal_headers)
        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(self.client.delete(f'/api/notifications/{first_id}', headers=self.principal_headers).status_code, 404)

        self.assertEqual(self.client.patch('/api/notifications/read-all', headers=self.teacher_headers).json(), {'updated': 1})
        self.assertEqual(self.client.delete(f'/api/notifications/{first_id}', headers=self.teacher_headers).status_code, 200)
        self.assertEqual(self.client.get('/api/notifications', headers=self.teacher_headers).json()['pagination']['total'], 1)
        self.assertEqual(self.client.get('/api/notifications').status_code, 401)

    def test_cleanup_removes_only_old_read_notifications(self):
        now = datetime(2026, 10, 17, 12, 0)
        db = self._session_factory()
        try:
            db.add_all(
                [
                    Notification(user_id=self.teacher_id, type='general', title='old read', is_read=True, created_at=now - timedelta(days=120)),
                    Notification(user_id=self.teacher_id, type='general', title='old unread', is_read=False, created_at=now - timedelta(days=120)),
                    Notification(user_id=self.teacher_id, type='general', title='new read', is_read=True, created_at=now - timedelta(days=5)),
                ]
            )
            db.commit()
            deleted = notification_service.cleanup_old_notifications(db, days_old=90, time_provider=self.time_provider)
            self.assertEqual(deleted, 1)
            titles = sorted(row.title for row in db.query(Notification).all())
            self.assertEqual(titles, ['new read', 'old unread'])
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
