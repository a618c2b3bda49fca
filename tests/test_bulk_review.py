import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from schoolmarks.core.time_provider import TimeProvider
from schoolmarks.db import Base
from schoolmarks.domain.errors import MarksValidationError
from schoolmarks.models import AcademicYear, AuditLog, BatchJob, Mark, Marksheet, NotificationType, School, Subject, User
from schoolmarks.services import batch_job_service, bulk_review_service, marksheet_service
from schoolmarks.services.bulk_review_service import review_marksheets_in_batch
from schoolmarks.services.notification_service import NotificationDispatcher


class FixedTimeProvider(TimeProvider):
    def __init__(self, fixed_now: datetime):
        self._fixed_now = fixed_now

    def now(self) -> datetime:
        return self._fixed_now


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.calls = []

    def notify_submitted(self, **kwargs) -> bool:
        self.calls.append(('submitted', kwargs))
        return True

    def notify_approved(self, **kwargs) -> bool:
        self.calls.append(('approved', kwargs))
        return True

    def notify_rejected(self, **kwargs) -> bool:
        self.calls.append(('rejected', kwargs))
        return True

    def notify_user(self, **kwargs) -> bool:
        self.calls.append(('user', kwargs))
        return True


class BulkReviewTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_bulk_review.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.time_provider = FixedTimeProvider(datetime(2026, 10, 17, 14, 0, tzinfo=timezone.utc))
        self.dispatcher = RecordingDispatcher()
        db = self._session_factory()
        try:
            db.query(AuditLog).delete()
            db.query(Mark).delete()
            db.query(Marksheet).delete()
            db.query(BatchJob).delete()
            db.query(User).delete()
            db.query(Subject).delete()
            db.query(AcademicYear).delete()
            db.query(School).delete()
            school = School(name='Lakeside Academy', code='LA')
            year = AcademicYear(year_name='2026-2027')
            biology = Subject(name='Biology', code='BIO')
            db.add_all([school, year, biology])
            db.flush()
            teacher = User(email='n.ferreira@example.com', first_name='Nadia', last_name='Ferreira', role='teacher', school_id=school.id)
            principal = User(email='head@example.com', first_name='Joseph', last_name='Kamau', role='principal', school_id=school.id)
            db.add_all([teacher, principal])
            db.commit()
            self.school_id = school.id
            self.year_id = year.id
            self.biology_id = biology.id
            self.teacher_id = teacher.id
            self.principal_id = principal.id
        finally:
            db.close()

    def _marksheet(self, db, enrollment_id, *, submit=True):
        result = marksheet_service.enter_marks(
            db,
            actor_id=self.teacher_id,
            subject_id=self.biology_id,
            school_id=self.school_id,
            academic_year_id=self.year_id,
            academic_year_enrollment_id=enrollment_id,
            student_subject_enrollment_id=enrollment_id,
            course_part_id=2,
            class_name='Grade 10 B',
            marks=[{'subject_id': self.biology_id, 'marks_obtained': 64, 'max_marks': 80}],
            time_provider=self.time_provider,
        )
        marksheet_id = result['marksheet']['id']
        if submit:
            marksheet_service.submit_marksheet(
                db,
                marksheet_id,
                actor_id=self.teacher_id,
                dispatcher=self.dispatcher,
                time_provider=self.time_provider,
            )
        return marksheet_id

    def test_mixed_batch_records_each_outcome_on_the_job(self):
        db = self._session_factory()
        try:
            first = self._marksheet(db, 301)
            second = self._marksheet(db, 302)
            draft = self._marksheet(db, 303, submit=False)

            outcome = review_marksheets_in_batch(
                db,
                marksheet_ids=[first, draft, second, first],
                action='approve',
                reviewer_id=self.principal_id,
                dispatcher=self.dispatcher,
                time_provider=self.time_provider,
            )

            self.assertEqual(outcome['succeeded'], [first, second])
            self.assertEqual(len(outcome['failed']), 1)
            self.assertEqual(outcome['failed'][0]['marksheet_id'], draft)
            job = outcome['job']
            self.assertEqual(job['type'], 'marks_review')
            self.assertEqual(job['status'], 'completed')
            self.assertEqual(job['progress']['total'], 3)
            self.assertEqual(job['progress']['successful'], 2)
            self.assertEqual(job['progress']['failed'], 1)
            self.assertIn(f'Marksheet {draft}', job['errors'][0]['message'])

            statuses = {row.id: row.status for row in db.query(Marksheet).all()}
            self.assertEqual(statuses, {first: 'approved', second: 'approved', draft: 'Draft'})
            kinds = [kind for kind, _ in self.dispatcher.calls]
            self.assertEqual(kinds.count('approved'), 2)
            self.assertEqual(kinds[-1], 'user')
        finally:
            db.close()

    def test_bulk_reject_applies_the_same_reason(self):
        db = self._session_factory()
        try:
            ids = [self._marksheet(db, 310), self._marksheet(db, 311)]
            outcome = review_marksheets_in_batch(
                db,
                marksheet_ids=ids,
                action='reject',
                reviewer_id=self.principal_id,
                reason='  Practical component missing  ',
                dispatcher=self.dispatcher,
                time_provider=self.time_provider,
            )
            self.assertEqual(outcome['succeeded'], ids)
            comments = {row.rejection_comments for row in db.query(Marksheet).all()}
            self.assertEqual(comments, {'Practical component missing'})
        finally:
            db.close()

    def test_invalid_requests_create_no_job(self):
        db = self._session_factory()
        try:
            marksheet_id = self._marksheet(db, 320)
            for kwargs in (
                {'marksheet_ids': [marksheet_id], 'action': 'reject', 'reason': 'too short'},
                {'marksheet_ids': [marksheet_id], 'action': 'archive'},
                {'marksheet_ids': [], 'action': 'approve'},
            ):
                with self.assertRaises(MarksValidationError):
                    review_marksheets_in_batch(
                        db,
                        reviewer_id=self.principal_id,
                        dispatcher=self.dispatcher,
                        time_provider=self.time_provider,
                        **kwargs,
                    )
            self.assertEqual(db.query(BatchJob).count(), 0)
            self.assertEqual(db.get(Marksheet, marksheet_id).status, 'submitted')
        finally:
            db.close()

    def test_unexpected_error_fails_the_job_and_alerts_the_reviewer(self):
        db = self._session_factory()
        try:
            ids = [self._marksheet(db, 330), self._marksheet(db, 331)]
            with patch.object(bulk_review_service, 'approve_marksheet', side_effect=RuntimeError('lab system offline')):
                with self.assertRaises(RuntimeError):
                    review_marksheets_in_batch(
                        db,
                        marksheet_ids=ids,
                        action='approve',
                        reviewer_id=self.principal_id,
                        dispatcher=self.dispatcher,
                        time_provider=self.time_provider,
                    )
        finally:
            db.close()

        db = self._session_factory()
        try:
            job = db.query(BatchJob).one()
            self.assertEqual(job.status, 'failed')
            self.assertIsNotNone(job.completed_at)
            view = batch_job_service.format_job_status(job, time_provider=self.time_provider)
            self.assertTrue(view['errors'][-1]['fatal'])
            self.assertIn('lab system offline', view['errors'][-1]['message'])
            self.assertEqual({row.status for row in db.query(Marksheet).all()}, {'submitted'})
        finally:
            db.close()

        kind, payload = self.dispatcher.calls[-1]
        self.assertEqual(kind, 'user')
        self.assertEqual(payload['user_id'], self.principal_id)
        self.assertEqual(payload['notification_type'], NotificationType.SYSTEM_ALERT)
        self.assertTrue(payload['title'].endswith('- Failed'))

    def test_cancelled_job_stops_the_run_without_raising(self):
        real_approve = bulk_review_service.approve_marksheet
        session_factory = self._session_factory
        principal_id = self.principal_id

        def approve_then_cancel(db, marksheet_id, **kwargs):
            result = real_approve(db, marksheet_id, **kwargs)
            other_db = session_factory()
            try:
                job = other_db.query(BatchJob).one()
                batch_job_service.cancel_job(other_db, job.id, actor_id=principal_id)
            finally:
                other_db.close()
            return result

        db = self._session_factory()
        try:
            first = self._marksheet(db, 340)
            second = self._marksheet(db, 341)
            with patch.object(bulk_review_service, 'approve_marksheet', side_effect=approve_then_cancel):
                outcome = review_marksheets_in_batch(
                    db,
                    marksheet_ids=[first, second],
                    action='approve',
                    reviewer_id=self.principal_id,
                    dispatcher=self.dispatcher,
                    time_provider=self.time_provider,
                )

            self.assertTrue(outcome['stopped'])
            self.assertEqual(outcome['succeeded'], [first])
            self.assertEqual(outcome['job']['status'], 'cancelled')
            statuses = {row.id: row.status for row in db.query(Marksheet).all()}
            self.assertEqual(statuses, {first: 'approved', second: 'submitted'})
            kinds = [kind for kind, _ in self.dispatcher.calls]
            self.assertNotIn('user', kinds)
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
