import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from freezegun import freeze_time
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from schoolmarks import scheduler as scheduler_module
from schoolmarks.db import Base
from schoolmarks.models import BatchJob, Notification, User
from schoolmarks.services.bootstrap_service import run_bootstrap


class SchedulerJobTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_scheduler.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            db.query(Notification).delete()
            db.query(BatchJob).delete()
            db.query(User).delete()
            db.commit()
        finally:
            db.close()

    def test_parse_hhmm_falls_back_on_bad_values(self):
        self.assertEqual(scheduler_module._parse_hhmm('03:15'), (3, 15))
        self.assertEqual(scheduler_module._parse_hhmm('25:00'), (2, 0))
        self.assertEqual(scheduler_module._parse_hhmm('later'), (2, 0))
        self.assertEqual(scheduler_module._parse_hhmm(''), (2, 0))

    @freeze_time('2026-10-17 02:00:00')
    def test_cleanup_jobs_use_their_own_session(self):
        now = datetime(2026, 10, 17, 2, 0)
        db = self._session_factory()
        try:
            owner = User(email='ops@example.com', role='admin')
            db.add(owner)
            db.flush()
            db.add_all(
                [
                    BatchJob(job_type='marks_export', job_name='stale', initiated_by=owner.id, status='completed', completed_at=now - timedelta(days=31)),
                    Notification(user_id=owner.id, type='general', title='stale', is_read=True, created_at=now - timedelta(days=91)),
                ]
            )
            db.commit()
        finally:
            db.close()

        with patch.object(scheduler_module, 'SessionLocal', self._session_factory):
            scheduler_module.batch_job_cleanup_job()
            scheduler_module.notification_cleanup_job()

        db = self._session_factory()
        try:
            self.assertEqual(db.query(BatchJob).count(), 0)
            self.assertEqual(db.query(Notification).count(), 0)
        finally:
            db.close()

    def test_start_scheduler_registers_cleanup_jobs(self):
        with patch.object(scheduler_module.settings, 'batch_job_cleanup_time', '23:45'), patch.object(
            scheduler_module.scheduler, 'start'
        ) as start:
            scheduler_module.start_scheduler()
        try:
            ids = {job.id for job in scheduler_module.scheduler.get_jobs()}
            self.assertEqual(ids, {'batch_job_cleanup', 'notification_cleanup'})
            start.assert_called_once()
        finally:
            scheduler_module.scheduler.remove_all_jobs()

    def test_bootstrap_seeds_admin_only_on_empty_database(self):
        db = self._session_factory()
        try:
            with patch('schoolmarks.services.bootstrap_service.settings.bootstrap_admin_email', 'Head@Example.com'):
                first = run_bootstrap(db)
                second = run_bootstrap(db)
            self.assertTrue(first['ran'])
            self.assertFalse(second['ran'])
            admin = db.query(User).one()
            self.assertEqual(admin.email, 'head@example.com')
            self.assertEqual(admin.role, 'super_admin')
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
