import tempfile
import unittest
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from schoolmarks.db import Base
from schoolmarks.domain.errors import NotFoundError
from schoolmarks.models import AcademicYear, Mark, Marksheet, School, Subject
from schoolmarks.services.statistics_service import (
    MarkSample,
    compute_mark_statistics,
    get_marksheet_statistics,
    get_subject_statistics,
)


def _samples(values, max_marks=100):
    return [
        MarkSample(mark_id=index + 1, student_id=100 + index, subject_id=1, marks_obtained=value, max_marks=max_marks)
        for index, value in enumerate(values)
    ]


def _anomaly(stats, anomaly_type):
    matches = [item for item in stats['anomalies'] if item['type'] == anomaly_type]
    return matches[0] if matches else None


class MarkStatisticsTests(unittest.TestCase):
    def test_summary_values(self):
        stats = compute_mark_statistics(_samples([40, 55, 70, 85, 90]))
        self.assertEqual(stats['count'], 5)
        self.assertEqual(stats['mean'], 68.0)
        self.assertEqual(stats['median'], 70.0)
        self.assertEqual(stats['std_dev'], 18.6)
        self.assertEqual(stats['min'], {'value': 40, 'student_id': 100})
        self.assertEqual(stats['max'], {'value': 90, 'student_id': 104})
        self.assertEqual(stats['pass_rate'], 100.0)
        self.assertEqual(stats['grade_distribution'], {'A': 2, 'B': 1, 'C': 1, 'D': 1, 'F': 0})

    def test_all_zero_marks_flag_every_student(self):
        stats = compute_mark_statistics(_samples([0, 0, 0]))
        zero = _anomaly(stats, 'zero_marks')
        self.assertIsNotNone(zero)
        self.assertEqual(zero['severity'], 'warning')
        self.assertEqual([row['student_id'] for row in zero['students']], [100, 101, 102])
        failure = _anomaly(stats, 'high_failure_rate')
        self.assertEqual(failure['severity'], 'critical')
        self.assertIsNone(_anomaly(stats, 'outliers'))

    def test_identical_marks_raise_no_outliers(self):
        stats = compute_mark_statistics(_samples([65, 65, 65, 65]))
        self.assertEqual(stats['std_dev'], 0.0)
        self.assertEqual(stats['anomalies'], [])

    def test_pass_rate_uses_each_marks_own_maximum(self):
        samples = [
            MarkSample(mark_id=1, student_id=1, subject_id=1, marks_obtained=20, max_marks=50),
            MarkSample(mark_id=2, student_id=2, subject_id=1, marks_obtained=19, max_marks=50),
            MarkSample(mark_id=3, student_id=3, subject_id=1, marks_obtained=30, max_marks=100),
        ]
        stats = compute_mark_statistics(samples)
        self.assertEqual(stats['pass_count'], 1)
        self.assertEqual(stats['pass_rate'], 33.33)
        self.assertEqual(_anomaly(stats, 'high_failure_rate')['severity'], 'critical')

    def test_perfect_score_and_outlier_can_co_occur(self):
        stats = compute_mark_statistics(_samples([80] * 9 + [100, 10]))
        perfect = _anomaly(stats, 'perfect_score')
        self.assertEqual(perfect['severity'], 'info')
        self.assertEqual([row['student_id'] for row in perfect['students']], [109])
        outliers = _anomaly(stats, 'outliers')
        self.assertEqual(outliers['severity'], 'warning')
        self.assertEqual([row['marks_obtained'] for row in outliers['students']], [10])
        self.assertIsNone(_anomaly(stats, 'high_failure_rate'))

    def test_empty_input(self):
        stats = compute_mark_statistics([])
        self.assertEqual(stats['count'], 0)
        self.assertEqual(stats['anomalies'], [])
        self.assertEqual(stats['grade_distribution']['F'], 0)


class StatisticsQueryTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_statistics.db'
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
            db.query(Mark).delete()
            db.query(Marksheet).delete()
            db.query(Subject).delete()
            db.query(AcademicYear).delete()
            db.query(School).delete()
            school = School(name='Hillview', code='HV')
            year = AcademicYear(year_name='2026-2027')
            other_year = AcademicYear(year_name='2025-2026')
            physics = Subject(name='Physics', code='PHY')
            db.add_all([school, year, other_year, physics])
            db.flush()
            for enrollment_id, value, year_id in ((11, 0, year.id), (12, 35, year.id), (13, 95, other_year.id)):
                marksheet = Marksheet(
                    subject_id=physics.id,
                    school_id=school.id,
                    academic_year_id=year_id,
                    academic_year_enrollment_id=enrollment_id,
                    status='Draft',
                )
                db.add(marksheet)
                db.flush()
                db.add(
                    Mark(
                        marksheet_id=marksheet.id,
                        subject_id=physics.id,
                        marks_obtained=value,
                        max_marks=100,
                        percentage=float(value),
                        grade='F',
                    )
                )
            db.commit()
            self.physics_id = physics.id
            self.year_id = year.id
            self.first_marksheet_id = db.query(Marksheet).filter(Marksheet.academic_year_enrollment_id == 11).one().id
        finally:
            db.close()

    def test_marksheet_statistics_attach_enrollment_as_student(self):
        db = self._session_factory()
        try:
            payload = get_marksheet_statistics(db, self.first_marksheet_id)
            stats = payload['statistics']
            self.assertEqual(stats['count'], 1)
            self.assertEqual(_anomaly(stats, 'zero_marks')['students'][0]['student_id'], 11)
        finally:
            db.close()

    def test_subject_statistics_filter_by_academic_year(self):
        db = self._session_factory()
        try:
            all_years = get_subject_statistics(db, self.physics_id)
            self.assertEqual(all_years['statistics']['count'], 3)
            self.assertEqual(all_years['statistics']['max'], {'value': 95, 'student_id': 13})

            one_year = get_subject_statistics(db, self.physics_id, academic_year_id=self.year_id)
            self.assertEqual(one_year['statistics']['count'], 2)
            self.assertEqual(one_year['statistics']['pass_rate'], 0.0)
            self.assertEqual(one_year['subject']['name'], 'Physics')
        finally:
            db.close()

    def test_unknown_ids_raise_not_found(self):
        db = self._session_factory()
        try:
            with self.assertRaises(NotFoundError):
                get_marksheet_statistics(db, 5555)
            with self.assertRaises(NotFoundError):
                get_subject_statistics(db, 5555)
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
