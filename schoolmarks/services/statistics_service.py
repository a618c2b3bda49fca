from __future__ import annotations

from dataclasses import dataclass
import math
import statistics
from typing import Iterable

from sqlalchemy.orm import Session, joinedload

from schoolmarks.config import settings
from schoolmarks.domain.errors import NotFoundError
from schoolmarks.metrics import timed_service
from schoolmarks.models import Mark, Marksheet, Subject
from schoolmarks.services.mark_service import GRADE_BANDS, FAIL_GRADE, grade_for_percentage, percentage_of


HIGH_FAILURE_PASS_RATE = 50.0
OUTLIER_STD_DEVS = 2.0


@dataclass(frozen=True)
class MarkSample:
    mark_id: int | None
    student_id: int | None
    subject_id: int | None
    marks_obtained: float
    max_marks: int

    @property
    def percentage(self) -> float:
        return percentage_of(self.marks_obtained, self.max_marks)

    def describe(self) -> dict:
        return {
            'mark_id': self.mark_id,
            'student_id': self.student_id,
            'subject_id': self.subject_id,
            'marks_obtained': self.marks_obtained,
            'max_marks': self.max_marks,
        }


def _empty_distribution() -> dict[str, int]:
    distribution = {grade: 0 for grade, _ in GRADE_BANDS}
    distribution[FAIL_GRADE] = 0
    return distribution


def compute_mark_statistics(samples: Iterable[MarkSample], *, pass_percentage: float | None = None) -> dict:
    rows = list(samples)
    threshold = settings.pass_percentage if pass_percentage is None else float(pass_percentage)
    if not rows:
        return {
            'count': 0,
            'mean': 0.0,
            'median': 0.0,
            'std_dev': 0.0,
            'min': None,
            'max': None,
            'pass_count': 0,
            'fail_count': 0,
            'pass_rate': 0.0,
            'grade_distribution': _empty_distribution(),
            'anomalies': [],
        }

    values = [float(row.marks_obtained) for row in rows]
    mean = statistics.fmean(values)
    std_dev = statistics.pstdev(values)
    lowest = min(rows, key=lambda row: row.marks_obtained)
    highest = max(rows, key=lambda row: row.marks_obtained)
    pass_count = sum(1 for row in rows if row.percentage >= threshold)
    pass_rate = round(pass_count / len(rows) * 100.0, 2)

    distribution = _empty_distribution()
    for row in rows:
        distribution[grade_for_percentage(row.percentage)] += 1

    summary = {
        'count': len(rows),
        'mean': round(mean, 2),
        'median': round(statistics.median(values), 2),
        'std_dev': round(std_dev, 2),
        'min': {'value': lowest.marks_obtained, 'student_id': lowest.student_id},
        'max': {'value': highest.marks_obtained, 'student_id': highest.student_id},
        'pass_count': pass_count,
        'fail_count': len(rows) - pass_count,
        'pass_rate': pass_rate,
        'grade_distribution': distribution,
    }
    summary['anomalies'] = detect_anomalies(rows, mean=mean, std_dev=std_dev, pass_rate=pass_rate)
    return summary


def detect_anomalies(rows: list[MarkSample], *, mean: float, std_dev: float, pass_rate: float) -> list[dict]:
    """Flags are independent of each other and may all be raised together."""
    anomalies = []

    zero_rows = [row for row in rows if row.marks_obtained == 0]
    if zero_rows:
        anomalies.append(
            {
                'type': 'zero_marks',
                'severity': 'warning',
                'message': f'{len(zero_rows)} mark(s) recorded as zero',
                'students': [row.describe() for row in zero_rows],
            }
        )

    perfect_rows = [row for row in rows if row.max_marks and row.marks_obtained == row.max_marks]
    if perfect_rows:
        anomalies.append(
            {
                'type': 'perfect_score',
                'severity': 'info',
                'message': f'{len(perfect_rows)} perfect score(s)',
                'students': [row.describe() for row in perfect_rows],
            }
        )

    if pass_rate < HIGH_FAILURE_PASS_RATE:
        failing = [row for row in rows if row.percentage < settings.pass_percentage]
        anomalies.append(
            {
                'type': 'high_failure_rate',
                'severity': 'critical',
                'message': f'Pass rate {pass_rate:.2f}% is below {HIGH_FAILURE_PASS_RATE:.0f}%',
                'students': [row.describe() for row in failing],
            }
        )

    outlier_rows: list[MarkSample] = []
    if not math.isclose(std_dev, 0.0):
        lower_bound = mean - OUTLIER_STD_DEVS * std_dev
        outlier_rows = [row for row in rows if 0 < row.marks_obtained < lower_bound]
    if outlier_rows:
        anomalies.append(
            {
                'type': 'outliers',
                'severity': 'warning',
                'message': f'{len(outlier_rows)} mark(s) more than {OUTLIER_STD_DEVS:.0f} standard deviations below the mean',
                'students': [row.describe() for row in outlier_rows],
            }
        )
    return anomalies


def _samples_for_marks(marks: Iterable[Mark], student_id_of) -> list[MarkSample]:
    return [
        MarkSample(
            mark_id=mark.id,
            student_id=student_id_of(mark),
            subject_id=mark.subject_id,
            marks_obtained=float(mark.marks_obtained or 0),
            max_marks=int(mark.max_marks or 0),
        )
        for mark in marks
    ]


@timed_service('marksheet_statistics')
def get_marksheet_statistics(db: Session, marksheet_id: int) -> dict:
    marksheet = db.query(Marksheet).filter(Marksheet.id == marksheet_id).first()
    if not marksheet:
        raise NotFoundError('Marksheet not found')
    marks = db.query(Mark).filter(Mark.marksheet_id == marksheet.id).order_by(Mark.id.asc()).all()
    samples = _samples_for_marks(marks, lambda _mark: marksheet.academic_year_enrollment_id)
    return {
        'marksheet_id': marksheet.id,
        'status': marksheet.status,
        'statistics': compute_mark_statistics(samples),
    }


@timed_service('subject_statistics')
def get_subject_statistics(db: Session, subject_id: int, *, academic_year_id: int | None = None) -> dict:
    subject = db.query(Subject).filter(Subject.id == subject_id).first()
    if not subject:
        raise NotFoundError('Subject not found')
    query = (
        db.query(Mark)
        .join(Marksheet, Marksheet.id == Mark.marksheet_id)
        .options(joinedload(Mark.marksheet))
        .filter(Mark.subject_id == subject.id)
    )
    if academic_year_id:
        query = query.filter(Marksheet.academic_year_id == academic_year_id)
    marks = query.order_by(Mark.id.asc()).all()
    samples = _samples_for_marks(marks, lambda mark: mark.marksheet.academic_year_enrollment_id)
    return {
        'subject': {'id': subject.id, 'name': subject.name},
        'statistics': compute_mark_statistics(samples),
        'filters': {'academic_year_id': academic_year_id},
    }
