from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Any, Iterable

from sqlalchemy.orm import Session

from schoolmarks.config import settings
from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.domain.errors import NotFoundError
from schoolmarks.models import Mark, Marksheet, Subject


logger = logging.getLogger(__name__)

# Lower bounds in percent of max marks, highest band first.
GRADE_BANDS: tuple[tuple[str, float], ...] = (('A', 80.0), ('B', 60.0), ('C', 50.0), ('D', 40.0))
FAIL_GRADE = 'F'


@dataclass
class MarkBatchResult:
    created: list[dict] = field(default_factory=list)
    updated: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.created) + len(self.updated) + len(self.failed)

    def counts(self) -> dict:
        return {'created': len(self.created), 'updated': len(self.updated), 'failed': len(self.failed)}

    def as_dict(self) -> dict:
        return {
            'created': self.created,
            'updated': self.updated,
            'failed': self.failed,
            'counts': self.counts(),
        }


@dataclass(frozen=True)
class _CleanEntry:
    subject_id: int
    marks_obtained: float
    max_marks: int
    remarks: str | None


def percentage_of(marks_obtained: float, max_marks: float) -> float:
    if not max_marks:
        return 0.0
    return round(float(marks_obtained) / float(max_marks) * 100.0, 2)


def grade_for_percentage(percentage: float) -> str:
    for grade, lower_bound in GRADE_BANDS:
        if percentage >= lower_bound:
            return grade
    return FAIL_GRADE


def is_pass(marks_obtained: float, max_marks: float, *, pass_percentage: float | None = None) -> bool:
    threshold = settings.pass_percentage if pass_percentage is None else pass_percentage
    return percentage_of(marks_obtained, max_marks) >= threshold


def _coerce_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _entry_value(entry: Any, key: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(key)
    return getattr(entry, key, None)


def classify_mark_entry(entry: Any, known_subject_ids: set[int] | None = None) -> tuple[_CleanEntry | None, str | None]:
    """Return (clean entry, None) for a usable entry or (None, error message)."""
    raw_subject_id = _entry_value(entry, 'subject_id')
    if raw_subject_id in (None, ''):
        return None, 'Subject ID is required'
    try:
        subject_id = int(raw_subject_id)
    except (TypeError, ValueError):
        return None, 'Subject ID must be an integer'
    if known_subject_ids is not None and subject_id not in known_subject_ids:
        return None, 'Subject not found'

    raw_marks = _entry_value(entry, 'marks_obtained')
    if raw_marks is None:
        return None, 'Marks obtained is required'
    marks_obtained = _coerce_number(raw_marks)
    if marks_obtained is None:
        return None, 'Marks must be a valid number'
    if marks_obtained < 0:
        return None, 'Marks cannot be negative'

    raw_max = _entry_value(entry, 'max_marks')
    if raw_max is None:
        return None, 'Max marks is required'
    max_marks = _coerce_number(raw_max)
    if max_marks is None or not float(max_marks).is_integer():
        return None, 'Max marks must be an integer'
    if max_marks < 1:
        return None, 'Max marks must be greater than 0'
    if marks_obtained > max_marks:
        return None, 'Marks obtained cannot exceed max marks'

    remarks = _entry_value(entry, 'remarks')
    return _CleanEntry(subject_id, marks_obtained, int(max_marks), remarks or None), None


def _known_subject_ids(db: Session, entries: Iterable[Any]) -> set[int]:
    candidate_ids: set[int] = set()
    for entry in entries:
        try:
            candidate_ids.add(int(_entry_value(entry, 'subject_id')))
        except (TypeError, ValueError):
            continue
    if not candidate_ids:
        return set()
    rows = db.query(Subject.id).filter(Subject.id.in_(candidate_ids)).all()
    return {int(row.id) for row in rows}


def serialize_mark(mark: Mark) -> dict:
    return {
        'id': mark.id,
        'marksheet_id': mark.marksheet_id,
        'subject_id': mark.subject_id,
        'subject': mark.subject.name if mark.subject else '',
        'marks_obtained': mark.marks_obtained,
        'max_marks': mark.max_marks,
        'percentage': mark.percentage,
        'grade': mark.grade,
        'remarks': mark.remarks,
    }


def _apply_entry(mark: Mark, clean: _CleanEntry, *, keep_remarks: bool) -> None:
    mark.marks_obtained = clean.marks_obtained
    mark.max_marks = clean.max_marks
    mark.percentage = percentage_of(clean.marks_obtained, clean.max_marks)
    mark.grade = grade_for_percentage(mark.percentage)
    if clean.remarks is not None or not keep_remarks:
        mark.remarks = clean.remarks


def bulk_upsert_marks(
    db: Session,
    marksheet_id: int,
    entries: list[Any],
    *,
    time_provider: TimeProvider = default_time_provider,
) -> MarkBatchResult:
    """Insert or update one Mark per (marksheet, subject) entry.

    Best-effort per entry: invalid entries land in ``failed`` and the rest are
    still applied. Changes are flushed into the caller's transaction, which
    owns the commit.
    """
    marksheet = db.query(Marksheet).filter(Marksheet.id == marksheet_id).first()
    if not marksheet:
        raise NotFoundError('Marksheet not found')

    result = MarkBatchResult()
    known_subject_ids = _known_subject_ids(db, entries)
    existing = {
        int(mark.subject_id): mark
        for mark in db.query(Mark).filter(Mark.marksheet_id == marksheet.id).all()
    }
    now = time_provider.naive_now()

    for index, entry in enumerate(entries):
        clean, error = classify_mark_entry(entry, known_subject_ids)
        if error:
            result.failed.append({'index': index, 'subject_id': _entry_value(entry, 'subject_id'), 'error': error})
            continue

        mark = existing.get(clean.subject_id)
        if mark is None:
            mark = Mark(marksheet_id=marksheet.id, subject_id=clean.subject_id, created_at=now, updated_at=now)
            _apply_entry(mark, clean, keep_remarks=False)
            db.add(mark)
            db.flush()
            existing[clean.subject_id] = mark
            result.created.append(serialize_mark(mark))
        else:
            _apply_entry(mark, clean, keep_remarks=True)
            mark.updated_at = now
            db.flush()
            result.updated.append(serialize_mark(mark))

    refresh_marksheet_totals(db, marksheet)
    logger.info(
        'marks_bulk_upsert marksheet_id=%s created=%s updated=%s failed=%s',
        marksheet.id,
        len(result.created),
        len(result.updated),
        len(result.failed),
    )
    if result.failed:
        logger.warning('marks_bulk_upsert_partial marksheet_id=%s failed=%s', marksheet.id, result.failed)
    return result


def calculate_totals(marks: Iterable[Mark]) -> dict:
    rows = list(marks)
    if not rows:
        return {'total_marks_obtained': 0.0, 'total_max_marks': 0, 'percentage': 0.0, 'total_subjects': 0}
    total_obtained = sum(float(row.marks_obtained or 0) for row in rows)
    total_max = sum(int(row.max_marks or 0) for row in rows)
    return {
        'total_marks_obtained': round(total_obtained, 2),
        'total_max_marks': total_max,
        'percentage': percentage_of(total_obtained, total_max),
        'total_subjects': len(rows),
    }


def refresh_marksheet_totals(db: Session, marksheet: Marksheet) -> None:
    # Per-mark max_marks is canonical; the marksheet columns only cache the sums.
    marks = db.query(Mark).filter(Mark.marksheet_id == marksheet.id).all()
    totals = calculate_totals(marks)
    marksheet.marks_obtained = totals['total_marks_obtained']
    marksheet.max_marks = totals['total_max_marks']
    db.flush()


def count_marks(db: Session, marksheet_id: int) -> int:
    return db.query(Mark).filter(Mark.marksheet_id == marksheet_id).count()


def validate_mark_entries(db: Session, entries: list[Any]) -> dict:
    """Dry-run check of mark entries; nothing is written."""
    known_subject_ids = _known_subject_ids(db, entries)
    items = []
    for index, entry in enumerate(entries):
        clean, error = classify_mark_entry(entry, known_subject_ids)
        warnings = []
        if clean is not None:
            if clean.marks_obtained == 0:
                warnings.append('Zero marks entered')
            if clean.marks_obtained == clean.max_marks:
                warnings.append('Perfect score entered')
        items.append(
            {
                'index': index,
                'subject_id': _entry_value(entry, 'subject_id'),
                'valid': error is None,
                'errors': [error] if error else [],
                'warnings': warnings,
            }
        )
    invalid = sum(1 for item in items if not item['valid'])
    return {
        'valid': invalid == 0,
        'total': len(items),
        'invalid': invalid,
        'entries': items,
    }
