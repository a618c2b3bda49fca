from typing import Any, Literal

from pydantic import BaseModel, Field


class MarkEntry(BaseModel):
    # Loosely typed so malformed entries reach the per-entry failure list
    # instead of failing the whole request.
    subject_id: Any = None
    marks_obtained: Any = None
    max_marks: Any = None
    remarks: str | None = None


class MarksEntryRequest(BaseModel):
    marksheet_id: int | None = None
    subject_id: int | None = None
    school_id: int | None = None
    academic_year_id: int | None = None
    academic_year_enrollment_id: int | None = None
    student_subject_enrollment_id: int | None = None
    course_part_id: int | None = None
    class_name: str = ''
    remarks: str | None = None
    marks: list[MarkEntry] = Field(default_factory=list)


class DraftRequest(BaseModel):
    marksheet_id: int
    remarks: str | None = None
    marks: list[MarkEntry] = Field(default_factory=list)


class ValidateMarksRequest(BaseModel):
    marks: list[MarkEntry] = Field(default_factory=list)


class RejectRequest(BaseModel):
    reason: str | None = None


class BatchReviewRequest(BaseModel):
    marksheet_ids: list[int] = Field(min_length=1)
    action: Literal['approve', 'reject']
    reason: str | None = None
