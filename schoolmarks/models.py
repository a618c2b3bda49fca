from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from schoolmarks.db import Base


class Role(str, Enum):
    STUDENT = 'student'
    TEACHER = 'teacher'
    PRINCIPAL = 'principal'
    ADMIN = 'admin'
    SUPER_ADMIN = 'super_admin'
    SPONSOR = 'sponsor'


class MarksheetStatus(str, Enum):
    DRAFT = 'Draft'
    SUBMITTED = 'submitted'
    APPROVED = 'approved'
    REJECTED = 'rejected'


EDITABLE_MARKSHEET_STATUSES = (MarksheetStatus.DRAFT.value, MarksheetStatus.REJECTED.value)


class AuditAction(str, Enum):
    CREATE = 'CREATE'
    UPDATE = 'UPDATE'
    SUBMIT = 'SUBMIT'
    APPROVE = 'APPROVE'
    REJECT = 'REJECT'
    DELETE = 'DELETE'


class BatchJobType(str, Enum):
    REPORT_CARD_GENERATION = 'report_card_generation'
    REPORT_CARD_SIGNING = 'report_card_signing'
    MARKS_EXPORT = 'marks_export'
    ATTENDANCE_REPORT = 'attendance_report'
    MARKS_REVIEW = 'marks_review'


class BatchJobStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


ACTIVE_BATCH_JOB_STATUSES = (BatchJobStatus.PENDING.value, BatchJobStatus.IN_PROGRESS.value)
TERMINAL_BATCH_JOB_STATUSES = (
    BatchJobStatus.COMPLETED.value,
    BatchJobStatus.FAILED.value,
    BatchJobStatus.CANCELLED.value,
)


class NotificationType(str, Enum):
    MARKS_SUBMITTED = 'marks_submitted'
    MARKS_APPROVED = 'marks_approved'
    MARKS_REJECTED = 'marks_rejected'
    REPORT_GENERATED = 'report_generated'
    SYSTEM_ALERT = 'system_alert'
    GENERAL = 'general'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(100), default='')
    last_name: Mapped[str] = mapped_column(String(100), default='')
    role: Mapped[str] = mapped_column(String(20), default=Role.TEACHER.value, index=True)
    school_id: Mapped[int | None] = mapped_column(ForeignKey('schools.id'), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        name = f'{self.first_name or ""} {self.last_name or ""}'.strip()
        return name or self.email


class School(Base):
    __tablename__ = 'schools'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(200), unique=True)
    code: Mapped[str] = mapped_column(String(40), default='', index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AcademicYear(Base):
    __tablename__ = 'academic_years'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    year_name: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Subject(Base):
    __tablename__ = 'subjects'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    code: Mapped[str] = mapped_column(String(20), default='', index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Marksheet(Base):
    __tablename__ = 'marksheets'
    __table_args__ = (
        UniqueConstraint(
            'student_subject_enrollment_id',
            'course_part_id',
            'academic_year_id',
            name='uq_marksheets_enrollment_course_part_year',
        ),
        Index('ix_marksheets_status_created', 'status', 'created_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    subject_id: Mapped[int] = mapped_column(ForeignKey('subjects.id'), index=True)
    school_id: Mapped[int] = mapped_column(ForeignKey('schools.id'), index=True)
    academic_year_id: Mapped[int] = mapped_column(ForeignKey('academic_years.id'), index=True)
    academic_year_enrollment_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    student_subject_enrollment_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    course_part_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    class_name: Mapped[str] = mapped_column(String(80), default='')
    marks_obtained: Mapped[float] = mapped_column(Float, default=0.0)
    max_marks: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=MarksheetStatus.DRAFT.value, index=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True, index=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True, index=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    last_auto_save: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    modified_by: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True)
    modified_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subject: Mapped['Subject'] = relationship('Subject')
    marks: Mapped[list['Mark']] = relationship(
        'Mark',
        back_populates='marksheet',
        cascade='all, delete-orphan',
        order_by='Mark.id',
    )


class Mark(Base):
    __tablename__ = 'marks'
    __table_args__ = (
        UniqueConstraint('marksheet_id', 'subject_id', name='uq_marks_marksheet_subject'),
        Index('ix_marks_subject_grade', 'subject_id', 'grade'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    marksheet_id: Mapped[int] = mapped_column(ForeignKey('marksheets.id', ondelete='CASCADE'), index=True)
    subject_id: Mapped[int] = mapped_column(ForeignKey('subjects.id'), index=True)
    marks_obtained: Mapped[float] = mapped_column(Float)
    max_marks: Mapped[int] = mapped_column(Integer)
    percentage: Mapped[float] = mapped_column(Float, default=0.0)
    grade: Mapped[str] = mapped_column(String(5), default='')
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    marksheet: Mapped['Marksheet'] = relationship('Marksheet', back_populates='marks')
    subject: Mapped['Subject'] = relationship('Subject')


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(20), index=True)
    entity_type: Mapped[str] = mapped_column(String(60), default='')
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    before_json: Mapped[str] = mapped_column(Text, default='')
    after_json: Mapped[str] = mapped_column(Text, default='')
    details_json: Mapped[str] = mapped_column(Text, default='{}')
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    status: Mapped[str] = mapped_column(String(10), default='SUCCESS')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


@event.listens_for(AuditLog, 'before_update')
def _refuse_audit_update(mapper, connection, target):
    raise RuntimeError('audit_logs rows are append-only')


@event.listens_for(AuditLog, 'before_delete')
def _refuse_audit_delete(mapper, connection, target):
    raise RuntimeError('audit_logs rows are append-only')


class BatchJob(Base):
    __tablename__ = 'batch_jobs'
    __table_args__ = (
        Index('ix_batch_jobs_initiator_status', 'initiated_by', 'status'),
        Index('ix_batch_jobs_status_completed', 'status', 'completed_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_type: Mapped[str] = mapped_column(String(40), index=True)
    job_name: Mapped[str] = mapped_column(String(255))
    initiated_by: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    academic_year_id: Mapped[int | None] = mapped_column(ForeignKey('academic_years.id'), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=BatchJobStatus.PENDING.value, index=True)
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, default=0)
    successful_items: Mapped[int] = mapped_column(Integer, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, default=0)
    progress_percent: Mapped[float] = mapped_column(Float, default=0.0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    estimated_completion: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    result_summary_json: Mapped[str] = mapped_column(Text, default='{}')
    error_log_json: Mapped[str] = mapped_column(Text, default='[]')
    metadata_json: Mapped[str] = mapped_column(Text, default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Notification(Base):
    __tablename__ = 'notifications'
    __table_args__ = (
        Index('ix_notifications_user_read', 'user_id', 'is_read'),
        Index('ix_notifications_reference', 'reference_type', 'reference_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    type: Mapped[str] = mapped_column(String(50), index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text, default='')
    data_json: Mapped[str] = mapped_column(Text, default='{}')
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
