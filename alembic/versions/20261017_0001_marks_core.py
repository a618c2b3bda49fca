"""marks core tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261017_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'schools',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=200), nullable=False, unique=True),
        sa.Column('code', sa.String(length=40), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_schools_id', 'schools', ['id'])
    op.create_index('ix_schools_code', 'schools', ['code'])

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='teacher'),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_school_id', 'users', ['school_id'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])

    op.create_table(
        'academic_years',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('year_name', sa.String(length=20), nullable=False),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_academic_years_id', 'academic_years', ['id'])
    op.create_index('ix_academic_years_year_name', 'academic_years', ['year_name'], unique=True)

    op.create_table(
        'subjects',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=20), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subjects_id', 'subjects', ['id'])
    op.create_index('ix_subjects_name', 'subjects', ['name'], unique=True)
    op.create_index('ix_subjects_code', 'subjects', ['code'])

    op.create_table(
        'marksheets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('subjects.id'), nullable=False),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('academic_year_id', sa.Integer(), sa.ForeignKey('academic_years.id'), nullable=False),
        sa.Column('academic_year_enrollment_id', sa.Integer(), nullable=True),
        sa.Column('student_subject_enrollment_id', sa.Integer(), nullable=True),
        sa.Column('course_part_id', sa.Integer(), nullable=True),
        sa.Column('class_name', sa.String(length=80), nullable=False, server_default=''),
        sa.Column('marks_obtained', sa.Float(), nullable=False, server_default='0'),
        sa.Column('max_marks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='Draft'),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('rejection_comments', sa.Text(), nullable=True),
        sa.Column('submitted_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_auto_save', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('modified_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('modified_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            'student_subject_enrollment_id',
            'course_part_id',
            'academic_year_id',
            name='uq_marksheets_enrollment_course_part_year',
        ),
    )
    op.create_index('ix_marksheets_id', 'marksheets', ['id'])
    op.create_index('ix_marksheets_subject_id', 'marksheets', ['subject_id'])
    op.create_index('ix_marksheets_school_id', 'marksheets', ['school_id'])
    op.create_index('ix_marksheets_academic_year_id', 'marksheets', ['academic_year_id'])
    op.create_index('ix_marksheets_academic_year_enrollment_id', 'marksheets', ['academic_year_enrollment_id'])
    op.create_index('ix_marksheets_student_subject_enrollment_id', 'marksheets', ['student_subject_enrollment_id'])
    op.create_index('ix_marksheets_course_part_id', 'marksheets', ['course_part_id'])
    op.create_index('ix_marksheets_status', 'marksheets', ['status'])
    op.create_index('ix_marksheets_submitted_by', 'marksheets', ['submitted_by'])
    op.create_index('ix_marksheets_approved_by', 'marksheets', ['approved_by'])
    op.create_index('ix_marksheets_created_at', 'marksheets', ['created_at'])
    op.create_index('ix_marksheets_status_created', 'marksheets', ['status', 'created_at'])

    op.create_table(
        'marks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('marksheet_id', sa.Integer(), sa.ForeignKey('marksheets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('subjects.id'), nullable=False),
        sa.Column('marks_obtained', sa.Float(), nullable=False),
        sa.Column('max_marks', sa.Integer(), nullable=False),
        sa.Column('percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('grade', sa.String(length=5), nullable=False, server_default=''),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('marksheet_id', 'subject_id', name='uq_marks_marksheet_subject'),
    )
    op.create_index('ix_marks_id', 'marks', ['id'])
    op.create_index('ix_marks_marksheet_id', 'marks', ['marksheet_id'])
    op.create_index('ix_marks_subject_id', 'marks', ['subject_id'])
    op.create_index('ix_marks_subject_grade', 'marks', ['subject_id', 'grade'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=20), nullable=False),
        sa.Column('entity_type', sa.String(length=60), nullable=False, server_default=''),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('before_json', sa.Text(), nullable=False, server_default=''),
        sa.Column('after_json', sa.Text(), nullable=False, server_default=''),
        sa.Column('details_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('status', sa.String(length=10), nullable=False, server_default='SUCCESS'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])

    op.create_table(
        'batch_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_type', sa.String(length=40), nullable=False),
        sa.Column('job_name', sa.String(length=255), nullable=False),
        sa.Column('initiated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('academic_year_id', sa.Integer(), sa.ForeignKey('academic_years.id'), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_percent', sa.Float(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('estimated_completion', sa.DateTime(), nullable=True),
        sa.Column('result_summary_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('error_log_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('metadata_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_batch_jobs_id', 'batch_jobs', ['id'])
    op.create_index('ix_batch_jobs_job_type', 'batch_jobs', ['job_type'])
    op.create_index('ix_batch_jobs_initiated_by', 'batch_jobs', ['initiated_by'])
    op.create_index('ix_batch_jobs_status', 'batch_jobs', ['status'])
    op.create_index('ix_batch_jobs_created_at', 'batch_jobs', ['created_at'])
    op.create_index('ix_batch_jobs_initiator_status', 'batch_jobs', ['initiated_by', 'status'])
    op.create_index('ix_batch_jobs_status_completed', 'batch_jobs', ['status', 'completed_at'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('data_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('reference_type', sa.String(length=50), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notifications_id', 'notifications', ['id'])
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])
    op.create_index('ix_notifications_user_read', 'notifications', ['user_id', 'is_read'])
    op.create_index('ix_notifications_reference', 'notifications', ['reference_type', 'reference_id'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('batch_jobs')
    op.drop_table('audit_logs')
    op.drop_table('marks')
    op.drop_table('marksheets')
    op.drop_table('subjects')
    op.drop_table('academic_years')
    op.drop_table('users')
    op.drop_table('schools')
