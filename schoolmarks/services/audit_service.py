from __future__ import annotations

import json
import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.models import AuditAction, AuditLog, Marksheet
from schoolmarks.request_context import current_client_ip


logger = logging.getLogger(__name__)

MARKSHEET_ENTITY = 'marksheet'


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _dump(payload: dict | None) -> str:
    if payload is None:
        return ''
    return json.dumps(payload, default=_json_default, sort_keys=True)


def marksheet_snapshot(marksheet: Marksheet) -> dict:
    return {
        'status': marksheet.status,
        'subject_id': marksheet.subject_id,
        'marks_obtained': marksheet.marks_obtained,
        'max_marks': marksheet.max_marks,
        'remarks': marksheet.remarks,
        'rejection_comments': marksheet.rejection_comments,
        'is_locked': bool(marksheet.is_locked),
        'submitted_by': marksheet.submitted_by,
        'submitted_at': marksheet.submitted_at,
        'approved_by': marksheet.approved_by,
        'approved_at': marksheet.approved_at,
    }


def write_audit_log(
    db: Session,
    *,
    actor_id: int | None,
    action: AuditAction,
    entity_type: str,
    entity_id: int | None,
    before: dict | None = None,
    after: dict | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    Only flushes; the caller commits it together with the mutation it describes,
    so a failed audit insert rolls the mutation back too.
    """
    row = AuditLog(
        user_id=actor_id,
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        before_json=_dump(before),
        after_json=_dump(after),
        details_json=_dump(details or {}),
        ip_address=ip_address or current_client_ip.get(),
        created_at=time_provider.naive_now(),
    )
    db.add(row)
    db.flush()
    return row


def list_audit_trail(db: Session, *, entity_type: str, entity_id: int) -> list[dict]:
    rows = (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )
    return [
        {
            'id': row.id,
            'user_id': row.user_id,
            'action': row.action,
            'before': json.loads(row.before_json) if row.before_json else None,
            'after': json.loads(row.after_json) if row.after_json else None,
            'details': json.loads(row.details_json or '{}'),
            'ip_address': row.ip_address,
            'created_at': row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
