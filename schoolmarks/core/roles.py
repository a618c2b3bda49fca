from __future__ import annotations

from enum import Enum

from schoolmarks.models import Role


class Capability(str, Enum):
    ENTER_MARKS = 'enter_marks'
    VIEW_MARKSHEETS = 'view_marksheets'
    VIEW_MARKSHEET = 'view_marksheet'
    VIEW_STATISTICS = 'view_statistics'
    REVIEW_MARKSHEETS = 'review_marksheets'
    MONITOR_BATCH_JOBS = 'monitor_batch_jobs'


_STAFF = frozenset(
    {
        Capability.ENTER_MARKS,
        Capability.VIEW_MARKSHEETS,
        Capability.VIEW_MARKSHEET,
        Capability.VIEW_STATISTICS,
    }
)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.STUDENT: frozenset({Capability.VIEW_MARKSHEET}),
    Role.SPONSOR: frozenset(),
    Role.TEACHER: _STAFF,
    Role.PRINCIPAL: _STAFF | {Capability.REVIEW_MARKSHEETS},
    Role.ADMIN: _STAFF | {Capability.REVIEW_MARKSHEETS, Capability.MONITOR_BATCH_JOBS},
    Role.SUPER_ADMIN: _STAFF | {Capability.REVIEW_MARKSHEETS, Capability.MONITOR_BATCH_JOBS},
}


def parse_role(value: str | Role | None) -> Role | None:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value or '').strip().lower())
    except ValueError:
        return None


def has_capability(role: str | Role | None, capability: Capability) -> bool:
    parsed = parse_role(role)
    if parsed is None:
        return False
    return capability in ROLE_CAPABILITIES.get(parsed, frozenset())
