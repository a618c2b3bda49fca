from __future__ import annotations

from fastapi import HTTPException, Request

from schoolmarks.core.roles import Capability, has_capability
from schoolmarks.services.auth_service import validate_session_token


def resolve_session_token(request: Request) -> str | None:
    token = request.cookies.get('auth_session')
    if token:
        return token
    authorization = request.headers.get('authorization', '')
    if authorization.lower().startswith('bearer '):
        return authorization[7:].strip()
    return None


def require_auth_user(request: Request) -> dict:
    token = resolve_session_token(request)
    session = validate_session_token(token)
    if not session:
        raise HTTPException(status_code=401, detail='Unauthorized')
    user_id = int(session.get('user_id') or 0)
    if user_id <= 0:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return {
        'user_id': user_id,
        'role': str(session.get('role') or '').strip().lower(),
        'school_id': int(session.get('school_id') or 0),
        'email': str(session.get('email') or ''),
    }


def require_capability(user: dict, capability: Capability) -> None:
    if not has_capability(user.get('role'), capability):
        raise HTTPException(status_code=403, detail='Forbidden')
