from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import threading
from datetime import timedelta

from schoolmarks.config import settings
from schoolmarks.core.roles import parse_role
from schoolmarks.core.time_provider import TimeProvider, default_time_provider
from schoolmarks.models import User


_REVOKED_TOKENS: dict[str, int] = {}
_TOKENS_LOCK = threading.RLock()
logger = logging.getLogger(__name__)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def _b64url_decode(value: str) -> bytes:
    padding = '=' * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode('ascii'))


def _sign(signing_input: bytes) -> bytes:
    return hmac.new(settings.auth_secret.encode('utf-8'), signing_input, hashlib.sha256).digest()


def _encode_jwt(payload: dict) -> str:
    header = {'alg': 'HS256', 'typ': 'JWT'}
    header_part = _b64url_encode(json.dumps(header, separators=(',', ':')).encode('utf-8'))
    payload_part = _b64url_encode(json.dumps(payload, separators=(',', ':')).encode('utf-8'))
    signature_part = _b64url_encode(_sign(f'{header_part}.{payload_part}'.encode('ascii')))
    return f'{header_part}.{payload_part}.{signature_part}'


def _decode_jwt(token: str) -> dict | None:
    try:
        header_part, payload_part, signature_part = token.split('.')
    except ValueError:
        return None

    try:
        provided_signature = _b64url_decode(signature_part)
    except ValueError:
        return None
    expected_signature = _sign(f'{header_part}.{payload_part}'.encode('ascii'))
    if not hmac.compare_digest(provided_signature, expected_signature):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_part).decode('utf-8'))
    except (ValueError, json.JSONDecodeError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def issue_access_token(user: User, *, time_provider: TimeProvider = default_time_provider) -> dict:
    """Sign a bearer token for an already authenticated user."""
    now = time_provider.now()
    expires_at = now + timedelta(hours=settings.auth_token_expiry_hours)
    token = _encode_jwt(
        {
            'sub': user.id,
            'email': user.email,
            'role': user.role,
            'school_id': user.school_id,
            'iat': int(now.timestamp()),
            'exp': int(expires_at.timestamp()),
        }
    )
    with _TOKENS_LOCK:
        _REVOKED_TOKENS.pop(token, None)
    return {
        'token': token,
        'user_id': user.id,
        'role': user.role,
        'expires_at': expires_at.isoformat(),
    }


def validate_session_token(
    token: str | None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict | None:
    if not token:
        return None
    with _TOKENS_LOCK:
        if token in _REVOKED_TOKENS:
            return None

    payload = _decode_jwt(token)
    if not payload:
        return None

    expires_at = payload.get('exp')
    if expires_at is not None and int(expires_at) <= int(time_provider.now().timestamp()):
        logger.info('auth_token_expired sub=%s', payload.get('sub'))
        return None

    role = parse_role(payload.get('role'))
    user_id = payload.get('sub')
    if role is None or user_id is None:
        return None

    return {
        'user_id': user_id,
        'email': payload.get('email') or '',
        'role': role.value,
        'school_id': int(payload.get('school_id') or 0),
        'expires_at': expires_at,
    }


def _prune_revoked(now_ts: int) -> None:
    expired = [token for token, expires_at in _REVOKED_TOKENS.items() if expires_at <= now_ts]
    for token in expired:
        del _REVOKED_TOKENS[token]


def clear_session_token(
    token: str | None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> bool:
    """Revoke a token until it expires; returns False for tokens that were never valid."""
    if not token:
        return False
    payload = _decode_jwt(token)
    if not payload:
        return False
    now_ts = int(time_provider.now().timestamp())
    expires_at = int(payload.get('exp') or now_ts + int(timedelta(hours=settings.auth_token_expiry_hours).total_seconds()))
    with _TOKENS_LOCK:
        _prune_revoked(now_ts)
        if expires_at > now_ts:
            _REVOKED_TOKENS[token] = expires_at
    logger.info('auth_token_revoked sub=%s', payload.get('sub'))
    return True
