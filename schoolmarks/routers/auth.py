from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from schoolmarks.core.router_guard import resolve_session_token
from schoolmarks.route_logging import EndpointNameRoute
from schoolmarks.services.auth_service import clear_session_token


router = APIRouter(prefix='/api/auth', tags=['Auth'], route_class=EndpointNameRoute)


@router.post('/logout')
def auth_logout(request: Request):
    token = resolve_session_token(request)
    clear_session_token(token)
    response = JSONResponse({'ok': True})
    response.delete_cookie('auth_session')
    return response
