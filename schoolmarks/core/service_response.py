from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from schoolmarks.domain.errors import ErrorKind
from schoolmarks.domain.results import ServiceResult


HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ILLEGAL_TRANSITION: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.PERSISTENCE: 500,
}


def unwrap_result(result: ServiceResult) -> Any:
    if result.ok:
        return result.value
    raise HTTPException(
        status_code=HTTP_STATUS_BY_KIND.get(result.error.kind, 500),
        detail=result.error.message,
    )
