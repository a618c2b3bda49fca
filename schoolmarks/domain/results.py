from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from schoolmarks.domain.errors import ErrorKind, MarksError


logger = logging.getLogger(__name__)
__all__ = ['ServiceError', 'ServiceResult', 'run_service']


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class ServiceResult:
    value: Any = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> 'ServiceResult':
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> 'ServiceResult':
        return cls(error=ServiceError(kind=kind, message=message))


def run_service(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> ServiceResult:
    """Call a service operation and fold its failures into a ServiceResult.

    Business-rule errors keep their kind and message. Database errors become
    PERSISTENCE failures; the operation itself has already rolled back.
    """
    label = getattr(fn, '__name__', 'service')
    try:
        return ServiceResult.success(fn(*args, **kwargs))
    except MarksError as exc:
        logger.info('service_rejected op=%s kind=%s message=%s', label, exc.kind.value, exc.message)
        return ServiceResult.failure(exc.kind, exc.message)
    except SQLAlchemyError:
        logger.exception('service_persistence_failed op=%s', label)
        return ServiceResult.failure(ErrorKind.PERSISTENCE, 'Database error, operation was not applied')
