from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from schoolmarks.config import settings


logger = logging.getLogger('schoolmarks.metrics')


def _log_duration(label: str, started: float, threshold_ms: int, log_label: str) -> None:
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= threshold_ms:
        logger.info(
            'service_timer label=%s duration_ms=%.2f event=%s',
            label,
            duration_ms,
            log_label,
        )


def _timed(
    *,
    label: str,
    threshold_ms: int | None = None,
    log_label: str = 'timed',
) -> Callable[[Callable[..., object]], Callable[..., object]]:
    def decorator(func: Callable[..., object]) -> Callable[..., object]:
        threshold_value = threshold_ms if threshold_ms is not None else settings.metrics_slow_ms

        if asyncio.iscoroutinefunction(func):
            async def async_wrapper(*args: object, **kwargs: object):
                started = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _log_duration(label, started, threshold_value, log_label)

            async_wrapper.__name__ = func.__name__
            return async_wrapper  # type: ignore[return-value]

        def sync_wrapper(*args: object, **kwargs: object):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _log_duration(label, started, threshold_value, log_label)

        sync_wrapper.__name__ = func.__name__
        sync_wrapper.__doc__ = func.__doc__
        return sync_wrapper  # type: ignore[return-value]

    return decorator


def timed_service(label: str, *, threshold_ms: int | None = None) -> Callable[[Callable[..., object]], Callable[..., object]]:
    return _timed(label=label, threshold_ms=threshold_ms, log_label='service')


def run_timed_job(label: str, fn: Callable[[], object]) -> object:
    start = time.perf_counter()
    logger.info('job_start name=%s', label)
    status = 'ok'
    try:
        return fn()
    except Exception:
        status = 'failed'
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.exception('job_failed name=%s duration_ms=%.2f', label, duration_ms)
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.info('job_end name=%s status=%s duration_ms=%.2f', label, status, duration_ms)
