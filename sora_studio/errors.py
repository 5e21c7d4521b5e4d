# Application errors and the retry helper used around OpenAI calls

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AppError(Exception):
    """Error that carries an HTTP status and a machine-readable code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class UpstreamError(AppError):
    """OpenAI answered with an error (or could not be reached)."""
    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, *, upstream_status: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class QuotaExceededError(UpstreamError):
    status_code = 429
    code = "INSUFFICIENT_CREDITS"


class StorageError(AppError):
    code = "STORAGE_ERROR"


class StorageConflictError(StorageError):
    status_code = 409
    code = "STORAGE_CONFLICT"


def is_transient(error: BaseException) -> bool:
    """Network errors and 5xx answers are worth another attempt."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, UpstreamError) and error.upstream_status is not None:
        return 500 <= error.upstream_status < 600
    return False


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: bool = True,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Await `fn()`, retrying transient failures with exponential backoff."""
    should_retry = should_retry or is_transient
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                raise
            wait = delay * (2 ** (attempt - 1)) if backoff else delay
            logger.debug("attempt %s/%s failed (%s), retrying in %.1fs", attempt, attempts, e, wait)
            await asyncio.sleep(wait)
    raise RuntimeError("unreachable")
