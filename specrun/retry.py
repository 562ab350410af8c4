"""Error classification and rate-limit retry for review backend calls."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

import anyio

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT = "rate_limit"
TIMEOUT = "timeout"
PARSE_ERROR = "parse_error"
UNKNOWN = "unknown"

_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_PARSE_MARKERS = ("parse", "json", "unexpected token", "syntax error")


def _status_code(error: object) -> int | None:
    if isinstance(error, dict):
        code = error.get("status") or error.get("status_code")
    else:
        code = getattr(error, "status", None) or getattr(error, "status_code", None)
        response = getattr(error, "response", None)
        if code is None and response is not None:
            code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def _message(error: object) -> str:
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)


def is_rate_limit(error: object) -> bool:
    if _status_code(error) == 429:
        return True
    message = _message(error).lower()
    return "rate limit" in message or "429" in message


def classify_error(error: object) -> str:
    """Classify an arbitrary failure as rate_limit, timeout, parse_error or unknown."""
    if is_rate_limit(error):
        return RATE_LIMIT
    message = _message(error).lower()
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return TIMEOUT
    if any(marker in message for marker in _PARSE_MARKERS):
        return PARSE_ERROR
    return UNKNOWN


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    backoff_ms: int = 2000,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Run ``operation``, retrying only rate-limit failures with exponential backoff.

    Waits ``backoff_ms * 2**attempt`` before each retry. Any other exception,
    or a rate limit after ``max_retries`` retries, propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= max_retries or not is_rate_limit(exc):
                raise
            delay_ms = backoff_ms * 2 ** attempt
            logger.warning(
                "Rate limited (attempt %d/%d), retrying in %d ms",
                attempt + 1, max_retries, delay_ms,
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc)
            await anyio.sleep(delay_ms / 1000)
            attempt += 1
