"""
Error Classifier.

Wraps errors raised by provider calls with step/provider context, a
category and a retryable flag. The classifier never retries anything: it
annotates and hands the error back to the engine, which records it.
"""

import asyncio
import re

import httpx

from .errors import (
    ErrorCategory,
    GenerationError,
    PixelFlowError,
    SaveError,
    TextGenerationError,
    TransformError,
    VisionError,
)


# Capability kind -> error class used when wrapping foreign exceptions
KIND_ERRORS: dict[str, type[PixelFlowError]] = {
    "generator": GenerationError,
    "transform": TransformError,
    "save": SaveError,
    "vision": VisionError,
    "text": TextGenerationError,
}

# Exceptions that indicate a transient connectivity problem
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

_QUOTA_HINTS = re.compile(r"rate.?limit|quota|too many requests|resource.?exhausted", re.IGNORECASE)
_AUTH_HINTS = re.compile(
    r"api.?key|unauthori[sz]ed|forbidden|permission denied|invalid credentials|authentication",
    re.IGNORECASE,
)
_TRANSIENT_HINTS = re.compile(
    r"timed? ?out|temporarily unavailable|service unavailable|overloaded|connection reset",
    re.IGNORECASE,
)


def _status_code(error: BaseException) -> int | None:
    """Find an HTTP status code on an exception, if the SDK exposes one."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status", "code", "http_status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def categorize(error: BaseException) -> tuple[ErrorCategory, bool]:
    """
    Decide the category and retryability of a foreign exception.

    Returns:
        (category, retryable)
    """
    status = _status_code(error)
    if status is not None:
        if status in (401, 403):
            return ErrorCategory.PROVIDER_AUTH, False
        if status == 429:
            return ErrorCategory.PROVIDER_QUOTA, True
        if status in (408, 425) or status >= 500:
            return ErrorCategory.TRANSIENT, True
        if status == 404:
            return ErrorCategory.NOT_FOUND, False
        if 400 <= status < 500:
            return ErrorCategory.VALIDATION, False

    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return ErrorCategory.TRANSIENT, True

    message = str(error)
    if _QUOTA_HINTS.search(message):
        return ErrorCategory.PROVIDER_QUOTA, True
    if _AUTH_HINTS.search(message):
        return ErrorCategory.PROVIDER_AUTH, False
    if _TRANSIENT_HINTS.search(message):
        return ErrorCategory.TRANSIENT, True

    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorCategory.VALIDATION, False

    return ErrorCategory.UNKNOWN, False


def classify_error(
    error: BaseException,
    *,
    step_id: str,
    kind: str,
    provider: str | None = None,
    operation: str | None = None,
) -> PixelFlowError:
    """
    Attach step context and a category to a provider error.

    Errors that are already PixelFlowErrors keep their own category and
    retryable flag; only missing location fields are filled in. Anything
    else is wrapped in the error class for the capability kind.
    """
    if isinstance(error, PixelFlowError):
        return error.with_context(step_id=step_id, kind=kind, provider=provider, operation=operation)

    category, retryable = categorize(error)
    error_cls = KIND_ERRORS.get(kind, PixelFlowError)
    where = f"{kind} '{provider}'" if provider else kind
    if operation:
        where += f" ({operation})"
    detail = str(error) or type(error).__name__

    return error_cls(
        f"Step '{step_id}' failed in {where}: {detail}",
        category=category,
        retryable=retryable,
        step_id=step_id,
        kind=kind,
        provider=provider,
        operation=operation,
        cause=error,
    )
