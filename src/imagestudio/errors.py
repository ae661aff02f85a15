import asyncio
from enum import Enum
from typing import Any, Optional

import httpx
import openai
from pydantic import ValidationError


class ErrorKind(str, Enum):
    AUTHENTICATION = "Authentication"
    RATE_LIMIT = "RateLimit"
    SAFETY_BLOCK = "SafetyBlock"
    MALFORMED_REQUEST = "MalformedRequest"
    TRANSIENT_OVERLOAD = "TransientOverload"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    ZERO_CONTENT = "ZeroContent"
    UNKNOWN = "Unknown"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.TRANSIENT_OVERLOAD,
        ErrorKind.TIMEOUT,
        ErrorKind.UNKNOWN,
    }
)

DEFAULT_MESSAGES = {
    ErrorKind.AUTHENTICATION: "Invalid or missing API key.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please try again later.",
    ErrorKind.SAFETY_BLOCK: "Content blocked by safety filters.",
    ErrorKind.MALFORMED_REQUEST: "The request was rejected as malformed.",
    ErrorKind.TRANSIENT_OVERLOAD: "The model is temporarily overloaded.",
    ErrorKind.TIMEOUT: "The request timed out.",
    ErrorKind.CANCELLED: "Request cancelled.",
    ErrorKind.ZERO_CONTENT: "The model returned neither an image nor text.",
    ErrorKind.UNKNOWN: "An unexpected error occurred.",
}

RATE_LIMIT_MARKERS = ("rate limit", "quota", "resource exhausted", "resource_exhausted")
AUTH_MARKERS = ("api key", "api_key", "unauthorized", "unauthenticated", "permission denied")
OVERLOAD_MARKERS = ("overloaded", "unavailable", "capacity", "try again later")
SAFETY_MARKERS = ("safety", "blocked", "policy", "harmful", "prohibited")
MALFORMED_MARKERS = ("invalid", "bad request", "argument", "malformed", "unsupported")


class ClassifiedError(Exception):
    """A failure mapped into the closed error taxonomy.

    Created once where the raw failure first surfaces; upper layers only
    inspect ``kind`` and re-raise the same instance.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        retry_after: Optional[float] = None,
        raw: Any = None,
    ):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        self.retry_after = retry_after
        self.raw = raw
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    def __repr__(self) -> str:
        return f"ClassifiedError(kind={self.kind.value!r}, message={self.message!r})"


class OperationCancelled(Exception):
    """Raised when a cancellation token fires while work is pending."""


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def _status_of(raw: Any) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(raw, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(raw, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _retry_after_of(raw: Any) -> Optional[float]:
    response = getattr(raw, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


def _message_of(raw: Any) -> str:
    message = getattr(raw, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(raw) or type(raw).__name__


def classify(raw: Any) -> ClassifiedError:
    """Map any raw failure into a ClassifiedError. Pure; never raises."""
    if isinstance(raw, ClassifiedError):
        return raw
    if isinstance(raw, (OperationCancelled, asyncio.CancelledError)):
        return ClassifiedError(ErrorKind.CANCELLED, raw=raw)
    if isinstance(
        raw,
        (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError, httpx.TimeoutException),
    ):
        return ClassifiedError(ErrorKind.TIMEOUT, str(raw) or None, raw=raw)
    if isinstance(raw, ValidationError):
        return ClassifiedError(ErrorKind.MALFORMED_REQUEST, str(raw), raw=raw)

    status = _status_of(raw)
    message = _message_of(raw)
    lowered = message.lower()

    if status == 429 or any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return ClassifiedError(
            ErrorKind.RATE_LIMIT,
            DEFAULT_MESSAGES[ErrorKind.RATE_LIMIT],
            retry_after=_retry_after_of(raw),
            raw=raw,
        )
    if status in (401, 403) or any(marker in lowered for marker in AUTH_MARKERS):
        return ClassifiedError(ErrorKind.AUTHENTICATION, message, raw=raw)
    if status == 503 or any(marker in lowered for marker in OVERLOAD_MARKERS):
        return ClassifiedError(ErrorKind.TRANSIENT_OVERLOAD, message, raw=raw)
    # Checked before 400 so a policy rejection is never reported as a bad request.
    if any(marker in lowered for marker in SAFETY_MARKERS):
        return ClassifiedError(ErrorKind.SAFETY_BLOCK, message, raw=raw)
    if status == 400 or any(marker in lowered for marker in MALFORMED_MARKERS):
        return ClassifiedError(ErrorKind.MALFORMED_REQUEST, message, raw=raw)
    return ClassifiedError(ErrorKind.UNKNOWN, message, raw=raw)
