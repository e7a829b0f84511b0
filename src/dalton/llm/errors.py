"""Error taxonomy and classification for provider calls.

Every failure leaving the chat core is a :class:`ClassifiedError`: an
exception annotated with a retry-relevant category and a flag saying
whether repeating the call is safe.  Transport failures are mapped to a
category by HTTP status first, exception type second, and message
keywords last.
"""

from __future__ import annotations

import enum
import re
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from dalton.types import AssembledResponse


class ErrorCategory(str, enum.Enum):
    """Retry-relevant failure categories."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    SERVER = "server"
    CLIENT = "client"
    UNKNOWN = "unknown"


# UNKNOWN stays retryable so transient faults are not masked
_RETRYABLE = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER,
    ErrorCategory.UNKNOWN,
})


def is_retryable_category(category: ErrorCategory) -> bool:
    return category in _RETRYABLE


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ClassifiedError(Exception):
    """An error annotated with its category and retry safety.

    Parameters
    ----------
    message:
        Human-readable description.
    category:
        One of :class:`ErrorCategory`.
    is_retryable:
        Defaults to what the category implies.
    cause:
        The original exception, if any.
    attempts:
        How many establishment attempts were made before giving up.
    provider:
        Identifier of the provider that failed.
    partial:
        Whatever response state had been assembled when the call failed.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        *,
        is_retryable: bool | None = None,
        cause: BaseException | None = None,
        attempts: int | None = None,
        provider: str | None = None,
        partial: AssembledResponse | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.is_retryable = (
            is_retryable_category(category) if is_retryable is None else is_retryable
        )
        self.cause = cause
        self.attempts = attempts
        self.provider = provider
        self.partial = partial

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, category={self.category.value}, "
            f"retryable={self.is_retryable}, attempts={self.attempts})"
        )


class ValidationError(ClassifiedError):
    """Invalid input; raised before any network call is attempted."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(
            message, ErrorCategory.CLIENT, is_retryable=False, provider=provider,
        )


class ProviderConfigurationError(ClassifiedError):
    """The requested provider is unknown, disabled, or misconfigured."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(
            message, ErrorCategory.CLIENT, is_retryable=False, provider=provider,
        )


class StreamError(ClassifiedError):
    """The stream failed after it was established.

    Never retried automatically: output may already have reached the
    caller.  ``partial`` holds the state assembled up to the failure.
    """


class RequestTimeoutError(ClassifiedError):
    """The end-to-end deadline of a chat call expired."""

    def __init__(
        self,
        message: str,
        *,
        timeout_ms: float,
        is_retryable: bool = True,
        cause: BaseException | None = None,
        attempts: int | None = None,
        provider: str | None = None,
        partial: AssembledResponse | None = None,
    ) -> None:
        super().__init__(
            message,
            ErrorCategory.NETWORK,
            is_retryable=is_retryable,
            cause=cause,
            attempts=attempts,
            provider=provider,
            partial=partial,
        )
        self.timeout_ms = timeout_ms


class ProviderHTTPError(Exception):
    """A provider answered with a non-success HTTP status (or an error object)."""

    def __init__(
        self,
        status_code: int | None,
        body: str = "",
        provider: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.provider = provider
        label = provider or "provider"
        if status_code is None:
            super().__init__(f"{label} returned an error: {body}")
        else:
            super().__init__(f"{label} returned HTTP {status_code}: {body}")


class MalformedChunkError(ValueError):
    """A native stream item could not be mapped onto the canonical chunk shape."""

    def __init__(self, provider: str, detail: str, item: Any = None) -> None:
        self.provider = provider
        self.item = item
        super().__init__(f"Malformed stream item from {provider}: {detail}")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_NETWORK_KEYWORDS = (
    "network",
    "connection",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "enotfound",
    "etimedout",
    "epipe",
    "fetch failed",
    "socket",
    "dns",
)
_RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests", "quota exceeded")
_AUTH_KEYWORDS = (
    "authentication",
    "unauthorized",
    "forbidden",
    "api key",
    "invalid key",
    "credential",
)
_SERVER_KEYWORDS = (
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
_CLIENT_KEYWORDS = ("bad request", "invalid", "validation")

_STATUS_RE = re.compile(r"(?<!\d)(4\d\d|5\d\d)(?!\d)")


def category_for_status(status: int) -> ErrorCategory:
    """Map an HTTP status code onto a category."""
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status == 408:
        return ErrorCategory.NETWORK
    if status >= 500:
        return ErrorCategory.SERVER
    if status >= 400:
        return ErrorCategory.CLIENT
    return ErrorCategory.UNKNOWN


def categorize_message(message: str) -> ErrorCategory:
    """Categorize an error from its message text alone."""
    lower = message.lower()

    if any(kw in lower for kw in _NETWORK_KEYWORDS):
        return ErrorCategory.NETWORK

    codes = {int(m) for m in _STATUS_RE.findall(lower)}

    if 429 in codes or any(kw in lower for kw in _RATE_LIMIT_KEYWORDS):
        return ErrorCategory.RATE_LIMIT
    if codes & {401, 403} or any(kw in lower for kw in _AUTH_KEYWORDS):
        return ErrorCategory.AUTHENTICATION
    if codes & {500, 502, 503, 504} or any(kw in lower for kw in _SERVER_KEYWORDS):
        return ErrorCategory.SERVER
    if 400 in codes or any(kw in lower for kw in _CLIENT_KEYWORDS):
        return ErrorCategory.CLIENT
    return ErrorCategory.UNKNOWN


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, ProviderHTTPError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def _category_for(exc: BaseException) -> ErrorCategory:
    status = _status_code(exc)
    if status is not None:
        return category_for_status(status)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    return categorize_message(str(exc))


def classify_error(
    exc: BaseException,
    provider: str | None = None,
) -> ClassifiedError:
    """Return *exc* as a :class:`ClassifiedError`.

    Already-classified errors are returned unchanged.
    """
    if isinstance(exc, ClassifiedError):
        if exc.provider is None:
            exc.provider = provider
        return exc
    category = _category_for(exc)
    message = str(exc) or type(exc).__name__
    return ClassifiedError(message, category, cause=exc, provider=provider)
