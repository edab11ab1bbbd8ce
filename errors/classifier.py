"""
Job error taxonomy and retry policy.

Every failure that leaves a handler is turned into a JobError carrying three facts:
    category  — what kind of thing broke (EXTERNAL_API, DATABASE, NETWORK, ...)
    severity  — how likely a retry is to help (TEMPORARY → CRITICAL)
    retryable — the final yes/no the retry handler acts on

Known exception types map directly. Anything else is classified by matching
keywords in its lowercased message, falling back to UNKNOWN/RECOVERABLE/retryable.

The policy functions are pure:
    retry_delay(error, attempts_made)        → seconds to wait before the next attempt
    should_dead_letter(error, attempts_made) → stop retrying and mark FAILED?
"""

import random
import traceback
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from models.enums import ErrorCategory, ErrorSeverity

RATE_LIMIT_DEFAULT_DELAY = 60.0      # seconds, when upstream gave no retry-after
TEMPORARY_BASE_DELAY = 2.0
RECOVERABLE_BASE_DELAY = 5.0
MAX_RETRY_DELAY = 5 * 60.0
JITTER_RATIO = 0.2
DEAD_LETTER_MAX_ATTEMPTS = 5


class JobError(Exception):
    """Base job error with classification."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        severity: ErrorSeverity,
        retryable: Optional[bool] = None,
        context: Optional[dict[str, Any]] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        # Default: everything except PERMANENT is worth another try
        self.retryable = retryable if retryable is not None else severity != ErrorSeverity.PERMANENT
        self.context = context or {}
        self.original = original

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def stack_trace(self) -> Optional[str]:
        source = self.original or self
        if source.__traceback__ is None:
            return None
        return "".join(traceback.format_exception(type(source), source, source.__traceback__))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "context": self.context,
            "original": (
                {"name": type(self.original).__name__, "message": str(self.original)}
                if self.original else None
            ),
        }


class ExternalApiError(JobError):
    """A third-party API call failed. 429 is a rate limit, 5xx is worth retrying, 4xx is not."""

    def __init__(self, message: str, *, service: str, status_code: Optional[int] = None,
                 context: Optional[dict] = None, original: Optional[BaseException] = None):
        is_rate_limit = status_code == 429
        is_server_error = status_code is not None and status_code >= 500
        if is_rate_limit:
            category, severity = ErrorCategory.RATE_LIMIT, ErrorSeverity.TEMPORARY
        elif is_server_error:
            category, severity = ErrorCategory.EXTERNAL_API, ErrorSeverity.RECOVERABLE
        else:
            category, severity = ErrorCategory.EXTERNAL_API, ErrorSeverity.PERMANENT
        super().__init__(
            message,
            category=category,
            severity=severity,
            retryable=is_rate_limit or is_server_error,
            context={**(context or {}), "service": service, "status_code": status_code},
            original=original,
        )


class DatabaseError(JobError):
    def __init__(self, message: str, *, operation: Optional[str] = None,
                 context: Optional[dict] = None, original: Optional[BaseException] = None):
        super().__init__(
            message,
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.RECOVERABLE,
            retryable=True,
            context={**(context or {}), "operation": operation},
            original=original,
        )


class ConfigurationError(JobError):
    """Missing env var, API key, handler... retrying never fixes these."""

    def __init__(self, message: str, *, config_key: Optional[str] = None,
                 context: Optional[dict] = None, original: Optional[BaseException] = None):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            context={**(context or {}), "config_key": config_key},
            original=original,
        )


class BusinessLogicError(JobError):
    def __init__(self, message: str, *, context: Optional[dict] = None,
                 original: Optional[BaseException] = None):
        super().__init__(
            message,
            category=ErrorCategory.BUSINESS_LOGIC,
            severity=ErrorSeverity.PERMANENT,
            retryable=False,
            context=context,
            original=original,
        )


class JobValidationError(BusinessLogicError):
    """Raised by admission when a payload doesn't fit its job type. Nothing is written."""


class NotFoundError(JobError):
    def __init__(self, resource: str, identifier: str, *, context: Optional[dict] = None):
        super().__init__(
            f"{resource} not found: {identifier}",
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.PERMANENT,
            retryable=False,
            context={**(context or {}), "resource": resource, "identifier": identifier},
        )


class RateLimitError(JobError):
    def __init__(self, service: str, *, retry_after: Optional[float] = None,
                 context: Optional[dict] = None, original: Optional[BaseException] = None):
        super().__init__(
            f"Rate limit exceeded for {service}",
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.TEMPORARY,
            retryable=True,
            context={**(context or {}), "service": service, "retry_after": retry_after},
            original=original,
        )
        self.retry_after = retry_after


class AuthError(JobError):
    def __init__(self, message: str, *, service: Optional[str] = None,
                 context: Optional[dict] = None, original: Optional[BaseException] = None):
        super().__init__(
            message,
            category=ErrorCategory.AUTH,
            severity=ErrorSeverity.PERMANENT,
            retryable=False,
            context={**(context or {}), "service": service},
            original=original,
        )


class StalledJobError(JobError):
    """The broker redelivered a job whose previous run never reported back."""

    def __init__(self, message: str, *, context: Optional[dict] = None):
        super().__init__(
            message,
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.RECOVERABLE,
            retryable=True,
            context=context,
        )


class NetworkError(JobError):
    def __init__(self, message: str, *, host: Optional[str] = None,
                 context: Optional[dict] = None, original: Optional[BaseException] = None):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.RECOVERABLE,
            retryable=True,
            context={**(context or {}), "host": host},
            original=original,
        )


# Checked in order; first hit wins.
_RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests")
_NETWORK_KEYWORDS = ("network", "econnrefused", "connection refused", "timeout", "timed out", "dns")
_NOT_FOUND_KEYWORDS = ("not found", "does not exist")
_DATABASE_KEYWORDS = ("database", "sqlalchemy", "psycopg", "deadlock")
_AUTH_KEYWORDS = ("unauthorized", "forbidden", "permission denied")
_CONFIG_KEYWORDS = ("env", "config", "api key", "api secret")


def _matches(message: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in message for keyword in keywords)


def to_job_error(exc: BaseException) -> JobError:
    """Convert any exception into a classified JobError."""
    if isinstance(exc, JobError):
        return exc

    text = str(exc) or type(exc).__name__

    # ── Known exception types ───────────────────────────────────
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return NetworkError(text, original=exc)
    if isinstance(exc, SQLAlchemyError):
        return DatabaseError(text, original=exc)

    # ── Keyword matching on the message ─────────────────────────
    message = text.lower()
    if _matches(message, _RATE_LIMIT_KEYWORDS):
        return RateLimitError("unknown", original=exc, context={"message": text})
    if _matches(message, _NETWORK_KEYWORDS):
        return NetworkError(text, original=exc)
    if _matches(message, _NOT_FOUND_KEYWORDS):
        error = NotFoundError("Resource", text)
        error.original = exc
        return error
    if _matches(message, _DATABASE_KEYWORDS):
        return DatabaseError(text, original=exc)
    if _matches(message, _AUTH_KEYWORDS):
        return AuthError(text, original=exc)
    if _matches(message, _CONFIG_KEYWORDS):
        return ConfigurationError(text, original=exc)

    return JobError(
        text,
        category=ErrorCategory.UNKNOWN,
        severity=ErrorSeverity.RECOVERABLE,
        original=exc,
    )


def classify(exc: BaseException) -> tuple[ErrorCategory, ErrorSeverity, bool]:
    """(category, severity, retryable) for any exception."""
    error = to_job_error(exc)
    return error.category, error.severity, error.retryable


def retry_delay(error: JobError, attempts_made: int, *, jitter: bool = True) -> float:
    """
    Seconds to wait before the next attempt.

    - non-retryable → 0
    - rate limit    → upstream retry-after if given, else 60s
    - otherwise     → base * 2^attempts_made, capped at 5 minutes, ±20% jitter
                      (base 2s for TEMPORARY, 5s for everything else)
    """
    if not error.retryable:
        return 0.0

    if error.category == ErrorCategory.RATE_LIMIT:
        retry_after = error.context.get("retry_after")
        if isinstance(retry_after, (int, float)) and retry_after > 0:
            return float(retry_after)
        return RATE_LIMIT_DEFAULT_DELAY

    base = TEMPORARY_BASE_DELAY if error.severity == ErrorSeverity.TEMPORARY else RECOVERABLE_BASE_DELAY
    delay = min(base * (2 ** max(attempts_made, 0)), MAX_RETRY_DELAY)

    if jitter:
        # Spread retries so many tenants failing together don't retry together
        delay += delay * JITTER_RATIO * random.uniform(-1.0, 1.0)
    return delay


def should_dead_letter(error: JobError, attempts_made: int) -> bool:
    """
    Stop retrying?

    - CRITICAL severity or CONFIGURATION category → immediately
    - PERMANENT severity → after the first attempt
    - everything else → once attempts_made reaches 5
    """
    if error.severity == ErrorSeverity.CRITICAL or error.category == ErrorCategory.CONFIGURATION:
        return True
    if error.severity == ErrorSeverity.PERMANENT and attempts_made >= 1:
        return True
    return attempts_made >= DEAD_LETTER_MAX_ATTEMPTS
