"""
Error taxonomy and user-safe error sanitization for FreeForge
"""

from enum import Enum
from typing import Optional, Union


class ErrorCategory(Enum):
    """User-safe error categories. The value is the only text a caller ever sees."""
    BUSY = "Our AI servers are busy right now. Please wait a moment and try again."
    UNAVAILABLE = "Our AI servers are temporarily unavailable. Please try again shortly."
    UPSTREAM = "The AI provider ran into a temporary problem. Please try again."
    TIMEOUT = "The request took too long. Please try again with a simpler prompt."
    NETWORK = "Network error. Please check your connection and try again."
    MALFORMED = "The AI response was malformed. Please try again."
    MISCONFIGURATION = "The AI service is not configured correctly. Please contact support."
    NO_FILES = "No files could be generated for this request. Please try again."
    GENERIC = "Something went wrong. Please try again."

    @property
    def message(self) -> str:
        return self.value

    @classmethod
    def from_message(cls, message: Optional[str]) -> 'ErrorCategory':
        """Map a sanitized message back to its category (GENERIC when unknown)"""
        for category in cls:
            if category.value == message:
                return category
        return cls.GENERIC


class APIError(Exception):
    """Upstream completion failure with provider info and classification inputs"""
    def __init__(self, provider: str, error_type: str, message: str, status: Optional[int] = None,
                 body: str = "", original_error: Exception = None, should_retry: bool = True):
        self.provider = provider
        self.error_type = error_type
        self.message = message
        self.status = status
        self.body = body
        self.original_error = original_error
        self.should_retry = should_retry
        super().__init__(f"{provider} {error_type}: {message}")


class UpstreamHTTPError(APIError):
    """Non-success HTTP status from the completion endpoint"""
    def __init__(self, provider: str, status: int, body: str):
        super().__init__(provider, "HTTP_ERROR", f"HTTP {status}: {body}", status=status, body=body,
                         should_retry=status >= 500 or status in (402, 408, 429))


class CompletionTimeoutError(APIError):
    """An attempt hit its absolute or first-byte ceiling"""
    def __init__(self, provider: str, message: str):
        super().__init__(provider, "TIMEOUT", message)


class UpstreamConnectionError(APIError):
    """The connection failed or dropped before a response completed"""
    def __init__(self, provider: str, message: str, original_error: Exception = None):
        super().__init__(provider, "CONNECTION_ERROR", message, original_error=original_error)


class EmptyCompletionError(APIError):
    """The endpoint answered but produced no text"""
    def __init__(self, provider: str, message: str = "Empty response"):
        super().__init__(provider, "EMPTY_RESPONSE", message)


class GenerationError(Exception):
    """Base class for pipeline-level failures"""
    def __init__(self, message: str, raw_detail: Optional[str] = None):
        self.message = message
        self.raw_detail = raw_detail if raw_detail is not None else message
        super().__init__(message)


class ConfigurationError(GenerationError):
    """No credentials or no models to try"""


class FallbackExhaustedError(GenerationError):
    """Every combo in the roster failed"""
    def __init__(self, message: str, last_error: Optional[BaseException] = None, rate_limited: bool = False):
        self.last_error = last_error
        self.rate_limited = rate_limited
        super().__init__(message, raw_detail=str(last_error) if last_error is not None else message)


class NoFilesProducedError(GenerationError):
    """Neither the phased nor the legacy path assembled any files"""


class GenerationFailedError(GenerationError):
    """The client gave up on a generation request"""
    def __init__(self, message: str, raw_detail: Optional[str] = None, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, raw_detail)


def _is_server_error(error: Optional[BaseException]) -> bool:
    return isinstance(error, APIError) and error.status is not None and error.status >= 500


def classify_error(raw: Union[str, BaseException, None]) -> ErrorCategory:
    """Map raw provider or pipeline error text onto a user-safe category"""
    if isinstance(raw, CompletionTimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(raw, ConfigurationError):
        return ErrorCategory.MISCONFIGURATION
    if isinstance(raw, NoFilesProducedError):
        return ErrorCategory.NO_FILES
    if isinstance(raw, FallbackExhaustedError) and raw.rate_limited:
        return ErrorCategory.BUSY
    if isinstance(raw, FallbackExhaustedError) and _is_server_error(raw.last_error):
        return ErrorCategory.UPSTREAM
    if _is_server_error(raw):
        return ErrorCategory.UPSTREAM
    if isinstance(raw, GenerationError):
        known = ErrorCategory.from_message(raw.message)
        if known is not ErrorCategory.GENERIC:
            return known
        raw = raw.raw_detail

    if raw is None:
        return ErrorCategory.GENERIC
    text = str(raw)
    if not text.strip():
        return ErrorCategory.GENERIC
    already_safe = ErrorCategory.from_message(text)
    if already_safe is not ErrorCategory.GENERIC:
        return already_safe
    lower = text.lower()

    if any(k in lower for k in ("rate limit", "rate-limit", "429", "quota", "exceeded", "temporarily", "busy")):
        return ErrorCategory.BUSY
    if any(k in lower for k in ("credit", "insufficient", "billing", "payment required", "402")):
        return ErrorCategory.UNAVAILABLE
    if any(k in lower for k in ("timeout", "timed out", "deadline")):
        return ErrorCategory.TIMEOUT
    if any(k in lower for k in ("network", "econnrefused", "connection", "fetch failed")):
        return ErrorCategory.NETWORK
    if any(k in lower for k in ("no api key", "not configured", "unauthorized", "401", "invalid api key")):
        return ErrorCategory.MISCONFIGURATION
    if any(k in lower for k in ("no files", "files produced")):
        return ErrorCategory.NO_FILES
    if any(k in lower for k in ("json", "parse", "malformed")):
        return ErrorCategory.MALFORMED
    return ErrorCategory.GENERIC


def sanitize_error(raw: Union[str, BaseException, None]) -> str:
    """Return the user-safe message for raw error text; never echoes the input"""
    return classify_error(raw).message
