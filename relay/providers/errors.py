"""
Shared error taxonomy for storage providers.

Every backend maps its native failures (HTTP statuses, API error codes,
transport exceptions) onto these classes. Engines and the job queue only
look at ``kind`` and ``retryable``, never at backend-specific detail.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INSUFFICIENT_STORAGE = "insufficient_storage"
    INVALID_OPERATION = "invalid_operation"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    FILE_SIZE_LIMIT = "file_size_limit"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CONFIGURATION = "configuration"
    API = "api_error"


# Messages shown to end users; raw backend payloads only go to the log.
USER_MESSAGES = {
    ErrorKind.AUTHENTICATION: "Authentication with the storage provider failed. Please reconnect the account.",
    ErrorKind.AUTHORIZATION: "The storage provider denied access to this resource.",
    ErrorKind.NETWORK: "A network error occurred while contacting the storage provider.",
    ErrorKind.RATE_LIMIT: "The storage provider is rate limiting requests. Please try again later.",
    ErrorKind.NOT_FOUND: "The requested file or folder was not found.",
    ErrorKind.ALREADY_EXISTS: "A file or folder with the same name already exists.",
    ErrorKind.INSUFFICIENT_STORAGE: "The storage provider is out of space.",
    ErrorKind.INVALID_OPERATION: "The requested operation is not valid.",
    ErrorKind.UNSUPPORTED_OPERATION: "This storage provider does not support the requested operation.",
    ErrorKind.FILE_SIZE_LIMIT: "The file exceeds the storage provider's size limit.",
    ErrorKind.INTEGRITY_MISMATCH: "The transferred file did not match the original.",
    ErrorKind.SERVICE_UNAVAILABLE: "The storage provider is temporarily unavailable.",
    ErrorKind.CONFIGURATION: "The storage connection is misconfigured.",
    ErrorKind.API: "The storage provider returned an unexpected error.",
}


class ProviderError(Exception):
    """Base exception for storage provider operations."""

    kind = ErrorKind.API
    retryable = False

    def __init__(
        self,
        message: str = "",
        *,
        provider_type: str | None = None,
        status_code: int | None = None,
        retryable: bool | None = None,
    ):
        self.message = message or USER_MESSAGES[self.kind]
        self.provider_type = provider_type
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]


class AuthenticationError(ProviderError):
    """Credentials were rejected or could not be refreshed."""

    kind = ErrorKind.AUTHENTICATION


class AuthorizationError(ProviderError):
    """Authenticated, but not allowed to touch the resource."""

    kind = ErrorKind.AUTHORIZATION


class NetworkError(ProviderError):
    """Transport failure (connection refused, timeout, reset)."""

    kind = ErrorKind.NETWORK
    retryable = True


class RateLimitError(ProviderError):
    """Backend asked us to slow down."""

    kind = ErrorKind.RATE_LIMIT
    retryable = True

    def __init__(self, message: str = "", *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NotFoundError(ProviderError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "", *, path: str | None = None, **kwargs):
        super().__init__(message or (f"Not found: {path}" if path else ""), **kwargs)
        self.path = path


class AlreadyExistsError(ProviderError):
    kind = ErrorKind.ALREADY_EXISTS

    def __init__(self, message: str = "", *, path: str | None = None, **kwargs):
        super().__init__(message or (f"Already exists: {path}" if path else ""), **kwargs)
        self.path = path


class InsufficientStorageError(ProviderError):
    kind = ErrorKind.INSUFFICIENT_STORAGE


class InvalidOperationError(ProviderError):
    kind = ErrorKind.INVALID_OPERATION


class InvalidPathError(InvalidOperationError):
    """Path contains parent-directory traversal or is otherwise unusable."""

    pass


class UnsupportedOperationError(ProviderError):
    """The backend's capability set does not include this operation."""

    kind = ErrorKind.UNSUPPORTED_OPERATION

    def __init__(self, operation: str, **kwargs):
        provider_type = kwargs.get("provider_type") or "this provider"
        super().__init__(f"{operation} is not supported by {provider_type}", **kwargs)
        self.operation = operation


class FileSizeLimitError(ProviderError):
    kind = ErrorKind.FILE_SIZE_LIMIT


class IntegrityMismatchError(ProviderError):
    kind = ErrorKind.INTEGRITY_MISMATCH
    retryable = True


class ServiceUnavailableError(ProviderError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    retryable = True


class ConfigurationError(ProviderError):
    """Provider type unknown, backend failed to load, or config is invalid."""

    kind = ErrorKind.CONFIGURATION


class APIError(ProviderError):
    """Catch-all for backend responses that fit no other kind."""

    kind = ErrorKind.API


def error_from_status(
    status: int,
    message: str = "",
    *,
    provider_type: str | None = None,
    retry_after: float | None = None,
    path: str | None = None,
) -> ProviderError:
    """
    Map an HTTP status code onto the error taxonomy.

    Args:
        status: HTTP status returned by the backend
        message: Internal description (logged, not shown to users)
        provider_type: Backend type tag for context
        retry_after: Seconds from a Retry-After header, if any
        path: Remote path the request targeted

    Returns:
        A ProviderError subclass instance (not raised)
    """
    common = {"provider_type": provider_type, "status_code": status}

    if status == 400:
        return InvalidOperationError(message, **common)
    if status == 401:
        return AuthenticationError(message, **common)
    if status == 403:
        return AuthorizationError(message, **common)
    if status == 404:
        return NotFoundError(message, path=path, **common)
    if status == 408:
        return NetworkError(message, **common)
    if status in (409, 412):
        return AlreadyExistsError(message, path=path, **common)
    if status == 413:
        return FileSizeLimitError(message, **common)
    if status == 429:
        return RateLimitError(message, retry_after=retry_after, **common)
    if status == 507:
        return InsufficientStorageError(message, **common)
    if status in (500, 502, 503, 504):
        return ServiceUnavailableError(message, **common)

    return APIError(
        message or f"Unexpected response status {status}",
        retryable=status >= 500,
        **common,
    )


def parse_retry_after(value) -> float | None:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if value in (None, ""):
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


def describe_error(exc: BaseException) -> str:
    """Return the message that may be shown to an end user for ``exc``."""
    if isinstance(exc, ProviderError):
        return exc.user_message
    user_message = getattr(exc, "user_message", None)
    if user_message:
        return user_message
    return "An unexpected error occurred."
