"""
Service layer exceptions.

Every failure the request pipeline can surface maps onto one ErrorKind.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure classes surfaced by the request pipeline."""

    NETWORK_UNAVAILABLE = "network_unavailable"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: ErrorKind = ErrorKind.CLIENT_ERROR

    def __init__(
        self,
        message: str,
        path: str | None = None,
        status_code: int | None = None,
    ):
        self.path = path
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class NetworkUnavailableError(ServiceError):
    """No response reached the client."""

    kind = ErrorKind.NETWORK_UNAVAILABLE

    def __init__(self, path: str | None = None, detail: str | None = None):
        msg = "Network error. Please check your connection."
        if detail:
            msg += f" ({detail})"
        super().__init__(msg, path=path)


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, path: str | None, timeout: float):
        self.timeout = timeout
        super().__init__(f"Request to '{path}' timed out after {timeout}s", path=path)


class ServerError(ServiceError):
    """Server answered with a 5xx status."""

    kind = ErrorKind.SERVER_ERROR


class ClientError(ServiceError):
    """Server answered with a 4xx status other than 401/429."""

    kind = ErrorKind.CLIENT_ERROR


class UnauthorizedError(ServiceError):
    """Server answered 401."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized", path: str | None = None):
        super().__init__(message, path=path, status_code=401)


class RateLimitError(ServiceError):
    """Rate limit exceeded."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, path: str | None = None, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for '{path}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, path=path, status_code=429)


# Failures safe to retry automatically
TRANSIENT_ERRORS: tuple[type[ServiceError], ...] = (
    NetworkUnavailableError,
    RequestTimeoutError,
    ServerError,
)
