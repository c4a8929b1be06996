"""
Role client exceptions for error handling.

The retrying role-sync adapter keys its retry decision off these types:
rate limits and transient failures are retried, validation errors never are.
"""

from typing import Optional, Dict, Any


class RoleClientError(Exception):
    """Base exception for role/group-membership API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class RoleRateLimitError(RoleClientError):
    """Raised when the API rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after


class RoleTransientError(RoleClientError):
    """Raised on 5xx responses, timeouts and connection failures."""

    def __init__(
        self,
        message: str = "Transient error - role API unavailable",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class RoleValidationError(RoleClientError):
    """Raised on non-retryable 4xx responses (bad ids, missing permissions)."""
    pass
