"""
Billing provider exceptions for error handling.
"""

from typing import Optional, Dict, Any


class BillingClientError(Exception):
    """Raised when the billing provider API cannot answer a lookup."""

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


class SignatureVerificationError(Exception):
    """Raised when a webhook body or signature header is not authentic."""
    pass
