"""
Razorpay-specific exceptions for error handling.
"""

from typing import Optional, Dict, Any


class RazorpayError(Exception):
    """Base exception for Razorpay API errors."""

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


class RazorpayAuthenticationError(RazorpayError):
    """Raised when API key authentication fails (401)."""

    def __init__(
        self,
        message: str = "Authentication failed - key id or secret may be invalid",
        status_code: int = 401,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, **kwargs)


class RazorpayRateLimitError(RazorpayError):
    """Raised when API rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after


class RazorpayConnectionError(RazorpayError):
    """Raised when network/connection errors occur."""

    def __init__(
        self,
        message: str = "Connection error - unable to reach Razorpay API",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class RazorpayNotFoundError(RazorpayError):
    """Raised when a requested resource is not found (404 or BAD_REQUEST_ERROR on lookup)."""

    def __init__(
        self,
        message: str = "Resource not found",
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=404, **kwargs)
        self.resource_id = resource_id
