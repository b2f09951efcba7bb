"""Custom exceptions for the edge application."""

from typing import Any


class EdgeException(Exception):
    """Base class for edge exceptions with HTTP status code and error code.

    All custom exceptions should inherit from this class and define
    their specific status_code and error for consistent JSON responses.
    """
    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, detail: str | None = None):
        self.detail = detail
        super().__init__(detail or self.error)

    def to_response(self) -> dict[str, Any]:
        """Render the JSON body sent to the client."""
        body: dict[str, Any] = {"ok": False, "error": self.error}
        if self.detail:
            body["detail"] = self.detail
        return body


class MethodNotAllowedError(EdgeException):
    """Raised for any method other than POST and OPTIONS."""
    status_code = 405
    error = "method_not_allowed"


class ForbiddenOriginError(EdgeException):
    """Raised when a browser Origin is present but not allow-listed."""
    status_code = 403
    error = "forbidden_origin"


class ForbiddenRefererError(EdgeException):
    """Raised when Referer enforcement is on and the Referer is foreign."""
    status_code = 403
    error = "forbidden_referer"


class RateLimitedError(EdgeException):
    """Raised when a client exceeds its request window.

    Maps to HTTP 429 Too Many Requests with a retry hint.
    """
    status_code = 429
    error = "rate_limited"

    def __init__(self, retry_after_ms: int):
        self.retry_after_ms = retry_after_ms
        super().__init__()

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["retry_after_ms"] = self.retry_after_ms
        return body


class RequestTimeoutError(EdgeException):
    """Raised when the request body is not received in time."""
    status_code = 408
    error = "request_timeout"


class PayloadTooLargeError(EdgeException):
    status_code = 413
    error = "payload_too_large"


class UnsupportedMediaTypeError(EdgeException):
    """Raised when the body is neither JSON nor URL-encoded form data."""
    status_code = 415
    error = "unsupported_media_type"

    def __init__(self, detail: str = "Use application/json or application/x-www-form-urlencoded"):
        super().__init__(detail)


class InvalidEmailError(EdgeException):
    status_code = 400
    error = "invalid_email"


class RateLimitStoreError(Exception):
    """Raised by a rate limit store when its backend is unreachable."""
