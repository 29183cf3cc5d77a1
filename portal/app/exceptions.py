"""Custom exceptions for the portal application."""

import math
from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse


class PortalException(Exception):
    """Base class for request rejections with HTTP status code.

    Subclasses set status_code, error (the status classification) and
    code (the machine readable cause). to_response() renders the
    structured error payload returned to the client.
    """
    status_code: int = 500
    error: str = "internal_error"
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Portal error"):
        self.message = message
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        return {
            "error": self.error,
            "code": self.code,
            "message": self.message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def headers(self) -> dict[str, str]:
        return {}

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=self.payload(),
            headers=self.headers() or None,
        )


class RateLimitedError(PortalException):
    """Raised when a client exhausted its request window.

    Retryable once reset_at (epoch seconds) has passed.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error = "rate_limited"
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        reset_at: float,
        retry_after: int,
        limit: int,
        detail: str | None = None,
    ):
        self.reset_at = reset_at
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(detail or "Rate limit exceeded. Please try again later.")

    def payload(self) -> dict[str, Any]:
        data = super().payload()
        data["retry_after"] = self.retry_after
        data["reset_at"] = math.ceil(self.reset_at)
        return data

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
            "Retry-After": str(self.retry_after),
        }


class ForbiddenOriginError(PortalException):
    """Raised when the Origin header is not in the allow-list.

    Not retryable without a configuration change.
    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error = "forbidden"
    code = "ORIGIN_NOT_ALLOWED"

    def __init__(self, origin: str):
        self.origin = origin
        super().__init__(f"Origin '{origin}' is not allowed")


class MethodNotAllowedError(PortalException):
    """Raised when the request method is not in the allowed methods.

    Maps to HTTP 405 Method Not Allowed.
    """
    status_code = 405
    error = "method_not_allowed"
    code = "METHOD_NOT_ALLOWED"

    def __init__(self, method: str, allowed: list[str] | None = None):
        self.method = method
        self.allowed = allowed or []
        super().__init__(f"Method {method} is not allowed")

    def headers(self) -> dict[str, str]:
        if not self.allowed:
            return {}
        return {"Allow": ", ".join(self.allowed)}


class UnauthorizedError(PortalException):
    """Raised when a protected route is requested without a session.

    Retryable after signing in again.
    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error = "unauthorized"
    code = "UNAUTHORIZED"

    def __init__(self, detail: str = "Authentication required. Please sign in."):
        super().__init__(detail)


class PayloadTooLargeError(PortalException):
    """Raised when a request body exceeds the configured maximum.

    Maps to HTTP 413 Payload Too Large.
    """
    status_code = 413
    error = "payload_too_large"
    code = "PAYLOAD_TOO_LARGE"

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"Request body too large. Maximum allowed: {max_size} bytes")


class CSRFTokenError(PortalException):
    """Raised when a state-changing request lacks a live CSRF token.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error = "forbidden"
    code = "CSRF_TOKEN_INVALID"

    def __init__(self, detail: str = "Missing or invalid CSRF token"):
        super().__init__(detail)


class InternalServerError(PortalException):
    """Rendered for unhandled exceptions.

    Never carries a traceback; debug mode adds the exception message.
    Maps to HTTP 500 Internal Server Error.
    """
    status_code = 500
    error = "internal_error"
    code = "INTERNAL_ERROR"

    def __init__(self, request_id: str, exc: Exception | None = None, debug: bool = False):
        self.request_id = request_id
        self.exception_type = type(exc).__name__ if exc is not None else None
        message = "Internal server error"
        if debug and exc is not None:
            message = str(exc)
        self.debug = debug
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        data = super().payload()
        data["request_id"] = self.request_id
        if self.debug and self.exception_type:
            data["exception_type"] = self.exception_type
        return data
