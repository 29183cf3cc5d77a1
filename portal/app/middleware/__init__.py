"""Middleware package for the portal."""

from portal.app.middleware.request_guard import RequestGuard, RequestGuardMiddleware
from portal.app.middleware.request_id import RequestIdMiddleware, get_request_id
from portal.app.middleware.request_size import RequestSizeLimitMiddleware

__all__ = [
    "RequestGuard",
    "RequestGuardMiddleware",
    "RequestIdMiddleware",
    "RequestSizeLimitMiddleware",
    "get_request_id",
]
