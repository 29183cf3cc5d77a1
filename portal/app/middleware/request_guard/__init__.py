"""Request guard middleware for the portal.

This module applies per-request admission control in front of the
platform API: origin and method checks, fixed window rate limiting,
session presence checks on protected routes, and security headers on
every response.
"""

import math
import re
from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from portal.app.core.logging import get_logger, log_security_event, request_id_var
from portal.app.core.security import (
    find_session_cookie,
    get_client_address,
    path_matches,
    rate_limit_key,
    session_id_for,
)
from portal.app.exceptions import (
    ForbiddenOriginError,
    MethodNotAllowedError,
    PortalException,
    RateLimitedError,
    InternalServerError,
    UnauthorizedError,
)

# Re-export models
from portal.app.middleware.request_guard.models import (
    CSRFEntry,
    RateLimitResult,
    RateWindow,
)

# Re-export core
from portal.app.middleware.request_guard.guard import RequestGuard
from portal.app.middleware.request_guard.store import ShardedStore

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitResult",
    "RateWindow",
    "CSRFEntry",
    # Core
    "ShardedStore",
    "RequestGuard",
    "RequestGuardMiddleware",
]

SUSPICIOUS_USER_AGENT = re.compile(r"bot|crawler|spider|scraper|curl|wget", re.IGNORECASE)

# Headers normally set by our own proxy; a client sending them is probing
SUSPICIOUS_HEADERS = ("x-forwarded-host", "x-forwarded-proto", "x-real-ip")


class RequestGuardMiddleware(BaseHTTPMiddleware):
    """Middleware running the request guard for every request.

    Checks run in order: origin/method, rate limit (non-exempt paths),
    session presence (protected paths). The first failing check produces
    the response; nothing after it runs. CORS preflights stop after the
    origin check. Unhandled errors from the application are rendered as a
    generic 500 here, so they get the security headers like any other
    response.
    """

    def __init__(
        self,
        app,
        guard: RequestGuard,
        exempt_paths: Iterable[str] = (),
        protected_paths: Iterable[str] = (),
        login_redirect_paths: Iterable[str] = (),
        login_path: str = "/auth/login",
        session_cookie_pattern: str = r"sb-.*-auth-token",
        session_cookie_fallback: Optional[str] = "supabase-auth-token",
        trust_forwarded_for: bool = True,
        debug: bool = False,
    ):
        super().__init__(app)
        self.guard = guard
        self.exempt_paths = tuple(exempt_paths)
        self.protected_paths = tuple(protected_paths)
        self.login_redirect_paths = tuple(login_redirect_paths)
        self.login_path = login_path
        self.session_cookie_pattern = session_cookie_pattern
        self.session_cookie_fallback = session_cookie_fallback
        self.trust_forwarded_for = trust_forwarded_for
        self.debug = debug

    def _reject(self, exc: PortalException, origin: Optional[str] = None) -> Response:
        return self._finish(exc.to_response(), origin)

    def _finish(self, response: Response, origin: Optional[str]) -> Response:
        """Apply security headers; let allow-listed origins read guard responses.

        Responses produced here never reach CORSMiddleware, so a browser on
        an allowed origin would otherwise be unable to read a 401 or 429.
        """
        if origin and self.guard.is_allowed_origin(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers.append("Vary", "Origin")
        return self.guard.apply_security_headers(response)

    @staticmethod
    def _is_preflight(request: Request) -> bool:
        return (
            request.method == "OPTIONS"
            and "origin" in request.headers
            and "access-control-request-method" in request.headers
        )

    def _log_client_signature(self, request: Request, client: str) -> None:
        """Log suspicious user agents and proxy headers without blocking."""
        path = request.url.path
        user_agent = request.headers.get("user-agent", "")
        if SUSPICIOUS_USER_AGENT.search(user_agent):
            log_security_event(
                "suspicious_user_agent",
                "warning",
                client=client,
                path=path,
                user_agent=user_agent,
            )

        for header in SUSPICIOUS_HEADERS:
            value = request.headers.get(header)
            if value:
                log_security_event(
                    "suspicious_header",
                    "warning",
                    header=header,
                    value=value,
                    client=client,
                    path=path,
                )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Admit or reject the request, then decorate the response."""
        path = request.url.path
        origin = request.headers.get("origin")
        client = get_client_address(request, self.trust_forwarded_for)
        user_agent = request.headers.get("user-agent")

        try:
            self.guard.check_origin(origin, request.method)
        except (ForbiddenOriginError, MethodNotAllowedError) as exc:
            log_security_event(
                "request_rejected",
                "warning",
                reason=exc.code,
                client=client,
                path=path,
                method=request.method,
            )
            return self._reject(exc, origin)

        # Preflights carry no cookies; CORSMiddleware answers them
        if self._is_preflight(request):
            response = await call_next(request)
            return self.guard.apply_security_headers(response)

        rate_result = None
        if not path_matches(path, self.exempt_paths):
            rate_result = self.guard.check_rate_limit(rate_limit_key(client))
            if not rate_result.allowed:
                log_security_event(
                    "rate_limit_exceeded",
                    "warning",
                    client=client,
                    path=path,
                    user_agent=user_agent,
                )
                return self._reject(
                    RateLimitedError(
                        reset_at=rate_result.reset_at,
                        retry_after=rate_result.retry_after or 1,
                        limit=rate_result.limit,
                    ),
                    origin,
                )

        if path_matches(path, self.protected_paths):
            session_cookie = find_session_cookie(
                request.cookies,
                self.session_cookie_pattern,
                self.session_cookie_fallback,
            )
            if session_cookie is None:
                log_security_event(
                    "unauthorized_access",
                    "warning",
                    client=client,
                    path=path,
                    user_agent=user_agent,
                )
                if path_matches(path, self.login_redirect_paths):
                    return self.guard.apply_security_headers(
                        RedirectResponse(self.login_path, status_code=307)
                    )
                return self._reject(UnauthorizedError(), origin)
            request.state.session_id = session_id_for(session_cookie)

        self._log_client_signature(request, client)

        try:
            response = await call_next(request)
        except Exception as exc:
            request_id = request_id_var.get() or getattr(request.state, "request_id", "unknown")
            logger.exception(
                f"Unhandled exception [request_id={request_id}]",
                extra={
                    "request_id": request_id,
                    "exception_type": type(exc).__name__,
                    "path": path,
                    "method": request.method,
                },
            )
            response = self._reject(InternalServerError(request_id, exc, self.debug), origin)

        if rate_result is not None:
            response.headers["X-RateLimit-Limit"] = str(rate_result.limit)
            response.headers["X-RateLimit-Remaining"] = str(rate_result.remaining)
            response.headers["X-RateLimit-Reset"] = str(math.ceil(rate_result.reset_at))

        return self.guard.apply_security_headers(response)
