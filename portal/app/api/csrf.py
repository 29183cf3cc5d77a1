"""CSRF token issuance and validation.

Clients fetch a token once per session from GET /api/csrf-token and echo
it in the X-CSRF-Token header on state-changing requests. Routes opt in
to validation with the require_csrf_token dependency.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request, Response

from portal.app.core.logging import log_security_event
from portal.app.core.security import find_session_cookie, session_id_for
from portal.app.exceptions import CSRFTokenError, UnauthorizedError
from portal.app.middleware.request_guard import RequestGuard

CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

router = APIRouter(prefix="/api", tags=["security"])


def get_request_guard(request: Request) -> RequestGuard:
    return request.app.state.request_guard


def get_session_id(request: Request) -> str:
    """Resolve the CSRF session key for the caller.

    Uses the id stored by RequestGuardMiddleware on protected paths and
    falls back to reading the session cookie directly.

    Raises:
        UnauthorizedError: No session cookie present
    """
    session_id = getattr(request.state, "session_id", None)
    if session_id:
        return session_id

    app_settings = request.app.state.settings
    cookie = find_session_cookie(
        request.cookies,
        app_settings.session_cookie_pattern,
        app_settings.session_cookie_fallback,
    )
    if cookie is None:
        raise UnauthorizedError()
    return session_id_for(cookie)


async def require_csrf_token(
    request: Request,
    session_id: str = Depends(get_session_id),
    guard: RequestGuard = Depends(get_request_guard),
) -> None:
    """Reject unsafe requests that do not carry the session's CSRF token."""
    if request.method.upper() in SAFE_METHODS:
        return

    candidate = request.headers.get(CSRF_HEADER)
    if not candidate or not guard.validate_csrf_token(session_id, candidate):
        log_security_event(
            "csrf_token_rejected",
            "warning",
            path=request.url.path,
            method=request.method,
        )
        raise CSRFTokenError()


@router.get("/csrf-token")
async def issue_csrf_token(
    response: Response,
    session_id: str = Depends(get_session_id),
    guard: RequestGuard = Depends(get_request_guard),
) -> dict[str, Any]:
    """Issue a fresh CSRF token for the caller's session.

    The previous token of the session stops validating.
    """
    token = guard.issue_csrf_token(session_id)
    response.headers[CSRF_HEADER] = token
    response.headers["Cache-Control"] = "no-store"
    return {"csrf_token": token, "expires_in": int(guard.csrf_token_ttl)}
