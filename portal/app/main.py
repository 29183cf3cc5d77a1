from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portal.app.api.csrf import CSRF_HEADER, router as csrf_router
from portal.app.core.config import Settings, settings as default_settings
from portal.app.core.logging import get_logger, request_id_var, setup_logging
from portal.app.exceptions import InternalServerError, PortalException
from portal.app.middleware.request_guard import RequestGuard, RequestGuardMiddleware
from portal.app.middleware.request_id import RequestIdMiddleware, get_request_id
from portal.app.middleware.request_size import RequestSizeLimitMiddleware
from portal.app.services.sweeper import ExpiredEntrySweeper


def create_app(
    app_settings: Optional[Settings] = None,
    guard: Optional[RequestGuard] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings to use instead of the environment defaults
        guard: Pre-built RequestGuard (tests inject one with a fake clock)

    Returns:
        Configured FastAPI application instance
    """
    app_settings = app_settings or default_settings

    setup_logging(app_settings)
    logger = get_logger(__name__)

    guard = guard or RequestGuard.from_settings(app_settings)
    sweeper = ExpiredEntrySweeper(guard, interval=app_settings.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the expired entry sweeper for the lifetime of the app."""
        await sweeper.start()
        logger.info(
            "Application startup complete",
            extra={
                "rate_limit_max_requests": app_settings.rate_limit_max_requests,
                "rate_limit_window_seconds": app_settings.rate_limit_window_seconds,
                "debug_mode": app_settings.debug,
            },
        )

        yield

        await sweeper.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="EduPortal",
        description="Request guard for the education platform API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.request_guard = guard
    app.state.sweeper = sweeper

    # Add middleware (order matters: last added = first executed)
    # Request body size limit (innermost - wraps the body stream)
    app.add_middleware(RequestSizeLimitMiddleware, max_body_size=app_settings.max_body_size)

    # CORS middleware (inside the guard - preflights pass the origin check first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=app_settings.allowed_methods,
        allow_headers=["Content-Type", "Authorization", CSRF_HEADER],
        expose_headers=[
            "X-Request-ID",
            CSRF_HEADER,
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=86400,
    )

    app.add_middleware(
        RequestGuardMiddleware,
        guard=guard,
        exempt_paths=app_settings.rate_limit_exempt_paths,
        protected_paths=app_settings.protected_paths,
        login_redirect_paths=app_settings.login_redirect_paths,
        login_path=app_settings.login_path,
        session_cookie_pattern=app_settings.session_cookie_pattern,
        session_cookie_fallback=app_settings.session_cookie_fallback,
        trust_forwarded_for=app_settings.trust_forwarded_for,
        debug=app_settings.debug,
    )

    # Request ID middleware (outermost - rejections and 500s are traceable too)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(csrf_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with request guard status."""
        return {
            "status": "ok",
            "components": {
                "request_guard": {
                    "status": "ok",
                    **guard.stats(),
                },
                "sweeper": {
                    "status": "ok" if sweeper.running else "stopped",
                    "runs": sweeper.runs,
                },
            },
        }

    @app.exception_handler(PortalException)
    async def portal_exception_handler(request: Request, exc: PortalException) -> JSONResponse:
        """Render route-level rejections with the structured error payload."""
        return exc.to_response()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last resort for exceptions raised outside the application routes.

        Route errors are rendered by RequestGuardMiddleware; this only sees
        failures in the middleware stack itself, after RequestIdMiddleware
        may already have unwound.
        """
        request_id = request_id_var.get() or get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        response = InternalServerError(request_id, exc, app_settings.debug).to_response()
        if request_id != "unknown":
            response.headers["X-Request-ID"] = request_id
        return guard.apply_security_headers(response)

    return app


# Create the application instance
app = create_app()
