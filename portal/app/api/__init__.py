"""API endpoints package for the portal."""

from portal.app.api.csrf import router as csrf_router

__all__ = [
    "csrf_router",
]
