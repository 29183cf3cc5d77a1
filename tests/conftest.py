"""Shared fixtures for portal tests."""

from typing import Any, Callable

import pytest
from fastapi import Depends, FastAPI, Request

from portal.app.api.csrf import require_csrf_token
from portal.app.core.config import Settings
from portal.app.main import create_app
from portal.app.middleware.request_guard import RequestGuard


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "cors_origins": ["http://localhost:3000"],
            "rate_limit_max_requests": 3,
            "rate_limit_window_seconds": 60,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_app(make_settings, clock) -> Callable[..., FastAPI]:
    """Build the portal app with a fake clock and a few platform routes."""

    def _make(**overrides: Any) -> FastAPI:
        app_settings = make_settings(**overrides)
        guard = RequestGuard.from_settings(app_settings, clock=clock)
        app = create_app(app_settings, guard=guard)

        @app.get("/api/courses")
        async def list_courses() -> dict[str, Any]:
            return {"courses": []}

        @app.post("/api/courses", dependencies=[Depends(require_csrf_token)])
        async def create_course() -> dict[str, Any]:
            return {"created": True}

        @app.get("/dashboard/student")
        async def student_dashboard() -> dict[str, Any]:
            return {"page": "student"}

        @app.get("/landing")
        async def landing() -> dict[str, Any]:
            return {"page": "landing"}

        @app.get("/courses/catalog")
        async def catalog() -> dict[str, Any]:
            return {"courses": []}

        @app.post("/courses/upload")
        async def upload(request: Request) -> dict[str, Any]:
            return {"size": len(await request.body())}

        return app

    return _make
