"""Core utilities for the portal application."""

from portal.app.core.config import settings
from portal.app.core.logging import get_logger, log_security_event, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "log_security_event",
    "setup_logging",
]
