"""Background services for the portal."""

from portal.app.services.sweeper import ExpiredEntrySweeper

__all__ = [
    "ExpiredEntrySweeper",
]
