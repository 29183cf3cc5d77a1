"""Request guard data models.

This module contains dataclasses for rate limit windows, CSRF entries
and rate limit check results.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


@dataclass
class RateWindow:
    """Fixed window request counter for one client address."""
    count: int
    reset_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.reset_at


@dataclass
class CSRFEntry:
    """Live CSRF token for one session."""
    token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
