import hashlib
import re
from functools import lru_cache
from typing import Iterable, Mapping, Optional

from starlette.requests import Request


def hash_identifier(raw: str) -> str:
    """Hash a client identifier using SHA256.

    Keeps raw IP addresses and session cookies out of process memory and
    logs. 32 hex chars (128 bits) is enough to avoid collisions.

    Args:
        raw: The raw identifier to hash

    Returns:
        The first 32 hex chars of the SHA256 digest
    """
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def get_client_address(request: Request, trust_forwarded_for: bool = True) -> str:
    """Get the caller's address for rate limiting.

    X-Forwarded-For is set by the client unless a proxy overwrites it, so it
    is only honoured when trust_forwarded_for is enabled.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else "unknown"


def rate_limit_key(client_address: str) -> str:
    return f"ratelimit:ip:{hash_identifier(client_address)}"


@lru_cache(maxsize=32)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def find_session_cookie(
    cookies: Mapping[str, str],
    pattern: str,
    fallback: Optional[str] = None,
) -> Optional[str]:
    """Return the identity provider's session cookie value, if any.

    Supabase names its cookie after the project (sb-<ref>-auth-token), so
    the name is matched by pattern rather than hardcoded. This only checks
    presence; the token is not verified.
    """
    regex = _compile(pattern)
    for name, value in cookies.items():
        if value and regex.fullmatch(name):
            return value
    if fallback:
        value = cookies.get(fallback)
        if value:
            return value
    return None


def session_id_for(cookie_value: str) -> str:
    """Derive the CSRF session key from a session cookie value."""
    return hashlib.sha256(cookie_value.encode("utf-8")).hexdigest()


def path_matches(path: str, prefixes: Iterable[str]) -> bool:
    """Check whether path equals, or sits below, any of the prefixes.

    "/api/auth" matches "/api/auth" and "/api/auth/callback" but not
    "/api/authors". "/" only matches the root path.
    """
    for prefix in prefixes:
        if path == prefix:
            return True
        base = prefix.rstrip("/")
        if base and path.startswith(base + "/"):
            return True
    return False
