"""Per-request admission control.

RequestGuard owns the two pieces of process-local state used to admit
requests: fixed rate limit windows keyed by client address and CSRF
tokens keyed by session id. It also applies the response security
headers and the origin/method allow-lists.

State is not shared across processes; every instance behind a load
balancer keeps its own windows and tokens.
"""

import hmac
import math
import secrets
import string
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from starlette.responses import Response

from portal.app.core.config import DEFAULT_SECURITY_HEADERS, Settings
from portal.app.core.logging import get_logger
from portal.app.exceptions import ForbiddenOriginError, MethodNotAllowedError
from portal.app.middleware.request_guard.models import (
    CSRFEntry,
    RateLimitResult,
    RateWindow,
)
from portal.app.middleware.request_guard.store import ShardedStore

logger = get_logger(__name__)

CSRF_ALPHABET = string.ascii_letters + string.digits


class RequestGuard:
    """Rate limiting, CSRF tokens, security headers and origin checks.

    All operations are synchronous and in-memory. Each read-modify-write
    runs under the lock of the shard owning the key, so the guard can be
    shared by async handlers and threadpool handlers alike.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 900.0,
        csrf_token_length: int = 32,
        csrf_token_ttl: float = 24 * 60 * 60,
        allowed_origins: Optional[Iterable[str]] = None,
        allowed_methods: Optional[Iterable[str]] = None,
        security_headers: Optional[Dict[str, str]] = None,
        shards: int = 16,
        max_clients: Optional[int] = 100_000,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the guard.

        Args:
            max_requests: Requests allowed per client per window
            window_seconds: Length of a rate limit window
            csrf_token_length: Number of characters in issued CSRF tokens
            csrf_token_ttl: Seconds an issued CSRF token stays valid
            allowed_origins: Origin allow-list; ["*"] allows any origin
            allowed_methods: HTTP methods accepted by the application
            security_headers: Headers set on every response
            shards: Lock stripes per store
            max_clients: Cap on tracked rate limit windows; None is unbounded
            clock: Returns the current time in epoch seconds
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0 or csrf_token_ttl <= 0:
            raise ValueError("window_seconds and csrf_token_ttl must be positive")
        if csrf_token_length < 1:
            raise ValueError("csrf_token_length must be at least 1")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.csrf_token_length = csrf_token_length
        self.csrf_token_ttl = csrf_token_ttl
        self.allowed_origins = frozenset(allowed_origins or ())
        self.allowed_methods = tuple(
            m.upper() for m in (allowed_methods or ("GET", "POST", "PUT", "DELETE", "PATCH"))
        )
        self.security_headers = dict(
            DEFAULT_SECURITY_HEADERS if security_headers is None else security_headers
        )
        self._clock = clock

        self._windows: ShardedStore[RateWindow] = ShardedStore(shards, max_clients)
        self._csrf_tokens: ShardedStore[CSRFEntry] = ShardedStore(shards)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> "RequestGuard":
        return cls(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            csrf_token_length=settings.csrf_token_length,
            csrf_token_ttl=settings.csrf_token_ttl_seconds,
            allowed_origins=settings.cors_origins,
            allowed_methods=settings.allowed_methods,
            security_headers=settings.security_headers,
            shards=settings.guard_store_shards,
            max_clients=settings.rate_limit_max_clients,
            clock=clock,
        )

    # Rate limiting

    def check_rate_limit(self, client_address: str) -> RateLimitResult:
        """Count a request against the client's fixed window.

        A missing or elapsed window is replaced by a fresh one holding this
        request. A full window rejects without being touched.
        """
        with self._windows.locked(client_address) as windows:
            now = self._clock()
            window = windows.get(client_address)

            if window is None or window.is_expired(now):
                if window is None:
                    evicted = self._windows.make_room(
                        windows, lambda entry: entry.is_expired(now)
                    )
                    if evicted:
                        logger.debug(f"Evicted {evicted} rate windows from a full shard")
                else:
                    del windows[client_address]
                window = RateWindow(count=1, reset_at=now + self.window_seconds)
                windows[client_address] = window
                return RateLimitResult(
                    allowed=True,
                    limit=self.max_requests,
                    remaining=self.max_requests - 1,
                    reset_at=window.reset_at,
                )

            if window.count >= self.max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=window.reset_at,
                    retry_after=max(1, math.ceil(window.reset_at - now)),
                )

            window.count += 1
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - window.count,
                reset_at=window.reset_at,
            )

    # CSRF tokens

    def _generate_token(self) -> str:
        return "".join(secrets.choice(CSRF_ALPHABET) for _ in range(self.csrf_token_length))

    def issue_csrf_token(self, session_id: str) -> str:
        """Issue a CSRF token for a session, replacing any previous one.

        Also drops every expired token; the scan is linear in the number
        of live sessions.
        """
        token = self._generate_token()
        now = self._clock()
        with self._csrf_tokens.locked(session_id) as tokens:
            tokens[session_id] = CSRFEntry(
                token=token,
                expires_at=now + self.csrf_token_ttl,
            )

        self._csrf_tokens.purge(lambda entry: entry.is_expired(now))
        return token

    def validate_csrf_token(self, session_id: str, candidate: Optional[str]) -> bool:
        """Check that ``candidate`` is the session's live token.

        Unknown and expired sessions return False and are forgotten.
        A match does not consume the token.
        """
        with self._csrf_tokens.locked(session_id) as tokens:
            entry = tokens.get(session_id)
            if entry is None or entry.is_expired(self._clock()):
                tokens.pop(session_id, None)
                return False
            stored = entry.token

        return hmac.compare_digest(
            stored.encode("utf-8"),
            (candidate or "").encode("utf-8"),
        )

    # Headers and origins

    def apply_security_headers(self, response: Response) -> Response:
        for name, value in self.security_headers.items():
            response.headers[name] = value
        return response

    def is_allowed_origin(self, origin: str) -> bool:
        return "*" in self.allowed_origins or origin in self.allowed_origins

    def check_origin(self, origin: Optional[str], method: str) -> None:
        """Reject disallowed origins and methods.

        Requests without an Origin header (same-origin navigations,
        server-to-server calls) pass the origin check.

        Raises:
            ForbiddenOriginError: Origin present and not allow-listed
            MethodNotAllowedError: Method not in the allowed methods
        """
        if origin and not self.is_allowed_origin(origin):
            raise ForbiddenOriginError(origin)

        if method.upper() not in self.allowed_methods:
            raise MethodNotAllowedError(method, list(self.allowed_methods))

    # Cleanup

    def sweep_expired(self) -> Tuple[int, int]:
        """Drop elapsed rate windows and expired CSRF tokens.

        Returns:
            Tuple of (windows_removed, tokens_removed)
        """
        now = self._clock()
        windows_removed = self._windows.purge(lambda window: window.is_expired(now))
        tokens_removed = self._csrf_tokens.purge(lambda entry: entry.is_expired(now))
        if windows_removed or tokens_removed:
            logger.debug(
                f"Swept {windows_removed} rate windows and {tokens_removed} CSRF tokens"
            )
        return windows_removed, tokens_removed

    def stats(self) -> Dict[str, int]:
        return {
            "rate_windows": len(self._windows),
            "csrf_tokens": len(self._csrf_tokens),
        }
