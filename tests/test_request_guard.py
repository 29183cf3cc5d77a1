"""Tests for the RequestGuard policy object."""

import threading

import pytest
from fastapi.responses import JSONResponse

from portal.app.core.config import DEFAULT_SECURITY_HEADERS
from portal.app.exceptions import ForbiddenOriginError, MethodNotAllowedError
from portal.app.middleware.request_guard import RequestGuard, RateLimitResult

from conftest import FakeClock


class TickingClock(FakeClock):
    """Clock advancing by a fixed step on every read."""

    def __init__(self, step: float):
        super().__init__()
        self.step = step
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        now = self.now
        self.advance(self.step)
        return now


class TestRateLimit:
    """Tests for fixed window rate limiting."""

    @pytest.fixture
    def guard(self, clock):
        return RequestGuard(max_requests=5, window_seconds=60, clock=clock)

    def test_first_request_opens_window(self, guard, clock):
        result = guard.check_rate_limit("A")
        assert result == RateLimitResult(
            allowed=True,
            limit=5,
            remaining=4,
            reset_at=clock.now + 60,
        )

    def test_remaining_decreases_until_limit(self, guard):
        remaining = [guard.check_rate_limit("A").remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]

    def test_request_over_limit_is_rejected(self, guard, clock):
        for _ in range(5):
            assert guard.check_rate_limit("A").allowed is True

        result = guard.check_rate_limit("A")
        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_at == clock.now + 60
        assert result.retry_after == 60

    def test_rejection_does_not_extend_window(self, guard, clock):
        first = guard.check_rate_limit("A")
        for _ in range(4):
            guard.check_rate_limit("A")

        clock.advance(30)
        for _ in range(3):
            result = guard.check_rate_limit("A")
            assert result.allowed is False
            assert result.reset_at == first.reset_at
        assert result.retry_after == 30

    def test_window_resets_after_reset_time(self, guard, clock):
        for _ in range(6):
            guard.check_rate_limit("A")

        clock.advance(60)
        result = guard.check_rate_limit("A")
        assert result.allowed is True
        assert result.remaining == 4
        assert result.reset_at == clock.now + 60

    def test_addresses_are_independent(self, guard):
        for _ in range(6):
            guard.check_rate_limit("A")

        assert guard.check_rate_limit("A").allowed is False
        assert guard.check_rate_limit("B").allowed is True

    def test_two_request_window_scenario(self):
        clock = FakeClock(start=0.0)
        guard = RequestGuard(max_requests=2, window_seconds=1.0, clock=clock)

        outcomes = []
        for at in (0.0, 0.010, 0.020):
            clock.now = at
            result = guard.check_rate_limit("A")
            outcomes.append((result.allowed, result.remaining))

        assert outcomes == [(True, 1), (True, 0), (False, 0)]

        clock.now = 1.050
        result = guard.check_rate_limit("A")
        assert (result.allowed, result.remaining) == (True, 1)

    def test_concurrent_requests_do_not_lose_updates(self):
        guard = RequestGuard(max_requests=1000, window_seconds=60)
        results = []
        lock = threading.Lock()

        def worker():
            local = [guard.check_rate_limit("shared") for _ in range(100)]
            with lock:
                results.extend(local)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.allowed for r in results)
        # Every increment observed a distinct count
        assert len({r.remaining for r in results}) == 800
        assert min(r.remaining for r in results) == 200

    def test_concurrent_requests_never_exceed_limit(self):
        guard = RequestGuard(max_requests=50, window_seconds=60)
        allowed = []
        lock = threading.Lock()

        def worker():
            count = sum(guard.check_rate_limit("shared").allowed for _ in range(20))
            with lock:
                allowed.append(count)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(allowed) == 50

    def test_tracked_clients_are_capped(self, clock):
        guard = RequestGuard(max_requests=5, window_seconds=60, shards=1, max_clients=5, clock=clock)
        for i in range(10):
            guard.check_rate_limit(f"client-{i}")

        assert guard.stats()["rate_windows"] == 5
        # Newest windows survive, oldest were evicted
        assert guard.check_rate_limit("client-9").remaining == 3

    def test_cap_evicts_expired_windows_first(self, clock):
        guard = RequestGuard(max_requests=5, window_seconds=60, shards=1, max_clients=2, clock=clock)
        guard.check_rate_limit("A")
        clock.advance(60)
        guard.check_rate_limit("B")
        guard.check_rate_limit("C")

        assert guard.stats()["rate_windows"] == 2
        assert guard.check_rate_limit("B").remaining == 3

    def test_refreshed_window_is_not_evicted_first(self, clock):
        guard = RequestGuard(max_requests=5, window_seconds=60, shards=1, max_clients=2, clock=clock)
        guard.check_rate_limit("A")
        clock.advance(30)
        guard.check_rate_limit("B")
        clock.advance(30)
        guard.check_rate_limit("A")  # new window for A
        clock.advance(10)
        guard.check_rate_limit("C")

        assert guard.stats()["rate_windows"] == 2
        assert guard.check_rate_limit("A").remaining == 3

    def test_uncapped_store(self, clock):
        guard = RequestGuard(shards=1, max_clients=None, clock=clock)
        for i in range(50):
            guard.check_rate_limit(f"client-{i}")
        assert guard.stats()["rate_windows"] == 50

    def test_invalid_configuration_rejected(self):
        with pytest.raises(ValueError):
            RequestGuard(max_requests=0)
        with pytest.raises(ValueError):
            RequestGuard(max_clients=0)
        with pytest.raises(ValueError):
            RequestGuard(window_seconds=0)
        with pytest.raises(ValueError):
            RequestGuard(csrf_token_length=0)


class TestCSRFTokens:
    """Tests for CSRF token issuance and validation."""

    @pytest.fixture
    def guard(self, clock):
        return RequestGuard(csrf_token_length=32, csrf_token_ttl=3600, clock=clock)

    def test_issued_token_is_alphanumeric_of_fixed_length(self, guard):
        token = guard.issue_csrf_token("session-1")
        assert len(token) == 32
        assert token.isalnum()
        assert token.isascii()

    def test_tokens_are_random(self, guard):
        tokens = {guard.issue_csrf_token(f"session-{i}") for i in range(20)}
        assert len(tokens) == 20

    def test_issued_token_validates(self, guard):
        token = guard.issue_csrf_token("session-1")
        assert guard.validate_csrf_token("session-1", token) is True

    def test_validation_does_not_consume_token(self, guard):
        token = guard.issue_csrf_token("session-1")
        assert guard.validate_csrf_token("session-1", token) is True
        assert guard.validate_csrf_token("session-1", token) is True

    def test_unknown_session_fails(self, guard):
        assert guard.validate_csrf_token("nobody", "whatever") is False

    def test_mismatched_token_fails(self, guard):
        token = guard.issue_csrf_token("session-1")
        assert guard.validate_csrf_token("session-1", token.swapcase()) is False
        assert guard.validate_csrf_token("session-1", "") is False
        assert guard.validate_csrf_token("session-1", None) is False
        # Mismatch keeps the live token
        assert guard.validate_csrf_token("session-1", token) is True

    def test_token_of_other_session_fails(self, guard):
        token = guard.issue_csrf_token("session-1")
        guard.issue_csrf_token("session-2")
        assert guard.validate_csrf_token("session-2", token) is False

    def test_non_ascii_candidate_fails(self, guard):
        guard.issue_csrf_token("session-1")
        assert guard.validate_csrf_token("session-1", "тест") is False

    def test_expired_token_fails_and_is_removed(self, guard, clock):
        token = guard.issue_csrf_token("session-1")
        clock.advance(3600)

        assert guard.validate_csrf_token("session-1", token) is False
        assert guard.stats()["csrf_tokens"] == 0

    def test_reissue_invalidates_previous_token(self, guard):
        first = guard.issue_csrf_token("session-1")
        second = guard.issue_csrf_token("session-1")

        assert guard.validate_csrf_token("session-1", first) is False
        assert guard.validate_csrf_token("session-1", second) is True
        assert guard.stats()["csrf_tokens"] == 1

    def test_issue_reads_clock_once(self):
        clock = TickingClock(step=3600)
        guard = RequestGuard(csrf_token_ttl=3600, clock=clock)

        guard.issue_csrf_token("session-1")

        # Expiry and purge agree on the issue time
        assert clock.calls == 1
        assert guard.stats()["csrf_tokens"] == 1

    def test_issue_sweeps_expired_tokens(self, guard, clock):
        for i in range(5):
            guard.issue_csrf_token(f"old-{i}")
        clock.advance(3600)

        guard.issue_csrf_token("fresh")
        assert guard.stats()["csrf_tokens"] == 1


class TestSecurityHeaders:
    def test_default_headers_applied(self):
        guard = RequestGuard()
        response = guard.apply_security_headers(JSONResponse({"ok": True}))

        for name, value in DEFAULT_SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_headers_are_idempotent(self):
        guard = RequestGuard()
        response = JSONResponse({"ok": True})
        guard.apply_security_headers(response)
        guard.apply_security_headers(response)

        assert response.headers.getlist("X-Frame-Options") == ["DENY"]

    def test_custom_headers_replace_defaults(self):
        guard = RequestGuard(security_headers={"X-Frame-Options": "SAMEORIGIN"})
        response = guard.apply_security_headers(JSONResponse({}))

        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert "Permissions-Policy" not in response.headers


class TestCheckOrigin:
    @pytest.fixture
    def guard(self):
        return RequestGuard(
            allowed_origins=["http://localhost:3000"],
            allowed_methods=["GET", "POST"],
        )

    def test_missing_origin_is_allowed(self, guard):
        assert guard.check_origin(None, "GET") is None
        assert guard.check_origin("", "POST") is None

    def test_allow_listed_origin_is_allowed(self, guard):
        assert guard.check_origin("http://localhost:3000", "post") is None

    def test_unknown_origin_is_forbidden(self, guard):
        with pytest.raises(ForbiddenOriginError) as exc_info:
            guard.check_origin("https://evil.example", "GET")
        assert exc_info.value.status_code == 403
        assert exc_info.value.origin == "https://evil.example"

    def test_method_not_allowed(self, guard):
        with pytest.raises(MethodNotAllowedError) as exc_info:
            guard.check_origin(None, "DELETE")
        assert exc_info.value.status_code == 405
        assert exc_info.value.headers() == {"Allow": "GET, POST"}

    def test_origin_checked_before_method(self, guard):
        with pytest.raises(ForbiddenOriginError):
            guard.check_origin("https://evil.example", "DELETE")

    def test_wildcard_allows_any_origin(self):
        guard = RequestGuard(allowed_origins=["*"])
        assert guard.check_origin("https://anywhere.example", "GET") is None


class TestSweepExpired:
    def test_sweep_removes_only_expired_entries(self, clock):
        guard = RequestGuard(window_seconds=60, csrf_token_ttl=120, clock=clock)
        guard.check_rate_limit("old")
        guard.issue_csrf_token("old-session")

        clock.advance(90)
        guard.check_rate_limit("new")
        guard.issue_csrf_token("new-session")

        assert guard.sweep_expired() == (1, 0)
        assert guard.stats() == {"rate_windows": 1, "csrf_tokens": 2}

        clock.advance(60)
        assert guard.sweep_expired() == (1, 1)
        assert guard.stats() == {"rate_windows": 0, "csrf_tokens": 1}

    def test_sweep_on_empty_guard(self):
        assert RequestGuard().sweep_expired() == (0, 0)
