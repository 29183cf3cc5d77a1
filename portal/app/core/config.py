import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON (recommended format), but tolerate comma separated values
    # such as the ALLOWED_ORIGINS format used by the web frontend.
    if raw.startswith(("[", "{", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw or raw == "[]":
                return []
            if raw == "*":
                return ["*"]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    origins: list[str] = []
    for part in parts:
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part.rstrip("/"))
            continue
        # Browsers include the scheme in the Origin header, so a bare host
        # allows both HTTP and HTTPS.
        origins.append(f"http://{part}")
        origins.append(f"https://{part}")

    seen: set[str] = set()
    result: list[str] = []
    for origin in origins:
        if origin in seen:
            continue
        seen.add(origin)
        result.append(origin)
    return result


def _parse_string_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v).strip() for v in raw if str(v).strip()]
    raw = str(raw).strip()
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]
    return [p for p in re.split(r"[,\s]+", raw) if p]


DEFAULT_SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    List settings accept JSON arrays or comma separated values.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000"]
    allowed_methods: Annotated[list[str], NoDecode] = [
        "GET",
        "POST",
        "PUT",
        "DELETE",
        "PATCH",
        "OPTIONS",
    ]

    # Rate limiting settings (fixed window, per client address)
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: float = 900.0  # 15 minutes
    rate_limit_exempt_paths: Annotated[list[str], NoDecode] = [
        "/",
        "/landing",
        "/auth/login",
        "/auth/register",
        "/auth/forgot-password",
        "/api/auth",
        "/health",
    ]
    # X-Forwarded-For is client controlled; only trust it behind a proxy
    trust_forwarded_for: bool = True
    # Upper bound on tracked client windows between sweeps
    rate_limit_max_clients: int = 100_000

    # CSRF settings
    csrf_token_length: int = 32
    csrf_token_ttl_seconds: float = 24 * 60 * 60

    # Request body limit
    max_body_size: int = 10 * 1024 * 1024  # 10MB

    # Response security headers
    security_headers: dict[str, str] = DEFAULT_SECURITY_HEADERS

    # Expired entry cleanup
    sweep_interval_seconds: float = 60 * 60
    guard_store_shards: int = 16

    # Session presence check (identity provider cookie)
    protected_paths: Annotated[list[str], NoDecode] = [
        "/dashboard",
        "/api/courses",
        "/api/assignments",
        "/api/exams",
        "/api/payments",
        "/api/messages",
        "/api/notifications",
        "/api/csrf-token",
    ]
    login_redirect_paths: Annotated[list[str], NoDecode] = ["/dashboard"]
    login_path: str = "/auth/login"
    session_cookie_pattern: str = r"sb-.*-auth-token"
    session_cookie_fallback: str = "supabase-auth-token"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "allowed_methods",
        "rate_limit_exempt_paths",
        "protected_paths",
        "login_redirect_paths",
        mode="before",
    )
    @classmethod
    def decode_string_list(cls, v: Any) -> list[str]:
        return _parse_string_list(v)

    @field_validator("allowed_methods")
    @classmethod
    def normalize_methods(cls, v: list[str]) -> list[str]:
        return [m.upper() for m in v]

    @field_validator(
        "rate_limit_max_requests",
        "rate_limit_max_clients",
        "csrf_token_length",
        "max_body_size",
        "guard_store_shards",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate limits are at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "rate_limit_window_seconds",
        "csrf_token_ttl_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("session_cookie_pattern")
    @classmethod
    def validate_cookie_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid session_cookie_pattern: {exc}") from exc
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
