import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_PRECACHE_URLS = ["/", "/offline.html", "/styles.css", "/main.js"]


def _parse_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip().rstrip("/") for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma/space separated values so a
    # misconfigured deployment does not crash at startup.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip().rstrip("/") for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw:
                return []

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    origins: list[str] = []
    for part in parts:
        part = part.rstrip("/")
        if "://" in part:
            origins.append(part)
            continue
        # Browsers always send the scheme in the Origin header, so a bare
        # host is allowed over both HTTP and HTTPS.
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


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Deployment identity (reported by /api/health)
    project_name: str = "AlkindiX"
    region: str = Field(default="unknown", validation_alias="VERCEL_REGION")

    # Origins allowed to call the subscription endpoint
    allowed_origins: Annotated[list[str], NoDecode] = ["https://alkindix.com"]
    enforce_referer: bool = False  # Soft check, off unless third-party POSTs are unexpected

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def decode_allowed_origins(cls, v: Any) -> list[str]:
        return _parse_origins(v)

    # Rate limiting settings (fixed window per client key)
    rate_limit_max_requests: int = 10
    rate_limit_window_ms: int = 60_000
    rate_limit_backend: str = "memory"  # memory | redis
    rate_limit_key_prefix: str = "edge:ratelimit"
    rate_limit_fail_closed: bool = False  # If True, deny requests when Redis is unavailable

    # Redis settings (only used by the redis rate limit backend)
    redis_url: str = "redis://localhost:6379/0"

    # Request body limits
    max_body_bytes: int = 16 * 1024
    body_read_timeout_seconds: float = 10.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Offline cache worker settings
    site_origin: str = "https://alkindix.com"
    cache_version: str = "ax-v1"
    precache_urls: list[str] = Field(default_factory=lambda: list(DEFAULT_PRECACHE_URLS))
    offline_url: str = "/offline.html"
    worker_fetch_timeout_seconds: float = 10.0

    @field_validator("rate_limit_max_requests", "rate_limit_window_ms", "max_body_bytes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limit values are positive."""
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator("body_read_timeout_seconds", "worker_fetch_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return v

    @field_validator("offline_url")
    @classmethod
    def validate_offline_url(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("offline_url must be a site-relative path")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


# Global settings instance
settings = Settings()
