import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_TIERS: dict[str, float] = {
    "free": 1.0,
    "premium": 3.0,
    "enterprise": 10.0,
}


def _parse_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate plain comma/space separated values so that
    # a single address in the environment does not crash startup.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    # De-duplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if part and part not in seen:
            seen.add(part)
            result.append(part)
    return result


def _parse_mapping(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    raw = str(raw).strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"expected a JSON object, got {raw!r}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"expected a JSON object, got {raw!r}")
    return parsed


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Redis settings (shared backing store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Rate limiting settings
    rate_limit_key_prefix: str = "rate:"
    rate_limit_backend_timeout_ms: int = 100  # Bound on one Redis round trip
    rate_limit_backend_retry_seconds: float = 5.0  # Skip Redis this long after a failure
    rate_limit_fallback_max_keys: int = 10000
    rate_limit_degraded_cooldown_seconds: float = 60.0

    # Route table: "POST /bookings" -> "sliding:5:60,token:20:1"
    rate_limit_routes: Annotated[dict[str, str], NoDecode] = {}
    rate_limit_default: str = ""

    rate_limit_tiers: Annotated[dict[str, float], NoDecode] = Field(
        default_factory=lambda: dict(DEFAULT_TIERS)
    )
    rate_limit_whitelist_ips: Annotated[list[str], NoDecode] = []
    rate_limit_whitelist_users: Annotated[list[str], NoDecode] = []
    # Peers (addresses or CIDR) whose X-Forwarded-For is believed
    rate_limit_trusted_proxies: Annotated[list[str], NoDecode] = []

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Admin endpoints
    admin_token: str = ""

    @field_validator(
        "rate_limit_whitelist_ips",
        "rate_limit_whitelist_users",
        "rate_limit_trusted_proxies",
        mode="before",
    )
    @classmethod
    def decode_lists(cls, v: Any) -> list[str]:
        return _parse_list(v)

    @field_validator("rate_limit_routes", mode="before")
    @classmethod
    def decode_routes(cls, v: Any) -> dict[str, str]:
        return {str(k).strip(): str(val).strip() for k, val in _parse_mapping(v).items()}

    @field_validator("rate_limit_tiers", mode="before")
    @classmethod
    def decode_tiers(cls, v: Any) -> dict[str, float]:
        return _parse_mapping(v)

    @field_validator("rate_limit_tiers")
    @classmethod
    def validate_tiers(cls, v: dict[str, float]) -> dict[str, float]:
        """Validate tier multipliers never shrink a base limit."""
        for tier, multiplier in v.items():
            if multiplier < 1.0:
                raise ValueError(f"tier multiplier for {tier!r} must be >= 1.0")
        return v

    @field_validator("rate_limit_backend_timeout_ms", "rate_limit_fallback_max_keys")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate timeout and capacity values are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("rate_limit_backend_retry_seconds", "rate_limit_degraded_cooldown_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate intervals are not negative."""
        if v < 0:
            raise ValueError("interval must not be negative")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @property
    def backend_timeout_seconds(self) -> float:
        return self.rate_limit_backend_timeout_ms / 1000.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
