"""Application settings using Pydantic BaseSettings."""

import base64
import binascii
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import Field, PrivateAttr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_COOKIE_KEY_BYTES = 32


def decode_cookie_key(value: str) -> bytes:
    """Decode a urlsafe base64 cookie key (padding optional)."""
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("COOKIE_KEY must be urlsafe base64") from exc


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    # Backend
    # The {database} placeholder is filled per connection; credentials are
    # always those of the logged-in role and never come from this URL.
    backend_url: str = Field(default="postgresql+asyncpg://127.0.0.1:5432/{database}")
    default_database: str = Field(default="postgres")
    operation_timeout_seconds: float = Field(default=30.0)
    pool_per_role_max: int = Field(default=5)

    # Sessions
    session_idle_timeout_seconds: int = Field(default=900)
    session_absolute_timeout_seconds: int = Field(default=86400)
    identity_cookie_absolute_timeout_seconds: int = Field(default=604800)

    # Cookies
    cookie_key: Optional[str] = Field(default=None)
    session_cookie_name: str = Field(default="session")
    identity_cookie_name: str = Field(default="identity")
    cookie_secure: bool = Field(default=False)
    cookie_samesite: str = Field(default="strict")
    cookie_domain: str = Field(default="")
    cookie_clock_skew_seconds: int = Field(default=60)

    # Staged transactions
    transaction_lease_seconds: int = Field(default=300)
    transaction_reap_grace_seconds: int = Field(default=60)
    transaction_sweep_interval_seconds: float = Field(default=5.0)
    transaction_max_ops: int = Field(default=1000)

    # Pagination
    pagination_hard_cap: int = Field(default=1000)
    pagination_count_cap: int = Field(default=100000)

    _generated_cookie_key: bytes = PrivateAttr(
        default_factory=lambda: secrets.token_bytes(MIN_COOKIE_KEY_BYTES)
    )

    @property
    def cookie_key_bytes(self) -> bytes:
        """Raw symmetric key for the cookie sealer.

        Without COOKIE_KEY a random key is generated once per Settings
        instance, so a restart invalidates every outstanding cookie.
        """
        if self.cookie_key:
            return decode_cookie_key(self.cookie_key)
        return self._generated_cookie_key

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.environment == "test"

    @property
    def cookie_samesite_header(self) -> str:
        """Return SameSite value for HTTP header (capitalized for browser compatibility)."""
        if self.cookie_samesite == "none":
            return "None"
        return self.cookie_samesite.capitalize()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production, test")
        return vv

    @field_validator("cookie_samesite")
    @classmethod
    def validate_cookie_samesite(cls, v: str) -> str:
        """Normalize + validate SameSite cookie attribute."""
        vv = (v or "").strip().lower()
        if vv not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be one of: lax, strict, none")
        return vv

    @field_validator("cookie_key")
    @classmethod
    def validate_cookie_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if len(decode_cookie_key(v)) < MIN_COOKIE_KEY_BYTES:
            raise ValueError(f"COOKIE_KEY must decode to at least {MIN_COOKIE_KEY_BYTES} bytes")
        return v

    @field_validator("backend_url")
    @classmethod
    def validate_backend_url(cls, v: str) -> str:
        if "{database}" not in v:
            raise ValueError("BACKEND_URL must contain a {database} placeholder")
        return v

    @field_validator(
        "pagination_hard_cap",
        "pagination_count_cap",
        "pool_per_role_max",
        "transaction_max_ops",
        "transaction_lease_seconds",
        "session_idle_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_cross_field_constraints(self) -> "Settings":
        # SameSite=None requires Secure=true.
        if self.cookie_samesite == "none" and not self.cookie_secure:
            raise ValueError("COOKIE_SECURE must be true when COOKIE_SAMESITE=none")

        if self.session_absolute_timeout_seconds < self.session_idle_timeout_seconds:
            raise ValueError("SESSION_ABSOLUTE_TIMEOUT_SECONDS must be >= SESSION_IDLE_TIMEOUT_SECONDS")
        if self.identity_cookie_absolute_timeout_seconds < self.session_absolute_timeout_seconds:
            raise ValueError(
                "IDENTITY_COOKIE_ABSOLUTE_TIMEOUT_SECONDS must be >= SESSION_ABSOLUTE_TIMEOUT_SECONDS"
            )
        if self.pagination_count_cap < self.pagination_hard_cap:
            raise ValueError("PAGINATION_COUNT_CAP must be >= PAGINATION_HARD_CAP")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
