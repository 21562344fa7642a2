"""tokenauth Configuration - pydantic-settings backed environment config."""

import os
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Algorithms the codec is allowed to sign or verify with. Anything outside the
# HMAC family is refused at startup.
HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")

# Substituted for an empty JWT_SECRET_KEY when TESTING=true
_TEST_SECRET_KEY = "tokenauth-test-secret-key-not-for-production"


def _is_testing() -> bool:
    """Check if running in test mode."""
    return os.getenv("TESTING", "").lower() in ("true", "1")


@dataclass(frozen=True)
class TokenConfig:
    """Key material and lifetimes threaded into the codec and engine."""

    signing_key: str
    algorithm: str = "HS512"
    allowed_algorithms: tuple[str, ...] = ("HS512",)
    access_ttl: timedelta = timedelta(seconds=300)
    refresh_ttl: timedelta = timedelta(seconds=3600)


class Settings(BaseSettings):
    """Application settings loaded from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "tokenauth"
    app_version: str = "1.0.0"
    env: Literal["development", "production"] = Field(
        default="development", validation_alias="APP_ENV"
    )
    debug: bool = Field(default=False, validation_alias="TOKENAUTH_DEBUG")
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./tokenauth.db"
    db_pool_size: int = 20
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # JWT
    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS512"
    jwt_allowed_algorithms: str = "HS512"
    access_token_expire_seconds: int = Field(default=300, gt=0)
    refresh_token_expire_seconds: int = Field(default=3600, gt=0)

    # Requesting origin: direct peer address or a trusted proxy header
    origin_source: Literal["socket", "x-real-ip", "cf-connecting-ip"] = "socket"

    # Origin change notifications
    notify_webhook_url: str = ""
    notify_recipient_template: str = "{owner_id}"

    # CORS
    cors_origins: str = "http://localhost:3000"

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, v: str) -> str:
        """Accept Development/Production spelled any way."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v in ("dev", "develop"):
                return "development"
            if v == "prod":
                return "production"
        return v

    @field_validator("jwt_algorithm")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """Only HMAC signing is supported."""
        if v not in HMAC_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {', '.join(HMAC_ALGORITHMS)}")
        return v

    @field_validator("jwt_allowed_algorithms")
    @classmethod
    def validate_allowed_algorithms(cls, v: str) -> str:
        """Reject empty allow-lists and non-HMAC entries."""
        algorithms = [item.strip() for item in v.split(",") if item.strip()]
        if not algorithms:
            raise ValueError("JWT_ALLOWED_ALGORITHMS must not be empty")
        bad = [alg for alg in algorithms if alg not in HMAC_ALGORITHMS]
        if bad:
            raise ValueError(f"JWT_ALLOWED_ALGORITHMS contains non-HMAC algorithms: {bad}")
        return ",".join(algorithms)

    @field_validator("notify_recipient_template")
    @classmethod
    def validate_recipient_template(cls, v: str) -> str:
        """The template may only reference {owner_id}."""
        try:
            recipient = v.format(owner_id="x")
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            raise ValueError(f"NOTIFY_RECIPIENT_TEMPLATE is not a valid template: {e!r}") from e
        if not recipient:
            raise ValueError("NOTIFY_RECIPIENT_TEMPLATE must not be empty")
        return v

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Require a strong signing key outside of tests."""
        if not self.jwt_secret_key and _is_testing():
            self.jwt_secret_key = _TEST_SECRET_KEY
        if len(self.jwt_secret_key) < 32:
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters")
        if self.jwt_algorithm not in self.allowed_algorithms_list:
            raise ValueError("JWT_ALGORITHM must be listed in JWT_ALLOWED_ALGORITHMS")
        return self

    @property
    def allowed_algorithms_list(self) -> list[str]:
        return self.jwt_allowed_algorithms.split(",")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def token_config(self) -> TokenConfig:
        """Build the immutable token configuration for the codec and engine."""
        return TokenConfig(
            signing_key=self.jwt_secret_key,
            algorithm=self.jwt_algorithm,
            allowed_algorithms=tuple(self.allowed_algorithms_list),
            access_ttl=timedelta(seconds=self.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=self.refresh_token_expire_seconds),
        )

    def check_security_configuration(self) -> list[str]:
        """Return warnings about risky but valid configuration."""
        warnings: list[str] = []
        if self.env == "production":
            if self.jwt_secret_key == _TEST_SECRET_KEY:
                warnings.append("JWT_SECRET_KEY is the built-in test key; set a real key")
            if self.debug:
                warnings.append("TOKENAUTH_DEBUG is enabled in production")
            if self.is_sqlite:
                warnings.append("DATABASE_URL points at SQLite in production")
        if len(set(self.jwt_secret_key)) == 1:
            warnings.append("JWT_SECRET_KEY consists of a single repeated character")
        if self.origin_source != "socket":
            warnings.append(
                f"Requesting origin is taken from the {self.origin_source} header; "
                "make sure a trusted proxy sets it"
            )
        return warnings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
