"""Application settings and configuration.

This module defines all configuration options for the Tracas Guard security layer.
Settings are loaded from environment variables with sensible defaults.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FINGERPRINT_SECRET = "fallback-secret"


class Settings(BaseSettings):
    """Security layer settings loaded from environment variables.

    Components never read settings from a module global; an instance is built
    once (or per test) and handed to the orchestrator, which passes it down.
    """

    # Application metadata
    app_name: str = Field(default="Tracas Guard", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: Literal["local", "development", "production"] = Field(
        default="local",
        alias="TRACAS_ENV",
    )
    debug: bool = Field(default=False, alias="DEBUG")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Session signing (second-factor confirmations live in the signed session)
    secret_key: str = Field(alias="SECRET_KEY")

    # Key material store
    keys_dir: str = Field(default="./keys/crypto", alias="KEYS_DIR")
    key_max_age_days: int = Field(default=90, alias="KEY_MAX_AGE_DAYS")
    key_rotation_check_seconds: float = Field(default=86_400.0, alias="KEY_ROTATION_CHECK_SECONDS")
    key_rotation_overlap_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="KEY_ROTATION_OVERLAP_SECONDS",
    )
    key_rotation_enabled: bool | None = Field(default=None, alias="KEY_ROTATION_ENABLED")

    # Token issuance
    token_algorithm: Literal["ES256", "HS256"] = Field(default="ES256", alias="TOKEN_ALGORITHM")
    token_issuer: str = Field(default="tracas-api", alias="TOKEN_ISSUER")
    token_audience: str = Field(default="tracas-app", alias="TOKEN_AUDIENCE")
    access_token_expire_seconds: int = Field(default=3600, alias="ACCESS_TOKEN_EXPIRE_SECONDS")
    refresh_token_expire_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="REFRESH_TOKEN_EXPIRE_SECONDS",
    )
    token_refresh_threshold_seconds: int = Field(
        default=600,
        alias="TOKEN_REFRESH_THRESHOLD_SECONDS",
    )
    fingerprint_secret: str = Field(default=DEFAULT_FINGERPRINT_SECRET, alias="JWT_SECRET")
    token_cookie_name: str = Field(default="token", alias="TOKEN_COOKIE_NAME")
    refresh_cookie_name: str = Field(default="refresh_token", alias="REFRESH_COOKIE_NAME")

    # Two-factor authentication
    two_factor_master_key: str | None = Field(default=None, alias="SECRET_ENCRYPTION_KEY")
    two_factor_issuer: str = Field(default="TRACAS Admin", alias="TWO_FACTOR_ISSUER")
    two_factor_roles: list[str] = Field(default=["admin"], alias="TWO_FACTOR_ROLES")
    two_factor_session_ttl_seconds: int = Field(
        default=12 * 3600,
        alias="TWO_FACTOR_SESSION_TTL_SECONDS",
    )
    backup_code_count: int = Field(default=10, alias="BACKUP_CODE_COUNT")

    # CSRF double-submit cookie
    csrf_cookie_name: str = Field(default="csrf_token", alias="CSRF_COOKIE_NAME")
    csrf_header_name: str = Field(default="X-CSRF-Token", alias="CSRF_HEADER_NAME")
    csrf_cookie_max_age_seconds: int = Field(default=86_400, alias="CSRF_COOKIE_MAX_AGE")
    csrf_exempt_paths: list[str] = Field(default=["/api/children"], alias="CSRF_EXEMPT_PATHS")
    # Opt-in: requests authenticated only by an Authorization header skip double-submit.
    csrf_exempt_bearer: bool = Field(default=False, alias="CSRF_EXEMPT_BEARER")
    session_cookie_name: str = Field(default="session_id", alias="SESSION_COOKIE_NAME")

    # Request inspector (WAF)
    waf_enabled: bool | None = Field(default=None, alias="WAF_ENABLED")
    waf_rules: dict[str, bool] = Field(
        default={
            "sql_injection": True,
            "xss": True,
            "command_injection": True,
            "path_traversal": True,
            "ddos": True,
            "geo_restriction": True,
        },
        alias="WAF_RULES",
    )
    waf_allowed_countries: list[str] = Field(
        default=["ID", "SG", "MY", "US"],
        alias="ALLOWED_COUNTRIES",
    )
    ddos_requests_per_second: int = Field(default=10, alias="DDOS_REQUESTS_PER_SECOND")
    ddos_requests_per_minute: int = Field(default=100, alias="DDOS_REQUESTS_PER_MINUTE")
    waf_bad_request_ratio: float = Field(default=0.5, alias="WAF_BAD_REQUEST_RATIO")
    waf_min_requests_for_ratio: int = Field(default=10, alias="WAF_MIN_REQUESTS_FOR_RATIO")
    waf_retention_seconds: int = Field(default=300, alias="WAF_RETENTION_SECONDS")
    waf_housekeeping_seconds: float = Field(default=60.0, alias="WAF_HOUSEKEEPING_SECONDS")
    max_body_bytes: int = Field(default=1_048_576, alias="MAX_BODY_BYTES")

    # Repeated authentication failures
    auth_failure_window_seconds: int = Field(default=900, alias="AUTH_FAILURE_WINDOW_SECONDS")
    auth_failure_alert_threshold: int = Field(default=3, alias="AUTH_FAILURE_ALERT_THRESHOLD")
    auth_failure_ban_threshold: int = Field(default=5, alias="AUTH_FAILURE_BAN_THRESHOLD")

    # Adaptive rate limiting
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    rate_limit_general: tuple[int, int] = Field(default=(100, 15 * 60), alias="RATE_LIMIT_GENERAL")
    rate_limit_auth: tuple[int, int] = Field(default=(10, 30 * 60), alias="RATE_LIMIT_AUTH")
    rate_limit_sensitive: tuple[int, int] = Field(
        default=(30, 60 * 60),
        alias="RATE_LIMIT_SENSITIVE",
    )
    auth_path_prefixes: list[str] = Field(default=["/api/v1/auth"], alias="AUTH_PATH_PREFIXES")
    sensitive_paths: list[str] = Field(
        default=["/api/v1/admin", "/api/v1/auth/2fa"],
        alias="SENSITIVE_PATHS",
    )
    rate_limit_allow_list: list[str] = Field(
        default=["127.0.0.1", "::1"],
        alias="RATE_LIMIT_ALLOW_LIST",
    )

    # Header validation
    allowed_origins: list[str] = Field(
        default=["https://tracas.id", "https://app.tracas.id"],
        alias="ALLOWED_ORIGINS",
    )
    local_allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        alias="LOCAL_ALLOWED_ORIGINS",
    )
    device_header_name: str = Field(default="X-Device-ID", alias="DEVICE_HEADER_NAME")
    security_headers_enabled: bool = Field(default=True, alias="SECURITY_HEADERS_ENABLED")

    # Two-factor persistence
    database_url: str = Field(default="sqlite:///./tracas_guard.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def require_production_secrets(self) -> Settings:
        """Refuse to run production with the published fingerprint secret."""
        if self.is_production and self.fingerprint_secret == DEFAULT_FINGERPRINT_SECRET:
            raise ValueError("JWT_SECRET must be set in production")
        return self

    @property
    def is_local(self) -> bool:
        """Return True when running on a developer machine."""
        return self.environment == "local"

    @property
    def is_production(self) -> bool:
        """Return True for production deployments."""
        return self.environment == "production"

    @property
    def rotation_active(self) -> bool:
        """Return whether the background key rotation loop should run.

        Rotation defaults to on everywhere except local mode; an explicit
        ``KEY_ROTATION_ENABLED`` overrides the default.
        """
        if self.key_rotation_enabled is not None:
            return self.key_rotation_enabled
        return not self.is_local

    @property
    def waf_active(self) -> bool:
        """Return whether the request inspector starts enabled."""
        if self.waf_enabled is not None:
            return self.waf_enabled
        return not self.is_local

    @property
    def origin_allow_list(self) -> list[str]:
        """Return the origins accepted for the current environment."""
        return self.local_allowed_origins if self.is_local else self.allowed_origins


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return settings built from the process environment."""
    return Settings()
