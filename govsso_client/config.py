from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from govsso_client.logging import get_logger

logger = get_logger(__name__)

BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"
REGISTRATION_ID = "govsso"


class RefreshMissingPolicy(str, Enum):
    """What the refresh stage does when a refresh is due but no refresh token exists.

    - REAUTHENTICATE: invalidate the session and send the browser to login again
    - FAIL_OPEN: keep serving the request with the stale tokens and let the
      downstream API reject them
    """

    REAUTHENTICATE = "reauthenticate"
    FAIL_OPEN = "fail_open"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value or [])


class Settings(BaseModel):
    """Runtime settings for the GovSSO relying party."""

    # Client registration
    govsso_issuer_uri: str = env_field("https://govsso-demo.ria.ee/", "GOVSSO_ISSUER_URI")
    govsso_client_id: str = env_field("client-a", "GOVSSO_CLIENT_ID")
    govsso_client_secret: str | None = env_field(None, "GOVSSO_CLIENT_SECRET")
    govsso_redirect_uri: str = env_field(
        "http://localhost:8000/login/oauth2/code/govsso", "GOVSSO_REDIRECT_URI"
    )
    govsso_scope: str = env_field("openid", "GOVSSO_SCOPE")
    # Provider endpoints; empty values are derived from the issuer
    govsso_authorization_uri: str | None = env_field(None, "GOVSSO_AUTHORIZATION_URI")
    govsso_token_uri: str | None = env_field(None, "GOVSSO_TOKEN_URI")
    govsso_jwks_uri: str | None = env_field(None, "GOVSSO_JWKS_URI")
    govsso_end_session_uri: str | None = env_field(None, "GOVSSO_END_SESSION_URI")
    post_logout_redirect_uri: str | None = env_field(
        "{baseUrl}/?show-post-logout-message", "GOVSSO_POST_LOGOUT_REDIRECT_URI"
    )
    jws_algorithms: list[str] = env_field(
        ["RS256"],
        "GOVSSO_JWS_ALGORITHMS",
        description="Accepted signature algorithms for ID and logout tokens",
    )

    # Token lifecycle
    refresh_lead_seconds: int = env_field(
        120,
        "REFRESH_LEAD_SECONDS",
        description="Refresh tokens this many seconds before the access or ID token expires",
    )
    refresh_missing_policy: RefreshMissingPolicy = env_field(
        RefreshMissingPolicy.REAUTHENTICATE, "REFRESH_MISSING_POLICY"
    )
    token_endpoint_timeout_seconds: float = env_field(10.0, "TOKEN_ENDPOINT_TIMEOUT_SECONDS")
    jwks_refresh_interval_seconds: int = env_field(300, "JWKS_REFRESH_INTERVAL_SECONDS")
    jwks_min_refetch_seconds: int = env_field(30, "JWKS_MIN_REFETCH_SECONDS")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")
    logout_token_max_age_seconds: int = env_field(300, "LOGOUT_TOKEN_MAX_AGE_SECONDS")

    # Sessions
    session_cookie_name: str = env_field("SESSION", "SESSION_COOKIE_NAME")
    session_timeout_minutes: int = env_field(30, "SESSION_TIMEOUT_MINUTES")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    expired_session_retention_seconds: int = env_field(
        3600,
        "EXPIRED_SESSION_RETENTION_SECONDS",
        description="How long an expired registry entry is kept after its session died",
    )
    registry_sweep_interval_seconds: int = env_field(300, "REGISTRY_SWEEP_INTERVAL_SECONDS")

    # Web
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jws_algorithms", mode="before")
    @classmethod
    def _parse_algorithms(cls, value: Any) -> list[str]:
        algorithms = _split_csv(value)
        if not algorithms:
            raise ValueError("at least one JWS algorithm is required")
        return algorithms

    @field_validator("refresh_missing_policy")
    @classmethod
    def _validate_policy(cls, value: RefreshMissingPolicy) -> RefreshMissingPolicy:
        return RefreshMissingPolicy(value)

    @field_validator(
        "refresh_lead_seconds",
        "clock_skew_seconds",
        "logout_token_max_age_seconds",
        "jwks_min_refetch_seconds",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("token_endpoint_timeout_seconds")
    @classmethod
    def _bounded_timeout(cls, value: float) -> float:
        # Outbound calls must never block indefinitely
        if value <= 0:
            raise ValueError("token endpoint timeout must be positive")
        return value

    @model_validator(mode="after")
    def _derive_endpoints(self) -> "Settings":
        base = self.govsso_issuer_uri.rstrip("/")
        if not self.govsso_authorization_uri:
            self.govsso_authorization_uri = f"{base}/oauth2/auth"
        if not self.govsso_token_uri:
            self.govsso_token_uri = f"{base}/oauth2/token"
        if not self.govsso_jwks_uri:
            self.govsso_jwks_uri = f"{base}/.well-known/jwks.json"
        if not self.govsso_end_session_uri:
            self.govsso_end_session_uri = f"{base}/oauth2/sessions/logout"
        if not self.govsso_client_secret and not self.test_mode:
            logger.warning("govsso_client_secret_missing", client_id=self.govsso_client_id)
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
