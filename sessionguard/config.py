from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger
from sessionguard.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_SIGNING_KEY_LENGTH = 32
MAX_REVOCATION_CACHE_TTL_SECONDS = 60

AVAILABLE_SCOPES = [
    "read:routes",
    "write:routes",
    "delete:routes",
    "read:locations",
    "write:locations",
    "delete:locations",
    "read:dashboard",
    "read:configuration",
    "read:users",
]

DEFAULT_SCOPES = [
    "read:routes",
    "write:routes",
    "read:locations",
    "write:locations",
    "read:dashboard",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, rotation and two-factor auth."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        30, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime per rotation"
    )
    revocation_cache_ttl_seconds: int = env_field(
        0,
        "REVOCATION_CACHE_TTL_SECONDS",
        description="How long a positive access-token activity check may be reused; 0 reads the store every time",
    )
    lineage_max_depth: int = env_field(1000, "LINEAGE_MAX_DEPTH")
    totp_issuer: str = env_field("SessionGuard", "TOTP_ISSUER")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_valid_window: int = env_field(
        1, "TOTP_VALID_WINDOW", description="Adjacent steps accepted for clock drift (max 1)"
    )
    totp_algorithm: str = env_field("sha1", "TOTP_ALGORITHM")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    backup_code_length: int = env_field(10, "BACKUP_CODE_LENGTH")
    pending_login_ttl_seconds: int = env_field(300, "PENDING_LOGIN_TTL_SECONDS")
    failure_window_seconds: int = env_field(900, "TWO_FACTOR_FAILURE_WINDOW_SECONDS")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    available_scopes: List[str] = env_field(list(AVAILABLE_SCOPES), "AVAILABLE_SCOPES")
    default_scopes: List[str] = env_field(list(DEFAULT_SCOPES), "DEFAULT_SCOPES")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("available_scopes", "default_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [scope for scope in value.replace(",", " ").split() if scope]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _check_jwt_secret(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_SIGNING_KEY_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SIGNING_KEY_LENGTH} characters"
            )
        return value or None

    @field_validator("totp_valid_window")
    @classmethod
    def _cap_totp_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("TOTP window cannot be negative")
        if value > 1:
            logger.warning("totp_window_capped", requested=value, applied=1)
            return 1
        return value

    @field_validator("totp_algorithm")
    @classmethod
    def _check_totp_algorithm(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"sha1", "sha256", "sha512"}:
            raise ValueError("TOTP_ALGORITHM must be sha1, sha256 or sha512")
        return normalized

    @field_validator("backup_code_length")
    @classmethod
    def _check_backup_code_length(cls, value: int) -> int:
        if value < 8 or value % 2:
            raise ValueError("BACKUP_CODE_LENGTH must be an even number of at least 8")
        return value

    @field_validator("backup_code_count")
    @classmethod
    def _check_backup_code_count(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("BACKUP_CODE_COUNT must be positive")
        return value

    @field_validator("revocation_cache_ttl_seconds")
    @classmethod
    def _bound_revocation_cache(cls, value: int) -> int:
        if value < 0 or value > MAX_REVOCATION_CACHE_TTL_SECONDS:
            raise ValueError(
                f"REVOCATION_CACHE_TTL_SECONDS must be between 0 and {MAX_REVOCATION_CACHE_TTL_SECONDS}"
            )
        return value

    def require_signing_key(self) -> str:
        """Return the process-wide signing key or abort startup."""
        if not self.jwt_secret:
            raise ConfigurationError("JWT_SECRET is not configured; refusing to issue tokens")
        return self.jwt_secret


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
