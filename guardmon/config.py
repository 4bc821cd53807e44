from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class PasswordHashScheme(str, Enum):
    """Digest formats understood by the password hasher.

    - SHA256: unsalted SHA-256, base64 text. Matches rows written by the
      spreadsheet-era system and is deterministic.
    - ARGON2ID: salted argon2id, ``$argon2id$`` encoded.
    """

    SHA256 = "sha256"
    ARGON2ID = "argon2id"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and audit core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/guardmon", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/guardmon", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep session/CSRF tokens in process memory instead of Redis",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow the in-memory cache fallback.",
    )

    # Input validation
    max_username_length: int = env_field(50, "MAX_USERNAME_LENGTH")
    max_string_length: int = env_field(255, "MAX_STRING_LENGTH")
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")
    max_password_length: int = env_field(128, "MAX_PASSWORD_LENGTH")

    # Lockout
    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Consecutive failed logins before the account is locked",
    )
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # Tokens
    session_timeout_minutes: int = env_field(
        360, "SESSION_TIMEOUT_MINUTES", description="Session token TTL (6 hours)"
    )
    csrf_token_ttl_minutes: int = env_field(60, "CSRF_TOKEN_TTL_MINUTES")

    # Passwords
    password_history_count: int = env_field(5, "PASSWORD_HISTORY_COUNT")
    password_hash_scheme: PasswordHashScheme = env_field(
        PasswordHashScheme.SHA256,
        "PASSWORD_HASH_SCHEME",
        description="sha256 keeps compatibility with existing rows; argon2id is salted",
    )
    force_password_change_on_first_login: bool = env_field(
        True, "FORCE_PASSWORD_CHANGE_ON_FIRST_LOGIN"
    )

    # Audit
    audit_retention_days: int = env_field(365, "AUDIT_RETENTION_DAYS")

    # Bootstrap administrator
    default_admin_username: str = env_field("admin", "DEFAULT_ADMIN_USERNAME")
    default_admin_full_name: str = env_field(
        "System Administrator", "DEFAULT_ADMIN_FULL_NAME"
    )
    default_admin_password: str = env_field("ChangeMe2025!", "DEFAULT_ADMIN_PASSWORD")

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

    @field_validator("password_hash_scheme")
    @classmethod
    def _validate_hash_scheme(cls, value: PasswordHashScheme) -> PasswordHashScheme:
        return PasswordHashScheme(value)

    @field_validator(
        "max_username_length",
        "max_string_length",
        "min_password_length",
        "max_password_length",
        "max_login_attempts",
        "lockout_duration_minutes",
        "session_timeout_minutes",
        "csrf_token_ttl_minutes",
        "password_history_count",
        "audit_retention_days",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value


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
