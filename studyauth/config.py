from __future__ import annotations

import hashlib
import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from studyauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth subsystem.

    Values come from the process environment first, then ``.env``.
    The signing secret and OTP hashing key are read once at startup.
    """

    model_config = ConfigDict(extra="ignore", validate_default=True)

    app_name: str = env_field("StudyAuth", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/studyauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/studyauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes external dependency checks for local testing.",
    )
    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("studyauth", "JWT_ISSUER")
    jwt_audience: str = env_field("studyauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", ge=1, le=24 * 60
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=60, le=90 * 24 * 60
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS", ge=0, le=300)
    # One-time passcodes
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS", ge=30, le=3600)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1, le=20)
    otp_code_length: int = env_field(6, "OTP_CODE_LENGTH", ge=4, le=10)
    otp_hash_secret: str | None = env_field(None, "OTP_HASH_SECRET")
    otp_login_auto_register: bool = env_field(True, "OTP_LOGIN_AUTO_REGISTER")
    # Accounts
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    default_phone_country_code: str | None = env_field(
        None,
        "DEFAULT_PHONE_COUNTRY_CODE",
        description="Country calling code prefixed to bare national numbers, e.g. 91.",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=6, le=128)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    # Bounded timeouts for external calls
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS", gt=0)
    notification_timeout_seconds: float = env_field(
        15.0, "NOTIFICATION_TIMEOUT_SECONDS", gt=0
    )
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StudyAuth", "EMAIL_FROM_NAME")
    notification_dev_mode: bool = env_field(
        False,
        "NOTIFICATION_DEV_MODE",
        description="Log messages instead of failing when no SMTP host or SMS key is set.",
    )
    # SMS delivery
    sms_gateway_base_url: str = env_field(
        "https://2factor.in/API/V1", "SMS_GATEWAY_BASE_URL"
    )
    sms_gateway_api_key: str | None = env_field(None, "SMS_GATEWAY_API_KEY")
    sms_sender_id: str = env_field("STDYAU", "SMS_SENDER_ID")

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

    @field_validator("default_phone_country_code")
    @classmethod
    def _normalize_country_code(cls, value: str | None) -> str | None:
        if value is None:
            return None
        digits = value.strip().lstrip("+")
        if not digits:
            return None
        if not digits.isdigit() or len(digits) > 3:
            raise ValueError("default_phone_country_code must be 1-3 digits")
        return digits

    @field_validator("redis_url")
    @classmethod
    def _empty_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/studyauth"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
            logger.warning("jwt_secret_file_too_short", path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as handle:
                handle.write(generated)
        except OSError as exc:
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @model_validator(mode="after")
    def _derive_otp_secret(self) -> "Settings":
        if not self.otp_hash_secret:
            self.otp_hash_secret = hashlib.sha256(
                b"otp:" + self.jwt_secret.encode()
            ).hexdigest()
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
