from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class OtpAlgorithm(str, Enum):
    """HMAC digests accepted for OTP generation."""

    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at start-up and never reloaded."""

    otp_expiration_minutes: int = env_field(
        5, "OTP_EXPIRATION", gt=0, description="Lifetime of an issued OTP challenge"
    )
    otp_step_seconds: int = env_field(
        30, "OTP_STEP", gt=0, description="TOTP time step in seconds"
    )
    otp_digits: int = env_field(6, "OTP_DIGITS", ge=6, le=10)
    otp_window: int = env_field(
        1,
        "OTP_WINDOW",
        ge=0,
        le=5,
        description="Adjacent time steps accepted on either side for clock skew",
    )
    otp_algorithm: OtpAlgorithm = env_field(OtpAlgorithm.SHA1, "OTP_ALGORITHM")
    otp_issuer: str = env_field("App", "OTP_ISSUER", min_length=1)
    refresh_token_ttl_days: int = env_field(
        7,
        "JWT_REFRESH_EXPIRATION",
        gt=0,
        description="Refresh token lifetime in days; accepts '7d' or 7",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/gatekeep", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/gatekeep", "SHARED_FS_ROOT")
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")

    model_config = ConfigDict(extra="ignore", frozen=True)

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
        settings = cls(**merged)
        logger.info(
            "settings_loaded",
            use_memory_store=settings.use_memory_store,
            otp_step_seconds=settings.otp_step_seconds,
            otp_digits=settings.otp_digits,
            refresh_token_ttl_days=settings.refresh_token_ttl_days,
        )
        return settings

    @field_validator("otp_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> OtpAlgorithm:
        if isinstance(value, str):
            value = value.strip().lower()
        return OtpAlgorithm(value)

    @field_validator("refresh_token_ttl_days", mode="before")
    @classmethod
    def _parse_day_suffix(cls, value: Any) -> Any:
        # Accept the "7d" form used by JWT expiration settings
        if isinstance(value, str):
            stripped = value.strip().lower()
            if stripped.endswith("d"):
                stripped = stripped[:-1]
            return stripped
        return value
