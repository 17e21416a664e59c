from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class AuthBackend(str, Enum):
    """Which Auth Session Engine variant a deployment runs.

    - DELEGATED: an external identity provider owns credentials and sessions
    - LOCAL: passwords, access tokens and refresh tokens are handled here
    """

    DELEGATED = "delegated"
    LOCAL = "local"


class MailProvider(str, Enum):
    SMTP = "smtp"
    MAILTRAP = "mailtrap"


# Fallbacks applied when OTP settings are zero or negative
DEFAULT_OTP_LENGTH = 6
DEFAULT_OTP_EXPIRY_MINUTES = 10
DEFAULT_OTP_MAX_ATTEMPTS = 5
DEFAULT_OTP_RESEND_MAX_TIMES = 5
DEFAULT_OTP_RESEND_COOLDOWN_SECONDS = 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    frontend_url_development: str = env_field(
        "http://localhost:5173", "CORS_ORIGIN_DEVELOPMENT"
    )
    frontend_url_production: str = env_field(
        "https://yourdomain.com", "CORS_ORIGIN_PRODUCTION"
    )
    password_reset_path: str = env_field("/reset-password", "PASSWORD_RESET_PATH")

    auth_backend: AuthBackend = env_field(
        AuthBackend.DELEGATED,
        "AUTH_BACKEND",
        description="Session engine variant: delegated (identity provider) or local",
    )

    # Identity provider (delegated backend)
    supabase_url: str | None = env_field(None, "SUPABASE_URL")
    supabase_service_key: str | None = env_field(None, "SUPABASE_SERVICE_ROLE_KEY")
    identity_timeout_seconds: float = env_field(30.0, "IDENTITY_TIMEOUT_SECONDS")

    # OTP
    otp_length: int = env_field(DEFAULT_OTP_LENGTH, "OTP_LENGTH")
    otp_expiry_minutes: int = env_field(DEFAULT_OTP_EXPIRY_MINUTES, "OTP_EXPIRY_MINUTES")
    otp_max_attempts: int = env_field(DEFAULT_OTP_MAX_ATTEMPTS, "OTP_MAX_ATTEMPTS")
    otp_resend_max_times: int = env_field(
        DEFAULT_OTP_RESEND_MAX_TIMES, "OTP_RESEND_MAX_TIMES"
    )
    otp_resend_cooldown_seconds: int = env_field(
        DEFAULT_OTP_RESEND_COOLDOWN_SECONDS, "OTP_RESEND_COOLDOWN_SECONDS"
    )
    token_pepper: str | None = env_field(
        None, "TOKEN_PEPPER", description="HMAC key for OTP code hashes"
    )

    # Local backend tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    password_reset_token_ttl_minutes: int = env_field(
        15, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )

    # Mail delivery
    mail_provider: MailProvider = env_field(MailProvider.SMTP, "MAIL_PROVIDER")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Invento", "EMAIL_FROM_NAME")
    mailtrap_api_token: str | None = env_field(None, "MAILTRAP_API_TOKEN")
    mailtrap_template_register: str = env_field("register", "MAILTRAP_TEMPLATE_REGISTER")
    mailtrap_template_reset_password: str = env_field(
        "reset_password", "MAILTRAP_TEMPLATE_RESET_PASSWORD"
    )

    # Email eligibility
    email_domain: str = env_field("example.edu", "EMAIL_DOMAIN")
    email_role_map: dict[str, str] = env_field(
        {"student": "mahasiswa", "teacher": "dosen"},
        "EMAIL_ROLE_MAP",
        description="subdomain:role pairs, comma separated",
    )
    self_registration_roles: list[str] = env_field(
        ["mahasiswa"], "SELF_REGISTRATION_ROLES"
    )

    # Storage
    state_path: str | None = env_field(None, "STATE_PATH")
    seed_roles: list[str] = env_field(["mahasiswa", "dosen", "admin"], "SEED_ROLES")

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

    @field_validator("email_role_map", mode="before")
    @classmethod
    def _parse_role_map(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        mapping: dict[str, str] = {}
        for pair in _split_csv(value):
            subdomain, sep, role = pair.partition(":")
            if not sep or not subdomain.strip() or not role.strip():
                raise ValueError(f"invalid EMAIL_ROLE_MAP entry '{pair}'")
            mapping[subdomain.strip().lower()] = role.strip()
        return mapping

    @field_validator("self_registration_roles", "seed_roles", mode="before")
    @classmethod
    def _parse_csv_list(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("email_domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        normalized = value.strip().lower().lstrip(".")
        if not normalized or "." not in normalized:
            raise ValueError("EMAIL_DOMAIN must be a dotted domain name")
        return normalized

    @field_validator("password_reset_path")
    @classmethod
    def _ensure_leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @property
    def otp_settings(self) -> dict[str, int]:
        """OTP knobs with non-positive values replaced by defaults."""

        def _positive(value: int, default: int) -> int:
            return value if value > 0 else default

        return {
            "length": _positive(self.otp_length, DEFAULT_OTP_LENGTH),
            "expiry_minutes": _positive(
                self.otp_expiry_minutes, DEFAULT_OTP_EXPIRY_MINUTES
            ),
            "max_attempts": _positive(self.otp_max_attempts, DEFAULT_OTP_MAX_ATTEMPTS),
            "resend_max_times": _positive(
                self.otp_resend_max_times, DEFAULT_OTP_RESEND_MAX_TIMES
            ),
            "resend_cooldown_seconds": _positive(
                self.otp_resend_cooldown_seconds, DEFAULT_OTP_RESEND_COOLDOWN_SECONDS
            ),
        }

    @property
    def frontend_base_url(self) -> str:
        if self.app_env == AppEnv.PRODUCTION:
            return self.frontend_url_production.rstrip("/")
        return self.frontend_url_development.rstrip("/")

    @property
    def password_reset_redirect(self) -> str:
        return self.frontend_base_url + self.password_reset_path

    @property
    def otp_template_ids(self) -> dict[str, str]:
        return {
            "register": self.mailtrap_template_register,
            "reset_password": self.mailtrap_template_reset_password,
        }


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
