"""Environment-driven settings; every field maps to an upper-case env var."""

import json
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PRODUCTION_ENVS = {"prod", "production"}
PLACEHOLDER_SECRETS = {"", "change_me", "changeme", "dev-secret-key-change-before-prod", "test-secret-key"}
MIN_PRODUCTION_SECRET_LENGTH = 32


def _split_origins(raw) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            raw = json.loads(text)
            if not isinstance(raw, list):
                raise ValueError("CORS_ORIGINS must be a JSON list or a comma-separated string")
        else:
            raw = text.split(",")
    if not isinstance(raw, list):
        raise ValueError("CORS_ORIGINS must be a JSON list or a comma-separated string")
    return [str(origin).strip() for origin in raw if str(origin).strip()]


class Settings(BaseSettings):
    app_name: str = "ReviewFlow Backend"
    env: str = "dev"
    secret_key: str
    access_token_expire_minutes: int = Field(default=60, ge=5, le=7 * 24 * 60)

    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # Login lockout and public gate throttling.
    auth_rate_limit_max_attempts: int = Field(default=5, ge=1)
    auth_rate_limit_window_seconds: int = Field(default=300, ge=1)
    auth_rate_limit_lock_seconds: int = Field(default=900, ge=1)
    feedback_public_rate_limit_requests: int = Field(default=60, ge=1)
    feedback_public_rate_limit_window_seconds: int = Field(default=60, ge=1)

    # Where customers land when they click a gate link.
    frontend_base_url: str = "http://localhost:3000"
    public_rating_threshold_default: int = Field(default=4, ge=1, le=5)

    campaign_step_retry_limit: int = Field(default=3, ge=0, le=20)
    campaign_run_batch_size: int = Field(default=100, ge=1, le=1000)
    campaign_run_interval_seconds: float = Field(default=60.0, gt=0, le=3600)
    campaign_worker_enabled: bool = False

    channel_send_timeout_seconds: float = Field(default=20.0, gt=0, le=120)
    email_provider_default: str = "email_stub"
    sms_provider_default: str = "sms_stub"
    email_sender_name: str | None = None

    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender_email: str | None = None
    smtp_reply_to_email: str | None = None
    smtp_use_starttls: bool = True
    smtp_use_ssl: bool = False

    sendgrid_api_key: str | None = None
    sendgrid_api_base_url: str = "https://api.sendgrid.com/v3"

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_api_base_url: str = "https://api.twilio.com/2010-04-01"

    # Signed delivery callbacks. Twilio signs the public URL it was configured with.
    email_webhook_verification_key: str | None = None
    email_webhook_validate_signature: bool = True
    sms_webhook_validate_signature: bool = True
    sms_webhook_public_url: str | None = None

    api_timeout_hint_ms: int = Field(default=300_000, ge=1000, le=1_800_000)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", enable_decoding=False)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value):
        return _split_origins(value)

    @field_validator(
        "email_sender_name",
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtp_sender_email",
        "smtp_reply_to_email",
        "sendgrid_api_key",
        "twilio_account_sid",
        "twilio_auth_token",
        "twilio_from_number",
        "email_webhook_verification_key",
        "sms_webhook_public_url",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value):
        if value is None:
            return None
        return str(value).strip() or None

    @field_validator("frontend_base_url")
    @classmethod
    def drop_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.env.strip().lower() in PRODUCTION_ENVS

    @model_validator(mode="after")
    def refuse_unsafe_production(self) -> "Settings":
        if not self.is_production:
            return self
        problems = []
        secret = self.secret_key.strip()
        if secret in PLACEHOLDER_SECRETS or len(secret) < MIN_PRODUCTION_SECRET_LENGTH:
            problems.append(f"SECRET_KEY must be a random value of at least {MIN_PRODUCTION_SECRET_LENGTH} characters")
        if "*" in self.cors_origins or self.cors_origin_regex:
            problems.append("CORS must list explicit origins")
        if self.smtp_use_ssl and self.smtp_use_starttls:
            problems.append("SMTP_USE_SSL and SMTP_USE_STARTTLS are mutually exclusive")
        if not (self.email_webhook_validate_signature and self.sms_webhook_validate_signature):
            problems.append("webhook signature validation must stay enabled")
        if problems:
            raise ValueError("Unsafe production settings: " + "; ".join(problems))
        return self


settings = Settings()
