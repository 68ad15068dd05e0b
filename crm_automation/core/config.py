from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CRM Automation Worker"
    env: str = "dev"
    log_level: str = "INFO"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # QUEUE / BROKER
    broker_url: str = "redis://localhost:6379/0"
    redis_url: str = "redis://localhost:6379/1"
    idempotency_backend: Literal["sql", "redis"] = "sql"
    queue_default_attempts: int = Field(default=5, ge=1, le=20)
    queue_email_attempts: int = Field(default=3, ge=1, le=20)
    queue_notification_attempts: int = Field(default=3, ge=1, le=20)
    queue_backoff_base_seconds: int = Field(default=3, ge=1, le=600)
    queue_job_id_ttl_seconds: int = Field(default=172_800, ge=60, le=2_592_000)
    task_time_limit_seconds: int = Field(default=300, ge=10, le=3600)

    # WORKER CONCURRENCY
    automation_concurrency: int = Field(default=5, ge=1, le=64)
    notification_concurrency: int = Field(default=10, ge=1, le=64)
    email_concurrency: int = Field(default=5, ge=1, le=64)
    analytics_concurrency: int = Field(default=2, ge=1, le=64)
    email_rate_limit: str = "10/s"

    # AUTOMATION
    automation_exec_lock_ttl_seconds: int = Field(default=3600, ge=60, le=86_400)
    stale_deal_days: int = Field(default=14, ge=1, le=365)

    # EMAIL
    email_provider: Literal["stub", "resend"] = "stub"
    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    resend_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    email_from: str = "CRM <no-reply@example.com>"

    # INTERNAL API
    internal_api_token: str = "dev-internal-token"

    @field_validator("resend_api_key", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("email_rate_limit")
    @classmethod
    def validate_rate_limit(cls, value: str) -> str:
        cleaned = value.strip()
        amount, _, unit = cleaned.partition("/")
        if not amount.isdigit() or unit not in {"s", "m", "h"}:
            raise ValueError("EMAIL_RATE_LIMIT must look like '10/s', '600/m' or '1000/h'")
        return cleaned

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        if self.email_provider == "resend" and not self.resend_api_key:
            raise ValueError("RESEND_API_KEY is required when EMAIL_PROVIDER=resend")

        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_tokens = {"", "change_me", "dev-internal-token"}
        token = self.internal_api_token.strip()
        if token in weak_tokens or len(token) < 32:
            raise ValueError("INTERNAL_API_TOKEN must be a strong random value in production")
        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
