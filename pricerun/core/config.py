import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Pricing Rule Runs"
    env: str = "dev"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # APPLY / RETRY
    apply_max_attempts: int = Field(default=5, ge=1, le=50)
    apply_backoff_base_seconds: float = Field(default=2.0, ge=0)
    apply_backoff_max_seconds: float = Field(default=64.0, ge=0)
    apply_backoff_multiplier: float = Field(default=2.0, ge=1)
    apply_backoff_jitter: float = Field(default=0.2, ge=0, le=1)
    rate_limit_backoff_base_seconds: float = Field(default=16.0, ge=0)
    channel_min_interval_ms: int = Field(default=100, ge=0, le=60_000)

    # OUTBOX / WORKER
    outbox_max_attempts: int = Field(default=5, ge=1, le=20)
    outbox_retry_seconds: int = Field(default=30, ge=1, le=86400)
    outbox_retry_max_seconds: int = Field(default=3600, ge=1, le=86400)
    outbox_lease_seconds: int = Field(default=300, ge=5, le=86400)
    worker_poll_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    worker_batch_size: int = Field(default=100, ge=1, le=1000)

    # SCHEDULER / METRICS
    scheduler_enabled: bool = True
    scheduler_batch_size: int = Field(default=50, ge=1, le=1000)
    apply_success_rate_alert_percent: float = Field(default=97.0, ge=0, le=100)

    # RECONCILIATION
    reconcile_tolerance_minor: int = Field(default=0, ge=0)

    # API
    runs_page_size: int = Field(default=50, ge=1, le=500)
    api_timeout_hint_ms: int = Field(default=300000, ge=1000, le=1_800_000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "Settings":
        if self.apply_backoff_max_seconds < self.apply_backoff_base_seconds:
            raise ValueError("APPLY_BACKOFF_MAX_SECONDS must be >= APPLY_BACKOFF_BASE_SECONDS")
        if self.outbox_retry_max_seconds < self.outbox_retry_seconds:
            raise ValueError("OUTBOX_RETRY_MAX_SECONDS must be >= OUTBOX_RETRY_SECONDS")
        return self

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")
        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
