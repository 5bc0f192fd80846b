from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL (asyncpg) for production, SQLite (aiosqlite) for development
    database_url: str = Field(
        default="sqlite+aiosqlite:///./eventsync.db",
        alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    auto_create_tables: bool = Field(default=False, alias="AUTO_CREATE_TABLES")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # ==============================================
    # Upstream commerce platform (Server-Side Only!)
    # ==============================================
    square_base_url: str = Field(
        default="https://connect.squareup.com",
        alias="SQUARE_BASE_URL"
    )
    square_access_token: str = Field(default="", alias="SQUARE_ACCESS_TOKEN")
    square_api_version: str = Field(default="2024-10-17", alias="SQUARE_API_VERSION")

    # Bounded timeout for every upstream call
    upstream_timeout_seconds: float = Field(default=10.0, alias="UPSTREAM_TIMEOUT_SECONDS")
    # In-client retries for bulk (backfill) callers only
    upstream_max_retries: int = Field(default=3, alias="UPSTREAM_MAX_RETRIES")

    # Webhook security
    webhook_signature_key: str = Field(default="", alias="WEBHOOK_SIGNATURE_KEY")
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Tenancy: fall back to the only active organization when nothing else resolves
    single_tenant_fallback: bool = Field(default=True, alias="SINGLE_TENANT_FALLBACK")

    # Deferred linking window around the order's creation time
    link_window_before_days: int = Field(default=7, alias="LINK_WINDOW_BEFORE_DAYS")
    link_window_after_days: int = Field(default=1, alias="LINK_WINDOW_AFTER_DAYS")

    # Retry job queue
    retry_max_attempts: int = Field(default=5, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=5.0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=300.0, alias="RETRY_MAX_DELAY_SECONDS")
    job_lock_timeout_seconds: int = Field(default=300, alias="JOB_LOCK_TIMEOUT_SECONDS")

    # Worker settings (drain runs inside the FastAPI process or worker.py)
    jobs_per_drain: int = Field(default=50, alias="JOBS_PER_DRAIN")
    worker_pool_size: int = Field(default=5, alias="WORKER_POOL_SIZE")
    drain_interval_seconds: int = Field(default=60, alias="DRAIN_INTERVAL_SECONDS")
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")

    # Backfill
    backfill_batch_size: int = Field(default=100, alias="BACKFILL_BATCH_SIZE")
    backfill_batch_delay_seconds: float = Field(default=1.0, alias="BACKFILL_BATCH_DELAY_SECONDS")

    @field_validator('database_url')
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Hosting providers hand out postgres:// URLs; the async engine needs a driver."""
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        if v.startswith("postgresql://"):
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        if v.startswith("sqlite://"):
            v = v.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return v

    @field_validator('worker_pool_size', 'backfill_batch_size', 'jobs_per_drain', 'retry_max_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
