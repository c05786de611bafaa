from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App Settings
    app_name: str = "Content Job Orchestrator"
    app_version: str = "1.0.0"
    debug: bool = False

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "8000"))
    allowed_origins: str = "http://localhost:5173,http://localhost:3000"
    submit_rate_limit: str = "30/minute"
    rate_limit_storage_uri: str = "memory://"

    # Test Mode: providers return canned responses instead of calling out
    test_mode: bool = False

    # Job store - "sql" (SQLAlchemy, default) or "redis"
    job_store_backend: str = "sql"
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    job_ttl_seconds: Optional[int] = 7 * 24 * 3600  # redis only; None keeps forever

    # Orchestrator
    job_max_retries: int = 5
    job_cache_size: int = 1000
    # False fails a job at once on TerminalJobError (e.g. missing AI key) instead of retrying it
    retry_terminal_errors: bool = True

    # Circuit breakers (threshold failures / recovery ms)
    search_breaker_threshold: int = 5
    search_breaker_recovery_ms: int = 10_000
    ai_breaker_threshold: int = 3
    ai_breaker_recovery_ms: int = 30_000
    publish_breaker_threshold: int = 2
    publish_breaker_recovery_ms: int = 5_000

    # Providers
    serper_api_key: str = ""
    openai_api_key: str = ""
    ai_base_url: Optional[str] = None
    ai_model: str = "gpt-4o-mini"
    wp_site_url: str = ""
    wp_username: str = ""
    wp_app_password: str = ""
    provider_timeout_seconds: float = 60.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL
        if self.database_url is None:
            self.database_url = "sqlite+aiosqlite:///./database/orchestrator.db"
        elif self.database_url.startswith("postgres://"):
            # Hosted Postgres hands out postgres://, SQLAlchemy async needs the asyncpg driver
            self.database_url = self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def allowed_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def wordpress_configured(self) -> bool:
        return bool(self.wp_site_url and self.wp_username and self.wp_app_password)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
