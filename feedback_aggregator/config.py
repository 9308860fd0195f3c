from __future__ import annotations
from functools import lru_cache
from typing import List
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process configuration, read from the environment and ``.env``."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "Feedback Aggregator"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # Secrets: no defaults, startup fails without them
    API_KEY: str
    DB_USER: str
    DB_PASSWORD: str

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # ── Postgres ─────────────────────────────────────────────────────────────
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "feedback"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def DATABASE_URL(self) -> str:
        user, password = quote_plus(self.DB_USER), quote_plus(self.DB_PASSWORD)
        return f"postgresql+asyncpg://{user}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # ── Redis (metrics cache) ────────────────────────────────────────────────
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str = ""
    REDIS_POOL_SIZE: int = 20
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0
    CACHE_TTL_METRICS: int = 300
    CACHE_STALE_GRACE: int = 60

    @property
    def REDIS_URL(self) -> str:
        auth = f":{quote_plus(self.REDIS_PASSWORD)}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Source APIs ──────────────────────────────────────────────────────────
    HTTP_TIMEOUT: float = 15.0
    MAX_RETRIES: int = 3
    JIRA_SKEW_MINUTES: int = 5
    NOTION_API_URL: str = "https://api.notion.com/v1"
    NOTION_VERSION: str = "2022-06-28"
    NOTION_PAGE_SIZE: int = 100
    ZOHO_DESK_URL: str = "https://desk.zoho.com/api/v1"
    ZOHO_PAGE_LIMIT: int = 100

    # ── Sync scheduling ──────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_MINUTES: int = 5
    SYNC_CONCURRENCY: int = 4
    STALE_RUN_MINUTES: int = 60     # a running SyncLog older than this is marked error

    # ── Webhook rate limiting ────────────────────────────────────────────────
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_PATH_PREFIXES: List[str] = ["/zapier-sync"]
    TRUSTED_PROXY_HEADERS: List[str] = ["X-Forwarded-For", "X-Real-IP"]

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator(
        "SYNC_CONCURRENCY", "NOTION_PAGE_SIZE", "ZOHO_PAGE_LIMIT",
        "SCHEDULER_TICK_MINUTES", "STALE_RUN_MINUTES",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
