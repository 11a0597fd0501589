from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "funnelbot"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"
    LOG_CONFIG_PATH: str = "logging_config.json"

    # Database
    DATABASE_URL: str = "sqlite:///./funnelbot.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Telegram Bot API
    TELEGRAM_TOKEN: str = ""
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"
    TELEGRAM_TIMEOUT_SECONDS: float = 15.0
    ADMIN_IDS: Union[str, List[str]] = ""

    # Scheduling
    REFERENCE_TIMEZONE: str = "Europe/Moscow"
    # 1.0 = real time; larger values compress scheduled delays (staging only)
    TIME_SCALE_FACTOR: float = 1.0
    TIME_SCALE_MIN_DELAY_MS: int = 500

    # Broadcast
    BROADCAST_BATCH_SIZE: int = 500
    BROADCAST_MIN_DELAY_MS: int = 50
    BROADCAST_DEFAULT_DELAY_MS: int = 100
    BROADCAST_TTL_SECONDS: int = 60 * 60 * 10
    BROADCAST_LOG_LIMIT: int = 2000
    BROADCAST_ERROR_LIMIT: int = 5000
    BROADCAST_RATE_WINDOW_SIZE: int = 120
    BROADCAST_EMA_ALPHA: float = 0.2
    BROADCAST_STATUS_PUBLISH_INTERVAL_MS: int = 1000
    BROADCAST_FILTER_BLOCKED: bool = True

    # Task queues: concurrency / attempts / backoff
    REMINDER_QUEUE_CONCURRENCY: int = 100
    REMINDER_MAX_ATTEMPTS: int = 3
    REMINDER_RETRY_DELAY_SECONDS: float = 3.0

    OFFER_QUEUE_CONCURRENCY: int = 50
    OFFER_MAX_ATTEMPTS: int = 3
    OFFER_RETRY_DELAY_SECONDS: float = 3.0

    BROADCAST_QUEUE_CONCURRENCY: int = 1
    BROADCAST_MAX_ATTEMPTS: int = 3
    BROADCAST_RETRY_DELAY_SECONDS: float = 5.0
    BROADCAST_RETRY_DELAY_MAX_SECONDS: float = 700.0

    MAINTENANCE_QUEUE_CONCURRENCY: int = 1
    MAINTENANCE_MAX_ATTEMPTS: int = 1

    # Reachability sweep
    BLOCKCHECK_MIN_INTERVAL_MS: int = 40
    BLOCKCHECK_HORIZON_HOURS: int = 48
    BLOCKCHECK_PAGE_SIZE: int = 500

    @field_validator("ALLOWED_HOSTS", "ADMIN_IDS", mode="before")
    def assemble_comma_list(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        return v

    @property
    def redis_url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def require_bot_token(self) -> str:
        """Return the Telegram token or fail fast at startup."""
        from funnelbot.utils.errors import ConfigurationError

        if not self.TELEGRAM_TOKEN:
            raise ConfigurationError("TELEGRAM_TOKEN is not set")
        return self.TELEGRAM_TOKEN

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
