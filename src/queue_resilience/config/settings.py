from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Resilience layer settings"""

    # Basic settings
    ENVIRONMENT: str = "development"
    SERVICE_NAME: str = "resilience_worker"
    LOG_LEVEL: str = "INFO"
    LOG_JSON_FORMAT: bool = True
    LOG_DIR: str = "logs"

    # Redis settings
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Retry queue policy
    RETRY_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY_MS: int = 1000
    RETRY_BACKOFF_MULTIPLIER: float = 2
    RETRY_MAX_DELAY_MS: int = 60000
    RETRY_POLL_INTERVAL_MS: int = 1000

    # Health monitoring
    HEALTH_FAILURE_THRESHOLD: int = 3
    HEALTH_RESPONSE_TIMEOUT_MS: int = 5000
    HEALTH_CHECK_INTERVAL_MS: int = 10000
    # JSON object in env, e.g. {"payments": "http://payments:8000/health"}
    MONITORED_SERVICES: dict[str, str] = {}

    # Job queue metrics
    METRICS_WINDOW: int = 1000
    METRICS_PORT: int = 8080

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
