"""
Foodhub - Configuration
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "foodhub"
    SERVICE_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "production"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 5000
    LOG_LEVEL: str = "INFO"

    # ── JWT ───────────────────────────────────────────────────
    JWT_SECRET_KEY: str = "CHANGE_ME_IN_PRODUCTION"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # ── PostgreSQL ────────────────────────────────────────────
    POSTGRES_HOST: str = "foodhub-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "foodhub"
    POSTGRES_USER: str = "foodhub"
    POSTGRES_PASSWORD: str = "foodhub"
    DATABASE_URL: str = ""  # overrides the POSTGRES_* settings when set

    DB_CONNECT_TIMEOUT_SECONDS: float = 15.0
    DB_COMMAND_TIMEOUT_SECONDS: float = 45.0
    DB_STARTUP_MAX_RETRIES: int = 5
    DB_STARTUP_BASE_DELAY_SECONDS: float = 1.0

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis (idempotency + login rate limiting) ─────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    IDEMPOTENCY_ENABLED: bool = True
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # ── Order lifecycle ───────────────────────────────────────
    AUTO_CANCEL_AFTER_SECONDS: int = 8 * 60
    AUTO_CANCEL_WATCHDOG_INTERVAL_SECONDS: int = 60
    OPENING_TIME_WATCH_INTERVAL_SECONDS: int = 60

    # ── Dashboard channels ────────────────────────────────────
    WS_HEARTBEAT_INTERVAL_SECONDS: int = 30
    WS_PING_TIMEOUT_SECONDS: float = 20.0
    WS_HANDSHAKE_TIMEOUT_SECONDS: float = 30.0
    WS_OUTBOUND_QUEUE_SIZE: int = 64

    # ── Devices ───────────────────────────────────────────────
    DEVICE_CAP_PER_USER: int = 5
    DEVICE_TTL_DAYS: int = 30
    DEVICE_SWEEP_INTERVAL_SECONDS: int = 6 * 60 * 60
    DEVICE_CAS_MAX_RETRIES: int = 5
    DEVICE_CAS_BASE_DELAY_MS: int = 20
    DEVICE_CAS_MAX_DELAY_MS: int = 500
    DEVICE_CAS_JITTER_MS: int = 20

    # ── Push (FCM HTTP v1) ────────────────────────────────────
    FCM_PROJECT_ID: str = ""
    FCM_ACCESS_TOKEN: str = ""
    FCM_ENDPOINT: str = "https://fcm.googleapis.com/v1"
    PUSH_TIMEOUT_SECONDS: float = 10.0
    PUSH_MAX_RETRIES: int = 3
    PUSH_RETRY_BASE_SECONDS: float = 2.0
    PUSH_BATCH_SIZE: int = 500

    @property
    def push_enabled(self) -> bool:
        return bool(self.FCM_PROJECT_ID and self.FCM_ACCESS_TOKEN)

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0
    SCHEDULER_ENABLED: bool = True

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
