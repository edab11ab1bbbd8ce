"""
Centralized configuration using pydantic-settings.

How it works:
- Reads environment variables automatically (e.g., REDIS_HOST env var → Settings.REDIS_HOST)
- Falls back to defaults defined here if env vars are not set
- Can also read from a .env file in the project root
- Dict fields (QUEUE_OVERRIDES, DAILY_BUDGETS) are parsed from JSON,
  e.g. QUEUE_OVERRIDES='{"content": {"attempts": 5, "backoff_delay": 20}}'

Every module imports `settings` from here instead of hardcoding values.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── PostgreSQL (Job Store) ──────────────────────────────────
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "jobengine"
    POSTGRES_PASSWORD: str = "jobengine"
    POSTGRES_DB: str = "jobengine"

    # ── Redis (Work Broker) ─────────────────────────────────────
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_URL: str | None = None       # wins over host/port/db when set (e.g. rediss://...)
    BROKER_PREFIX: str = "jobs"

    # ── Worker ──────────────────────────────────────────────────
    WORKER_POOL_SIZE: int = 4
    WORKER_POLL_INTERVAL: float = 0.5  # seconds the dispatcher sleeps when every queue is empty
    LEASE_GRACE_SECONDS: int = 60      # added on top of the queue timeout for the broker lease
    HANDLER_MODULES: list[str] = []    # modules that register job handlers on import

    # ── Admission ───────────────────────────────────────────────
    DEDUP_TTL_SECONDS: int = 1800
    BUDGET_WARNING_RATIO: float = 0.8
    DAILY_BUDGETS: dict[str, int] = {}           # per-queue ceiling overrides
    QUEUE_OVERRIDES: dict[str, dict[str, float]] = {}  # per-queue attempts/backoff_delay/timeout

    # ── Recovery ────────────────────────────────────────────────
    STUCK_PENDING_TIMEOUT_MINUTES: int = 30
    STUCK_RUNNING_TIMEOUT_MINUTES: int = 60
    MAX_STUCK_RETRIES: int = 3

    # ── Maintenance loop (seconds) ──────────────────────────────
    STUCK_SWEEP_INTERVAL: float = 300.0
    ERROR_PATTERN_INTERVAL: float = 900.0
    MAINTENANCE_CLEANUP_INTERVAL: float = 86400.0
    ERROR_RETENTION_DAYS: int = 30

    # ── App ─────────────────────────────────────────────────────
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    @property
    def database_url(self) -> str:
        """Async connection string for FastAPI (uses asyncpg driver)."""
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def sync_database_url(self) -> str:
        """Sync connection string for workers and services (uses psycopg2 driver)."""
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_URL:
            return self.REDIS_URL
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton — import this everywhere
settings = Settings()
