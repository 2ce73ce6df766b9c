from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage
    DATABASE_URL: str = "postgresql://localhost:5432/availability"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Magic link tokens
    MAGIC_TOKEN_SECRET: str | None = None
    MAGIC_TOKEN_ISSUER: str = "availability-consensus"
    MAGIC_TOKEN_AUDIENCE: str = "availability-form"
    MAGIC_TOKEN_EXPIRY_HOURS: int = 24
    MAGIC_TOKEN_GRACE_MINUTES: int = 5
    MAGIC_TOKEN_CLOCK_TOLERANCE_SECONDS: int = 30
    REMINDER_TOKEN_EXPIRY_HOURS: int = 168

    # Consensus / scheduling
    DEFAULT_MIN_PARTICIPANTS: int = 2
    TENTATIVE_HOLD_LIMIT: int = 3
    REMINDER_MIN_DELAY_SECONDS: int = 300
    MAX_REMINDERS_PER_USER: int = 2
    REMINDER_COOLDOWN_HOURS: int = 12

    # Google Calendar OAuth
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None

    # Transactional email
    EMAIL_API_KEY: str | None = None
    EMAIL_FROM_ADDRESS: str = "Game Night <noreply@example.com>"
    FRONTEND_URL: str = "http://localhost:3000"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour
    DB_STATEMENT_TIMEOUT: str = "30s"
    # Bounds how long a stalled request can sit on a prompt or suggestion lock
    DB_IDLE_IN_TRANSACTION_TIMEOUT: str = "15s"

    # Background worker
    WORKER_MAX_JOBS: int = 10
    WORKER_JOB_TIMEOUT: int = 300
    WORKER_KEEP_RESULT: int = 3600

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def magic_token_secret(self) -> str:
        """Signing secret for magic links; required once tokens are issued or checked."""
        if not self.MAGIC_TOKEN_SECRET:
            raise RuntimeError("MAGIC_TOKEN_SECRET is not configured")
        return self.MAGIC_TOKEN_SECRET

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
