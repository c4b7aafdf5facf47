"""Configuration settings for the suggestion lifecycle engine."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "synapse"
    db_user: str = "synapse"
    db_password: str = "synapse"
    database_url_override: str | None = None
    db_echo: bool = False

    # Redis (distributed locks)
    redis_url: str = "redis://localhost:16379/0"
    redis_locks_enabled: bool = False
    lock_timeout_seconds: int = 30

    # Version store
    compression_threshold: int = 10_000  # characters
    retention_days: int = 90
    retention_keep_latest: bool = True
    version_write_retries: int = 3

    # Confidence calibration
    calibration_max_age_days: int = 7
    default_high_threshold: float = 0.8
    default_medium_threshold: float = 0.6
    calibration_min_samples: int = 20
    calibration_min_positive_rate: float = 0.7

    # Suggestions
    auto_apply_enabled: bool = False

    # Logging
    log_level: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "SYNAPSE_"
        env_file = ".env"
