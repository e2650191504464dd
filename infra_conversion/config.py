"""Application configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Conversion engine
    state_retry_interval_seconds: int = 15
    job_timeout_hours: int = 36

    # Signal routing
    queue_role: str = "ems_operations"
    queue_zone: str = "default"
    worker_batch_size: int = 50

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
