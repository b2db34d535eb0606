"""Application configuration management."""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Broker
    redis_host: str = Field(default="redis")
    redis_port: int = Field(default=6379)
    queue_prefix: str = Field(default="continuum")
    queue_names: str = Field(default="system.ping")
    job_max_attempts: int = Field(default=3, ge=1)

    # Primary store
    postgres_host: str = Field(default="postgres")
    postgres_port: int = Field(default=5432)
    postgres_user: str = Field(default="continuum")
    postgres_password: str = Field(default="continuum")
    postgres_db: str = Field(default="continuum")

    # Readiness
    ready_probe_timeout_ms: int = Field(default=2000, gt=0)
    storage_health_url: Optional[str] = Field(default=None)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    log_level: str = Field(default="INFO")

    @property
    def known_queues(self) -> List[str]:
        return [name.strip() for name in self.queue_names.split(",") if name.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
