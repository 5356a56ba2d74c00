"""Configuration management for Notesync."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NOTESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote note store
    api_url: str = Field(
        default="http://localhost:3000/api",
        description="Base URL of the hosted notes API",
    )
    api_token: str = Field(
        default="",
        description="Bearer token for the notes API",
    )
    api_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for a single API request",
    )
    api_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per API request on transport failures",
    )

    # Connectivity
    probe_url: str = Field(
        default="http://localhost:3000/api/health",
        description="URL probed to verify network reachability",
    )
    probe_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout in seconds for a connectivity probe",
    )
    connectivity_check_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between periodic connectivity probes",
    )
    connectivity_debounce: float = Field(
        default=1.0,
        ge=0,
        description="Seconds a connectivity change must persist before it is reported",
    )

    # Sync
    sync_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between periodic sync cycles while online",
    )
    retry_base_delay: float = Field(
        default=1.0,
        gt=0,
        description="Base delay in seconds for sync retry backoff",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Automatic sync retries before manual retry is required",
    )

    # Hierarchy
    max_hierarchy_depth: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum number of levels in the note hierarchy",
    )

    # Local cache
    database_path: Path = Field(
        default=Path("data/notesync.db"),
        description="Path to the SQLite file backing the local cache",
    )

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"sqlite:///{self.database_path}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
