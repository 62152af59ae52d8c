"""
Contact Dedup Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Storage (use CRM_ prefix)
    db_path: Path = Field(
        default=Path("./data/crm.db"),
        alias="CRM_DB_PATH",
        description="SQLite database holding people and their dependent records"
    )
    db_timeout: float = Field(
        default=5.0,
        alias="CRM_DB_TIMEOUT",
        description="Seconds to wait for the database write lock before giving up"
    )

    # Retries for transient store failures (scan only - merges are retried by the caller)
    store_max_retries: int = Field(default=2, alias="CRM_STORE_MAX_RETRIES")
    store_retry_delay: float = Field(default=0.5, alias="CRM_STORE_RETRY_DELAY")  # seconds

    # Server
    port: int = Field(default=8000, alias="CRM_PORT")
    host: str = Field(default="0.0.0.0", alias="CRM_HOST")

    # Logging
    log_level: str = Field(
        default="INFO",
        alias="CRM_LOG_LEVEL",
        description="Root log level for scripts and the API server"
    )

    @property
    def db_dir(self) -> Path:
        """Directory containing the database file."""
        return Path(self.db_path).parent


settings = Settings()
