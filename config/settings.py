"""
Account Identity Service Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Storage (use IDENTITY_ prefix)
    db_path: Path = Field(
        default=Path("./data/identity.db"),
        alias="IDENTITY_DB_PATH",
        description="SQLite database holding the account graph and sync state"
    )

    # Server
    port: int = Field(default=8000, alias="IDENTITY_PORT")
    host: str = Field(default="0.0.0.0", alias="IDENTITY_HOST")

    # Sync engine
    sync_time_budget_seconds: int = Field(
        default=300,
        alias="IDENTITY_SYNC_TIME_BUDGET",
        description="Max wall-clock seconds a single integration may spend per sync cycle"
    )
    crm_poll_interval_seconds: int = Field(
        default=900,  # 15 minutes
        alias="IDENTITY_CRM_POLL_INTERVAL",
        description="Interval between unified-API CRM polling cycles"
    )
    scheduler_enabled: bool = Field(
        default=True,
        alias="IDENTITY_SCHEDULER_ENABLED",
        description="Start the background sync scheduler with the API server"
    )

    # Downstream processing queue
    enqueue_max_attempts: int = Field(default=3, alias="IDENTITY_ENQUEUE_MAX_ATTEMPTS")
    enqueue_base_delay_ms: int = Field(default=250, alias="IDENTITY_ENQUEUE_BASE_DELAY_MS")

    # Unified API (recording + CRM aggregator)
    unified_api_base_url: str = Field(
        default="https://api.merge.dev/api",
        alias="UNIFIED_API_BASE_URL"
    )
    unified_api_key: str = Field(default="", alias="UNIFIED_API_KEY")
    unified_api_page_size: int = Field(default=100, alias="UNIFIED_API_PAGE_SIZE")
    unified_api_timeout: float = Field(default=30.0, alias="UNIFIED_API_TIMEOUT")

    @property
    def unified_api_enabled(self) -> bool:
        """Check if the unified API is configured."""
        return bool(self.unified_api_key)


settings = Settings()
