"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")
    db_encryption_key: Optional[str] = Field(
        None,
        description="Fernet key used to encrypt stored IMAP/SMTP passwords"
    )

    # ============================================================
    # Gmail / Google OAuth (token refresh only, no authorization flow)
    # ============================================================
    google_client_id: Optional[str] = Field(None, description="OAuth client ID used to refresh Gmail tokens")
    google_client_secret: Optional[str] = Field(None, description="OAuth client secret")
    google_token_uri: str = Field(
        "https://oauth2.googleapis.com/token",
        description="OAuth token endpoint"
    )
    gmail_timeout: int = Field(10, description="Gmail API socket timeout in seconds")

    # ============================================================
    # IMAP / SMTP
    # ============================================================
    imap_timeout: int = Field(10, description="IMAP connect/auth timeout in seconds")
    smtp_timeout: int = Field(10, description="SMTP connect/auth timeout in seconds")
    imap_trash_folder: str = Field("Trash", description="Folder used by trash() on IMAP accounts")

    # ============================================================
    # Sync Configuration
    # ============================================================
    initial_sync_batch: int = Field(100, description="Messages fetched by the destructive initial sync")
    default_page_size: int = Field(20, description="Default page size for message listings")
    max_page_size: int = Field(100, description="Largest accepted page size")

    # ============================================================
    # Snooze Configuration
    # ============================================================
    snooze_check_interval: int = Field(60, description="Seconds between snooze wake-up sweeps")
    snooze_scheduler_enabled: bool = Field(True, description="Start the background snooze scheduler")

    # ============================================================
    # Search Configuration
    # ============================================================
    fuzzy_threshold: float = Field(0.1, description="Trigram threshold for the combined search")
    field_fuzzy_threshold: float = Field(0.3, description="Trigram threshold for single-field search")
    semantic_top_k: int = Field(20, description="Top-K results kept by the semantic pass")

    # ============================================================
    # LLM / Embedding Configuration
    # ============================================================
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    embedding_model: str = Field("text-embedding-3-small", description="OpenAI embedding model")
    summary_model: str = Field("gpt-4o-mini", description="OpenAI model for message summaries")
    summary_temperature: float = Field(0.3, description="Temperature for summaries (0-1)")
    embedding_batch_size: int = Field(16, description="Messages embedded per account per indexer sweep")
    embedding_index_interval: int = Field(60, description="Seconds between background indexer sweeps")
    embedding_indexer_enabled: bool = Field(True, description="Start the background embedding indexer")

    # ============================================================
    # API Configuration
    # ============================================================
    api_key: Optional[str] = Field(None, description="API key for authentication")
    allowed_origins: str = Field(
        "http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS allowed origins"
    )
    api_port: int = Field(8000, description="API server port")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def normalized_database_url(self) -> str:
        """Database URL with the postgres:// scheme rewritten for SQLAlchemy."""
        if self.database_url.startswith('postgres://'):
            return self.database_url.replace('postgres://', 'postgresql://', 1)
        return self.database_url


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
