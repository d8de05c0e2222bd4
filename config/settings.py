"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: str = Field(
        ...,
        description="Supabase project URL"
    )
    supabase_key: str = Field(
        ...,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key (for admin operations)"
    )

    # ===================
    # UPLOADS & IMAGE STAGING
    # ===================
    upload_root: str = Field(
        default="./uploads",
        description="Root directory served as /uploads"
    )
    image_storage_path: str = Field(
        default="./uploads/imported-images",
        description="Directory where item thumbnails are staged"
    )
    max_upload_mb: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum order export upload size in MB"
    )
    image_download_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for a single thumbnail download"
    )
    stage_images: bool = Field(
        default=True,
        description="Stage item thumbnails locally during preview"
    )
    image_staging_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="Budget for staging all thumbnails of one preview; the rest stay remote"
    )

    # ===================
    # IMPORT LIMITS
    # ===================
    parse_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=3600,
        description="Ceiling for parsing one uploaded document"
    )
    commit_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=3600,
        description="Ceiling for committing one import batch"
    )
    max_import_orders: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum orders per commit request"
    )
    max_items_per_order: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Maximum items per order in a commit request"
    )
    preview_ttl_minutes: int = Field(
        default=30,
        ge=1,
        le=1440,
        description="How long a parsed preview stays retrievable by previewId"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If required env vars are missing or invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
