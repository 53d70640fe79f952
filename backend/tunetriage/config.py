"""
Configuration Module

This module handles loading and validating environment variables using Pydantic Settings.
All application configuration is centralized here for easy management and type safety.

Classes:
    Settings: Main configuration class that loads all environment variables

Usage:
    from tunetriage.config import settings

    page_size = settings.liked_songs_page_size
    api_url = settings.backend_url
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal, Optional
from pathlib import Path

# Only use Docker secrets directory if it exists to avoid noisy warnings in self-hosted setups
_secrets_dir = Path("/run/secrets")
_secrets_dir_str = str(_secrets_dir) if _secrets_dir.is_dir() else None


class Settings(BaseSettings):
    """
    Application Settings

    Loads configuration from environment variables with validation.
    Uses Pydantic for type checking and automatic parsing.

    Attributes:
        environment: Current environment (development/production/testing)
        backend_host: Host to bind the backend server
        backend_port: Port to bind the backend server
        frontend_url: Frontend URL for CORS configuration
        log_level: Logging level
        liked_songs_page_size: Page size for saved-tracks requests (Spotify max is 50)
        liked_songs_max_age_hours: Cache age after which a full resync is forced
        liked_songs_removal_batch_size: Track IDs checked per "is saved" request
        liked_songs_removal_max_batches: Batches scanned before giving up on a removal sweep
        liked_songs_lease_seconds: Lifetime of a sync lease before it can be reclaimed
        spotify_retry_*: Optional overrides for the retry presets
    """

    # Application Configuration
    environment: Literal["development", "production", "testing"] = "development"

    # Server Configuration
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000

    # Frontend Configuration
    frontend_url: str = "http://localhost:5173"
    frontend_allowed_origins: str | None = None

    # Logging Configuration
    log_level: str = "INFO"
    log_timezone: str = "Australia/Adelaide"
    log_dir: str = "/data/logs"
    log_file_enabled: bool = True

    # Liked songs cache
    liked_songs_page_size: int = 50
    liked_songs_max_age_hours: int = 24
    liked_songs_removal_batch_size: int = 50
    liked_songs_removal_max_batches: int = 4
    liked_songs_lease_seconds: int = 900

    # Retry overrides (unset means use the built-in presets)
    spotify_retry_max_retries: Optional[int] = None
    spotify_retry_initial_delay_ms: Optional[int] = None
    spotify_retry_max_delay_ms: Optional[int] = None
    spotify_retry_backoff_multiplier: Optional[float] = None

    model_config = SettingsConfigDict(
        env_file="../.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        secrets_dir=_secrets_dir_str,
        extra="ignore"
    )

    @property
    def backend_url(self) -> str:
        """
        Construct the full backend URL

        Returns:
            str: Full backend URL (e.g., http://localhost:8000)
        """
        return f"http://{self.backend_host}:{self.backend_port}"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def allowed_origins(self) -> list[str]:
        """
        Allowed origins for CORS.

        Returns:
            list[str]: Origins parsed from frontend_allowed_origins or frontend_url.
        """
        if self.frontend_allowed_origins:
            return [o.strip() for o in self.frontend_allowed_origins.split(",") if o.strip()]
        return [self.frontend_url]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance

    Uses lru_cache to ensure settings are loaded only once and cached.
    This is the recommended way to access settings throughout the application.

    Returns:
        Settings: Cached settings instance
    """
    return Settings()


# Global settings instance for convenience
settings = get_settings()
