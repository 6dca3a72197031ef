"""Configuration management for pageforge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PAGEFORGE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PAGEFORGE_* prefix)
2. .env file in the project root
3. Default values defined in PageforgeConfig

Example .env file:
    PAGEFORGE_BACKEND=gemini
    PAGEFORGE_GEMINI_API_KEY=...
    PAGEFORGE_CACHE_MAX_BYTES=524288000
    PAGEFORGE_DATA_DIR=data

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Only *settings* are global: stores, caches and backends are built from it
once at application startup and passed around explicitly (see
:mod:`pageforge.api.main`).

Usage Example
-------------
    from pageforge.core.config import config

    print(config.backend)
    print(config.cache_db_path)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: SQLite databases (artifact cache, project records)
- storage_dir: Uploaded page images (local object storage)
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PageforgeConfig(BaseSettings):
    """Main configuration for pageforge.

    Values are loaded from environment variables with the PAGEFORGE_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Generation Backend:
        backend : Literal["placeholder", "gemini"]
            Which generation backend to instantiate at startup
        gemini_api_key : str | None
            Credential for the Gemini backend (missing key = configuration error)
        gemini_image_model : str
            Model used for page generation
        gemini_text_model : str
            Model used for prompt enhancement
        gemini_base_url : str
            Generative Language REST endpoint root
        request_timeout_s : float
            Per-request HTTP timeout

    Pipeline Settings:
        enable_enhancement : bool
            Run the optional prompt enhancement step
        max_attempts : int
            Attempts per page when the backend reports a transient failure
        retry_delay_s : float
            Initial delay between attempts (doubles each retry)

    Batch Settings:
        quality_threshold : float
            Minimum score for a page to become the session reference
        default_concurrency : int
            Pages in flight at once (1 = strict sequential)
        delay_between_items : float
            Courtesy delay (seconds) between pages or chunks

    Cache & Storage:
        data_dir : Path
            Directory for SQLite databases
        storage_dir : Path
            Root of the local object storage
        cache_max_bytes : int
            LRU cap of the artifact cache
        cache_low_water_ratio : float
            Fraction of the cap eviction shrinks the cache down to

    Server Settings:
        server_host : str
        server_port : int
        log_level : str

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PAGEFORGE_",
        case_sensitive=False,
    )

    # Generation backend
    backend: Literal["placeholder", "gemini"] = Field(
        default="placeholder",
        description="Generation backend to use (placeholder for offline, gemini for remote)",
    )
    gemini_api_key: str | None = Field(
        default=None,
        description="API key for the Gemini backend",
    )
    gemini_image_model: str = Field(
        default="gemini-3-pro-image-preview",
        description="Gemini model used for image generation",
    )
    gemini_text_model: str = Field(
        default="gemini-2.0-flash",
        description="Gemini model used for prompt enhancement",
    )
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Generative Language API root URL",
    )
    request_timeout_s: float = Field(default=120.0, gt=0)

    # Pipeline settings
    enable_enhancement: bool = Field(
        default=True,
        description="Rewrite prompts with the enhancer before generating",
    )
    max_attempts: int = Field(
        default=1,
        ge=1,
        le=5,
        description="Attempts per page for retryable backend failures",
    )
    retry_delay_s: float = Field(default=2.0, ge=0)

    # Batch settings
    quality_threshold: float = Field(
        default=85.0,
        ge=0,
        le=100,
        description="Minimum quality score for the session reference image",
    )
    default_concurrency: int = Field(default=1, ge=1, le=16)
    delay_between_items: float = Field(
        default=1.0,
        ge=0,
        description="Delay in seconds between pages (sequential) or chunks (concurrent)",
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for SQLite databases",
    )
    storage_dir: Path = Field(
        default=Path("storage"),
        description="Root directory of the local object storage",
    )

    # Cache
    cache_max_bytes: int = Field(
        default=500 * 1024 * 1024,
        gt=0,
        description="Maximum total size of the artifact cache",
    )
    cache_low_water_ratio: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Eviction shrinks the cache to this fraction of the cap",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: str = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    @property
    def cache_db_path(self) -> Path:
        """SQLite file backing the artifact cache."""
        return self.data_dir / "artifact_cache.db"

    @property
    def records_db_path(self) -> Path:
        """SQLite file holding project and image records."""
        return self.data_dir / "projects.db"


# Global configuration instance
# Loads values from environment variables (PAGEFORGE_* prefix) and .env file.
config = PageforgeConfig()
