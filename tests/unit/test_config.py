"""Tests for pageforge.core.config: configuration management.

Tests cover:
- Default values for the configuration fields.
- Environment variable overrides via the PAGEFORGE_ prefix.
- Automatic directory creation on initialisation.
- Pydantic validation constraints.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from pageforge.core.config import PageforgeConfig


def _config(temp_dir: Path, **overrides) -> PageforgeConfig:
    return PageforgeConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        storage_dir=temp_dir / "storage",
        **overrides,
    )


class TestConfigDefaults:
    """Verify that PageforgeConfig provides sensible defaults."""

    def test_default_backend_is_placeholder(self, monkeypatch, temp_dir):
        monkeypatch.delenv("PAGEFORGE_BACKEND", raising=False)
        assert _config(temp_dir).backend == "placeholder"

    def test_default_cache_limits(self, monkeypatch, temp_dir):
        monkeypatch.delenv("PAGEFORGE_CACHE_MAX_BYTES", raising=False)
        cfg = _config(temp_dir)
        assert cfg.cache_max_bytes == 500 * 1024 * 1024
        assert cfg.cache_low_water_ratio == 0.8

    def test_default_batch_settings(self, monkeypatch, temp_dir):
        for name in ("PAGEFORGE_QUALITY_THRESHOLD", "PAGEFORGE_DEFAULT_CONCURRENCY"):
            monkeypatch.delenv(name, raising=False)
        cfg = _config(temp_dir)
        assert cfg.quality_threshold == 85.0
        assert cfg.default_concurrency == 1

    def test_default_server_port(self, monkeypatch, temp_dir):
        """Default server port should be 7860."""
        monkeypatch.delenv("PAGEFORGE_SERVER_PORT", raising=False)
        assert _config(temp_dir).server_port == 7860


class TestConfigEnvironment:
    """PAGEFORGE_* environment variables override defaults."""

    def test_backend_from_env(self, monkeypatch, temp_dir):
        monkeypatch.setenv("PAGEFORGE_BACKEND", "gemini")
        monkeypatch.setenv("PAGEFORGE_GEMINI_API_KEY", "secret")
        cfg = _config(temp_dir)
        assert cfg.backend == "gemini"
        assert cfg.gemini_api_key == "secret"

    def test_numeric_from_env(self, monkeypatch, temp_dir):
        monkeypatch.setenv("PAGEFORGE_CACHE_MAX_BYTES", "1024")
        assert _config(temp_dir).cache_max_bytes == 1024


class TestConfigDirectoryCreation:
    """Verify that PageforgeConfig creates required directories."""

    def test_directories_created(self, test_config: PageforgeConfig):
        assert test_config.data_dir.is_dir()
        assert test_config.storage_dir.is_dir()

    def test_database_paths_live_in_data_dir(self, test_config: PageforgeConfig):
        assert test_config.cache_db_path.parent == test_config.data_dir
        assert test_config.records_db_path.parent == test_config.data_dir
        assert test_config.cache_db_path != test_config.records_db_path


class TestConfigValidation:
    """Pydantic constraints on configuration values."""

    def test_unknown_backend_rejected(self, temp_dir):
        with pytest.raises(ValidationError):
            _config(temp_dir, backend="dall-e")

    def test_low_water_ratio_bounds(self, temp_dir):
        with pytest.raises(ValidationError):
            _config(temp_dir, cache_low_water_ratio=1.5)

    def test_concurrency_bounds(self, temp_dir):
        with pytest.raises(ValidationError):
            _config(temp_dir, default_concurrency=0)

    def test_port_range(self, temp_dir):
        with pytest.raises(ValidationError):
            _config(temp_dir, server_port=80)
