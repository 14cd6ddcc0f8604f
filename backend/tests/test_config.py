"""
Tests for application settings.
"""

from retrainer.core.config import Settings


def test_storage_path_is_created(test_settings: Settings):
    """Test the storage root is created on first use."""
    path = test_settings.get_storage_path()

    assert path == test_settings.storage_dir
    assert path.is_dir()


def test_environment_overrides(monkeypatch):
    """Test settings are read from the environment."""
    monkeypatch.setenv("MAX_CONCURRENT_TRAINING", "2")
    monkeypatch.setenv("ENABLED_VARIANTS", '["lstm", "gru"]')

    settings = Settings()

    assert settings.max_concurrent_training == 2
    assert settings.enabled_variants == ["lstm", "gru"]
