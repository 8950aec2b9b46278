"""Configuration Tests."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from conductor_config.settings import Settings


def test_settings_load_defaults():
    """Test settings load with defaults."""
    settings = Settings(_env_file=None)
    assert settings.QUERY_TIMEOUT == 30.0
    assert settings.PROTOCOL_RETRY_ATTEMPTS == 3
    assert settings.DISCOVERY_MAX_CONCURRENCY == 5
    assert settings.DISCOVERY_CACHE_TIMEOUT == 3600.0
    assert settings.CREDENTIAL_CLEANUP_DAYS == 30
    assert settings.KEY_DERIVATION_ROUNDS == 100_000


def test_settings_default_async_driver():
    """Test DATABASE_URL defaults to an async driver."""
    settings = Settings(_env_file=None)
    assert settings.DATABASE_URL.startswith("sqlite+aiosqlite://")


def test_credential_key_path_defaults_to_data_dir(tmp_path):
    settings = Settings(_env_file=None, DATA_DIR=str(tmp_path))
    assert settings.credential_key_path == tmp_path / "master.key"


def test_credential_key_path_override(tmp_path):
    settings = Settings(_env_file=None, CREDENTIAL_KEY_PATH=str(tmp_path / "k" / "key.bin"))
    assert settings.credential_key_path == Path(tmp_path / "k" / "key.bin")


def test_environment_override(monkeypatch):
    """Test environment variables take precedence over defaults."""
    monkeypatch.setenv("QUERY_TIMEOUT", "12.5")
    monkeypatch.setenv("discovery_max_concurrency", "2")

    settings = Settings(_env_file=None)

    assert settings.QUERY_TIMEOUT == 12.5
    assert settings.DISCOVERY_MAX_CONCURRENCY == 2


def test_settings_rejects_invalid_values():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LOG_LEVEL="VERBOSE")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, KEY_DERIVATION_ROUNDS=10)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, DISCOVERY_MAX_CONCURRENCY=0)
