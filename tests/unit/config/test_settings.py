"""
Tests for configuration loading.
"""

import pytest
from pydantic import ValidationError

from ingestflow.config import Settings, get_settings, reset_settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.chunk_size == 1000
    assert settings.lock_ttl_seconds == 30
    assert settings.row_worker_concurrency == 3
    assert settings.row_rate_limit == "10/s"
    assert settings.max_retries == 3
    assert settings.broker_url == settings.redis_url


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CHUNK_SIZE", "250")
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker:6379/1")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.chunk_size == 250
    assert settings.broker_url == "redis://broker:6379/1"
    assert settings.log_level == "DEBUG"


def test_chunk_size_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, chunk_size=0)


def test_heartbeat_must_be_shorter_than_ttl():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, lock_ttl_seconds=10, lock_heartbeat_seconds=10)


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("CHUNK_SIZE", "10")
    reset_settings()
    try:
        assert get_settings().chunk_size == 10
    finally:
        reset_settings()
