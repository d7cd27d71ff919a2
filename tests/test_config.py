"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    # Clear the lru_cache so we get a fresh Settings instance
    from adsync.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.rate_limit_burst == 10
        assert settings.rate_limit_refill_per_sec == 2.0
        assert settings.push_window_minutes == 5
        get_settings.cache_clear()


def test_plain_postgres_url_gets_asyncpg_driver():
    from adsync.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host/ads")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host/ads"


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from adsync.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_production_rejects_missing_api_key():
    """Production mode should refuse to start without an operator key."""
    from adsync.config import get_settings, Settings
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            api_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )
    get_settings.cache_clear()


def test_production_rejects_missing_encryption_key():
    from adsync.config import Settings

    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            api_key="a-real-operator-key",
            encryption_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_full_settings():
    """Production mode should accept a complete configuration."""
    from adsync.config import Settings
    settings = Settings(
        environment="production",
        api_key="a-real-operator-key",
        encryption_key="a-real-fernet-key",
        amazon_client_id="amzn1.application-oa2-client.x",
        amazon_client_secret="secret",
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True
    assert settings.api_key == "a-real-operator-key"
