import pytest

from ..config import Settings


def test_defaults():
    settings = Settings.from_env({})
    assert settings.cache_default_ttl_seconds == 600
    assert settings.cache_cleanup_interval_seconds == 300
    assert settings.csr_statement_timeout_ms == 180000
    assert settings.cors_origins == ["http://localhost:5173"]
    assert settings.port == 3001


def test_values_from_environment():
    settings = Settings.from_env({
        "DATABASE_URL": "postgresql+psycopg2://report:secret@db:5432/cfe",
        "CORS_ORIGINS": "https://metrics.example.com, http://localhost:5173",
        "CACHE_DEFAULT_TTL_SECONDS": "120",
        "CACHE_CLEANUP_INTERVAL_SECONDS": "60",
        "LOG_LEVEL": "DEBUG",
    })
    assert settings.database_url.endswith("@db:5432/cfe")
    assert settings.cors_origins == ["https://metrics.example.com", "http://localhost:5173"]
    assert settings.cache_default_ttl_seconds == 120
    assert settings.cache_cleanup_interval_seconds == 60
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("name,value", [
    ("CACHE_DEFAULT_TTL_SECONDS", "ten"),
    ("CACHE_CLEANUP_INTERVAL_SECONDS", "0"),
    ("PORT", "-1"),
])
def test_invalid_numbers_rejected(name, value):
    with pytest.raises(ValueError, match=name):
        Settings.from_env({name: value})
