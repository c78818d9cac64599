import pytest

from streamvault.core.config import get_settings
from streamvault.core.errors import ConfigurationError


def _set_minimum_production_env(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "prod-secret-key")
    monkeypatch.setenv("DEPLOYMENT_ID", "prod-eu-1")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/streamvault")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("REMOTE_PROVIDER", "cloudflare")
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "cf-token")
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "cf-account")


def test_requires_secret_key_in_production(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("SECRET_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError) as excinfo:
        get_settings()
    assert "SECRET_KEY" in str(excinfo.value)


def test_production_requires_cloudflare_credentials(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError) as excinfo:
        get_settings()
    assert "CLOUDFLARE_ACCOUNT_ID" in str(excinfo.value)


def test_production_rejects_mock_provider(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("REMOTE_PROVIDER", "mock")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError):
        get_settings()


def test_production_settings_load_when_complete(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "production"
    assert settings.remote_provider == "cloudflare"
    assert settings.playback_token_ttl_seconds == 3600


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/streamvault.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("QUEUE_BATCH_SIZE", "12")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.secret_key == "test-secret-key"
    assert settings.database_url.endswith("streamvault.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.queue_batch_size == 12


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PLAYBACK_TOKEN_TTL_SECONDS", "60"),
        ("PLAYBACK_TOKEN_TTL_SECONDS", "90000"),
        ("AUTHZ_CACHE_TTL_SECONDS", "7200"),
        ("QUEUE_MAX_ATTEMPTS", "0"),
        ("QUEUE_BACKOFF_CAP_SECONDS", "10"),
        ("ASSET_LOCK_TTL_SECONDS", "600"),
        ("RECONCILE_REMOTE_PAGE_SIZE", "5000"),
        ("SENTRY_TRACES_SAMPLE_RATE", "1.2"),
        ("REMOTE_PROVIDER", "youtube"),
    ],
)
def test_rejects_invalid_limits(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()


def test_lock_renew_interval_must_sit_below_lock_ttl(monkeypatch) -> None:
    monkeypatch.setenv("ASSET_LOCK_TTL_SECONDS", "900")
    monkeypatch.setenv("ASSET_LOCK_RENEW_INTERVAL_SECONDS", "900")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError) as excinfo:
        get_settings()
    assert "ASSET_LOCK_RENEW_INTERVAL_SECONDS" in str(excinfo.value)
