"""Unit tests for settings loading."""

from queue_resilience.config.settings import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("REDIS_HOST", raising=False)
        settings = Settings(_env_file=None)

        assert settings.RETRY_MAX_RETRIES == 3
        assert settings.RETRY_INITIAL_DELAY_MS == 1000
        assert settings.RETRY_MAX_DELAY_MS == 60000
        assert settings.HEALTH_FAILURE_THRESHOLD == 3
        assert settings.HEALTH_RESPONSE_TIMEOUT_MS == 5000
        assert settings.MONITORED_SERVICES == {}
        assert settings.REDIS_URL == "redis://redis:6379/0"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REDIS_HOST", "localhost")
        monkeypatch.setenv("REDIS_DB", "2")
        monkeypatch.setenv("MONITORED_SERVICES", '{"gateway": "http://gateway/health"}')

        settings = Settings(_env_file=None)

        assert settings.REDIS_URL == "redis://localhost:6379/2"
        assert settings.MONITORED_SERVICES == {"gateway": "http://gateway/health"}

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()
