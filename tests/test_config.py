import pytest
from pydantic import ValidationError

from pilotlog.config import Settings, get_settings, reset_settings_cache


class TestSettingsDefaults:
    def test_defaults(self):
        settings = Settings()
        assert settings.session_cookie_name == "auth_session"
        assert settings.session_ttl_minutes == 30 * 24 * 60
        assert settings.login_rate_limit == 5
        assert settings.rate_limit_window_seconds == 900
        assert settings.cookie_secure is True

    def test_insecure_cookie_override(self):
        assert Settings(allow_insecure_cookies=True).cookie_secure is False

    def test_blank_urls_are_none(self):
        settings = Settings(redis_url="  ", app_base_url="", approver_email=" ")
        assert settings.redis_url is None
        assert settings.app_base_url is None
        assert settings.approver_email is None

    @pytest.mark.parametrize("field", ["login_rate_limit", "rate_limit_window_seconds", "session_ttl_minutes"])
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    @pytest.mark.parametrize("name", ["", "bad name", "a;b"])
    def test_invalid_cookie_name_rejected(self, name):
        with pytest.raises(ValidationError):
            Settings(session_cookie_name=name)


class TestSettingsFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "7")
        monkeypatch.setenv("APP_BASE_URL", "https://logbook.example.com")
        monkeypatch.setenv("FORCE_HTTPS", "true")
        settings = Settings.from_env()
        assert settings.login_rate_limit == 7
        assert settings.app_base_url == "https://logbook.example.com"
        assert settings.force_https is True

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("SESSION_COOKIE_NAME", "logbook_session")
        reset_settings_cache()
        assert get_settings().session_cookie_name == "logbook_session"
        reset_settings_cache()
