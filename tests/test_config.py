import pytest
from pydantic import ValidationError

from korella.config import Settings, get_settings, reset_settings_cache


class TestSettingsValidation:
    def test_defaults_match_security_policy(self):
        settings = Settings(jwt_secret="x" * 40)
        assert settings.session_ttl_days == 3
        assert settings.extended_session_ttl_days == 30
        assert settings.max_failed_login_attempts == 5
        assert settings.lockout_duration_minutes == 30
        assert settings.email_verification_ttl_hours == 24
        assert settings.password_reset_ttl_hours == 1
        assert settings.trial_period_days == 14
        assert settings.reset_rate_limit_per_hour == 3

    @pytest.mark.parametrize("field", ["session_ttl_days", "trial_period_days"])
    def test_non_positive_durations_are_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, **{field: 0})

    def test_extended_session_cannot_be_shorter(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, session_ttl_days=10, extended_session_ttl_days=5)

    def test_cors_origins_split_from_string(self):
        settings = Settings(
            jwt_secret="x" * 40,
            cors_allow_origins="https://app.korella.io, https://admin.korella.io,",
        )
        assert settings.cors_allow_origins == [
            "https://app.korella.io",
            "https://admin.korella.io",
        ]


class TestJwtSecret:
    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        first = Settings(jwt_secret=None).jwt_secret
        second = Settings(jwt_secret=None).jwt_secret
        assert first == second
        assert len(first) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first

    def test_short_persisted_secret_is_replaced(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        (tmp_path / ".jwt_secret").write_text("short")
        secret = Settings(jwt_secret=None).jwt_secret
        assert secret != "short"
        assert (tmp_path / ".jwt_secret").read_text() == secret


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("LOCKOUT_DURATION_MINUTES", "45")
        monkeypatch.setenv("SESSION_COOKIE_SECURE", "false")
        settings = Settings.from_env()
        assert settings.lockout_duration_minutes == 45
        assert settings.session_cookie_secure is False

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("APP_BASE_URL", raising=False)
        (tmp_path / ".env").write_text("APP_BASE_URL=https://crm.example.com\n")
        assert Settings.from_env().app_base_url == "https://crm.example.com"

    def test_process_env_wins_over_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("TRIAL_PERIOD_DAYS=30\n")
        monkeypatch.setenv("TRIAL_PERIOD_DAYS", "7")
        assert Settings.from_env().trial_period_days == 7

    def test_get_settings_is_cached_until_reset(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        reset_settings_cache()
        try:
            first = get_settings()
            assert get_settings() is first
            reset_settings_cache()
            assert get_settings() is not first
        finally:
            reset_settings_cache()
