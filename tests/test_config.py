import pytest

from authcore.config import AppEnv, Settings, get_settings, reset_settings_cache

SECRET = "x" * 40


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret=SECRET)
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.login_user_ip_max_attempts == 5
        assert settings.login_block_seconds == 900
        assert settings.cache_lock_max_attempts == 20
        assert settings.cache_lock_retry_interval_ms == 100
        assert not settings.is_production

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            Settings(jwt_secret="too-short")

    def test_secret_required_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(test_mode=False, app_env="production")

    def test_ephemeral_secret_in_test_mode(self):
        settings = Settings(test_mode=True)
        assert settings.jwt_secret and len(settings.jwt_secret) >= 32

    def test_api_key_parts_cannot_contain_separator(self):
        with pytest.raises(ValueError):
            Settings(jwt_secret=SECRET, api_key_prefix="my_prefix")

    def test_app_env_normalized(self):
        assert Settings(jwt_secret=SECRET, app_env=" Production ").app_env == AppEnv.PRODUCTION


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("API_KEY_PREFIX", "acme")

        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.api_key_prefix == "acme"

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("LOGIN_BLOCK_SECONDS", raising=False)
        (tmp_path / ".env").write_text("LOGIN_BLOCK_SECONDS=60\n")

        assert Settings.from_env().login_block_seconds == 60

    def test_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "3")
        reset_settings_cache()
        assert get_settings().refresh_token_ttl_days == 3
        reset_settings_cache()
