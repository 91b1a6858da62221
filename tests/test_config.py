import pytest
from pydantic import ValidationError

from framegate.config import SessionBackend, Settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    return tmp_path


class TestSecrets:
    def test_generated_secrets_are_persisted(self, clean_env):
        first = Settings.from_env()
        second = Settings.from_env()
        assert first.jwt_access_secret == second.jwt_access_secret
        assert first.jwt_access_secret != first.jwt_refresh_secret
        assert (clean_env / ".jwt_access_secret").exists()
        assert (clean_env / ".jwt_refresh_secret").exists()

    def test_identical_secrets_rejected(self, monkeypatch):
        shared = "s" * 40
        monkeypatch.setenv("JWT_ACCESS_SECRET", shared)
        monkeypatch.setenv("JWT_REFRESH_SECRET", shared)
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_short_secrets_rejected_outside_test_mode(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("JWT_ACCESS_SECRET", "short-a")
        monkeypatch.setenv("JWT_REFRESH_SECRET", "short-r")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_production_needs_full_hash_cost(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("PASSWORD_HASH_ROUNDS", "4")
        with pytest.raises(ValidationError):
            Settings.from_env()


class TestParsing:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("LOCKOUT_MINUTES", "15")
        monkeypatch.setenv("MAX_REFRESH_TOKENS_PER_USER", "2")
        settings = Settings.from_env()
        assert settings.max_login_attempts == 3
        assert settings.lockout_minutes == 15
        assert settings.max_refresh_tokens_per_user == 2

    def test_role_multipliers(self, monkeypatch):
        monkeypatch.setenv("ROLE_RATE_MULTIPLIERS", "Admin=3, viewer=0.25")
        settings = Settings.from_env()
        assert settings.role_rate_multipliers == {"admin": 3.0, "viewer": 0.25}

    def test_bad_multiplier_entry(self, monkeypatch):
        monkeypatch.setenv("ROLE_RATE_MULTIPLIERS", "admin")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_cors_origins_split(self, monkeypatch):
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        settings = Settings.from_env()
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_blank_redis_url_means_none(self, settings):
        assert settings.redis_url is None

    def test_session_backend(self, monkeypatch):
        monkeypatch.setenv("SESSION_BACKEND", "redis")
        assert Settings.from_env().session_backend is SessionBackend.REDIS
        monkeypatch.setenv("SESSION_BACKEND", "mongo")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_lockout_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()


class TestCookies:
    def test_secure_follows_test_mode(self, settings):
        assert settings.secure_cookies is False
        assert settings.model_copy(update={"test_mode": False}).secure_cookies is True

    def test_explicit_override(self, settings):
        assert settings.model_copy(update={"cookie_secure": True}).secure_cookies is True
