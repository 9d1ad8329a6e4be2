"""Tests for environment-driven settings."""

import pytest

from deals_assistant.config import CorsSettings, Environment, Settings


class TestSettings:
    """Test parsing of the top-level settings."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("production", Environment.PRODUCTION),
            (" Staging ", Environment.STAGING),
            ("qa", Environment.DEVELOPMENT),
        ],
    )
    def test_environment_parsing(self, monkeypatch, raw, expected):
        monkeypatch.setenv("ENVIRONMENT", raw)
        assert Settings().environment == expected

    def test_log_level_is_normalized(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert Settings().log_level == "DEBUG"

    def test_unknown_log_level_rejected(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        with pytest.raises(ValueError):
            Settings()

    def test_production_requires_service_key(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
        with pytest.raises(ValueError, match="SUPABASE_SERVICE_ROLE_KEY"):
            Settings().validate_production_settings()

    def test_rate_limit_aliases(self, monkeypatch):
        monkeypatch.setenv("AI_RATE_LIMIT_GUEST_MIN", "3")
        assert Settings().rate_limit.guest_per_minute == 3


class TestCorsSettings:
    """Test comma-separated CORS lists."""

    def test_comma_separated_origins(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "https://deals.example, https://admin.deals.example,")
        assert CorsSettings().origins == ["https://deals.example", "https://admin.deals.example"]

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CORS_ORIGINS", raising=False)
        cors = CorsSettings()
        assert cors.origins == ["http://localhost:3000"]
        assert {"POST", "DELETE"} <= set(cors.allow_methods)
