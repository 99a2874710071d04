"""
Tests for configuration loading.
"""

import pytest

from core.config import Settings, get_settings, load_settings, reset_settings
from core.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Make sure no TABLEMASTER_* variables from the shell leak in."""
    for name in ("TABLEMASTER_JWT_SECRET", "TABLEMASTER_BREVO_API_KEY", "TABLEMASTER_EMAIL_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    yield
    reset_settings()


class TestLoadSettings:
    """Tests for fail-closed configuration."""

    def test_missing_secret_is_fatal(self):
        """Test that the service refuses to start without a signing secret."""
        with pytest.raises(ConfigurationError):
            load_settings(email_enabled=False, push_enabled=False)

    def test_email_without_key_is_fatal(self):
        """Test that enabling email without a provider key is rejected."""
        with pytest.raises(ConfigurationError):
            load_settings(jwt_secret="s", push_enabled=False)

    def test_push_without_vapid_keys_is_fatal(self):
        """Test that enabling push without VAPID keys is rejected."""
        with pytest.raises(ConfigurationError):
            load_settings(jwt_secret="s", email_enabled=False)

    def test_disabled_channels_need_no_credentials(self):
        """Test a minimal valid configuration."""
        settings = load_settings(jwt_secret="s", email_enabled=False, push_enabled=False)

        assert settings.jwt_secret.get_secret_value() == "s"
        assert settings.password_reset_ttl_hours == 24
        assert settings.reservation_cancel_ttl_hours == 48
        assert settings.email_max_retries == 3

    def test_reads_environment(self, monkeypatch):
        """Test that TABLEMASTER_* variables are picked up."""
        monkeypatch.setenv("TABLEMASTER_JWT_SECRET", "from-env")
        monkeypatch.setenv("TABLEMASTER_EMAIL_ENABLED", "false")

        settings = Settings(push_enabled=False)

        assert settings.jwt_secret.get_secret_value() == "from-env"
        assert settings.email_enabled is False


class TestSettingsSingleton:
    """Tests for the settings singleton."""

    def test_reset_settings_installs_instance(self):
        """Test that tests can install their own settings."""
        custom = load_settings(jwt_secret="s", email_enabled=False, push_enabled=False)
        reset_settings(custom)
        assert get_settings() is custom
