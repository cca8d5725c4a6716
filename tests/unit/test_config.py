"""Tests for engine settings."""

from pydantic import ValidationError
import pytest

from launchpad.config import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LAUNCHPAD_MAX_CONCURRENT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.max_concurrent == 1
        assert settings.base_port == 4000  # noqa: PLR2004
        assert settings.build_timeout == 1200  # noqa: PLR2004
        assert settings.skip_tests is False
        assert settings.port_backend == "file"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LAUNCHPAD_MAX_CONCURRENT", "3")
        monkeypatch.setenv("LAUNCHPAD_SKIP_TESTS", "true")
        monkeypatch.setenv("LAUNCHPAD_PORT_BACKEND", "redis")

        settings = Settings(_env_file=None)

        assert settings.max_concurrent == 3  # noqa: PLR2004
        assert settings.skip_tests is True
        assert settings.port_backend == "redis"

    def test_log_level_is_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="chatty")

    def test_zero_capacity_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_concurrent=0)

    def test_topic_uses_stream_prefix(self):
        settings = Settings(_env_file=None, stream_prefix="lp")

        assert settings.topic("deployments") == "lp:deployments"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
