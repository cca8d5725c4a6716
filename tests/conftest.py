"""Shared fixtures for launchpad tests."""

from fakeredis import FakeAsyncRedis
import pytest
import structlog

from launchpad.config import Settings


@pytest.fixture
def settings(tmp_path):
    """Settings with every path under tmp_path and nginx reload disabled."""
    return Settings(
        _env_file=None,
        work_dir=str(tmp_path / "builds"),
        projects_dir=str(tmp_path / "projects"),
        port_map_file=str(tmp_path / "port-map.json"),
        nginx_sites_available=str(tmp_path / "nginx" / "sites-available"),
        nginx_sites_enabled=str(tmp_path / "nginx" / "sites-enabled"),
        nginx_reload_command="",
        kill_grace_period=1.0,
        health_check_interval=0.0,
        health_check_attempts=3,
        health_check_timeout=1.0,
    )


@pytest.fixture
def fake_redis():
    return FakeAsyncRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def clear_log_context():
    """Keep bound contextvars from leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
