"""Tests for nginx vhost management."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from launchpad.errors import CommandError, ProxyError
from launchpad.proxy import ProxyConfigurator


@pytest.fixture
def runner():
    return AsyncMock()


@pytest.fixture
def proxy(runner, settings):
    return ProxyConfigurator(runner, settings)


class TestRender:
    def test_static_block(self, proxy):
        block = proxy.render_static("app", "/srv/app/releases/abc")

        assert "server_name app.launchpad.local;" in block
        assert "root /srv/app/releases/abc;" in block
        assert "try_files $uri $uri/ /index.html;" in block
        assert 'add_header X-Frame-Options "SAMEORIGIN" always;' in block

    def test_upstream_block(self, proxy):
        block = proxy.render_upstream("api", 4001)

        assert "server_name api.launchpad.local;" in block
        assert "proxy_pass http://127.0.0.1:4001;" in block
        assert "proxy_set_header Upgrade $http_upgrade;" in block

    def test_url_for(self, proxy):
        assert proxy.url_for("app") == "http://app.launchpad.local"


class TestConfigure:
    @pytest.mark.asyncio
    async def test_writes_site_and_enables_it(self, proxy, settings):
        path = await proxy.configure_static("app", "/srv/app")

        enabled = Path(settings.nginx_sites_enabled) / "app"
        assert path == Path(settings.nginx_sites_available) / "app"
        assert "root /srv/app;" in path.read_text()
        assert enabled.is_symlink()
        assert enabled.resolve() == path.resolve()

    @pytest.mark.asyncio
    async def test_rewrite_replaces_content(self, proxy):
        await proxy.configure_static("app", "/srv/app")
        path = await proxy.configure_upstream("app", 4002)

        content = path.read_text()
        assert "proxy_pass http://127.0.0.1:4002;" in content
        assert "root /srv/app;" not in content
        assert not list(path.parent.glob(".*.tmp"))

    @pytest.mark.asyncio
    async def test_blank_reload_command_skips_reload(self, proxy, runner):
        await proxy.configure_upstream("app", 4000)

        runner.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_reload_runs_configured_command(self, runner, settings):
        proxy = ProxyConfigurator(
            runner, settings.model_copy(update={"nginx_reload_command": "nginx -s reload"})
        )

        await proxy.configure_upstream("app", 4000)

        runner.run.assert_awaited_once_with("nginx -s reload", timeout=60)

    @pytest.mark.asyncio
    async def test_reload_failure_raises_proxy_error(self, runner, settings):
        runner.run.side_effect = CommandError(
            "nginx -t", "Command failed with exit code 1", exit_code=1, stderr="bad config"
        )
        proxy = ProxyConfigurator(
            runner, settings.model_copy(update={"nginx_reload_command": "nginx -t"})
        )

        with pytest.raises(ProxyError, match="bad config"):
            await proxy.configure_static("app", "/srv/app")


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove_deletes_both_entries(self, proxy, settings):
        await proxy.configure_static("app", "/srv/app")

        await proxy.remove("app")

        assert not (Path(settings.nginx_sites_available) / "app").exists()
        assert not (Path(settings.nginx_sites_enabled) / "app").is_symlink()

    @pytest.mark.asyncio
    async def test_remove_missing_site_is_fine(self, proxy):
        await proxy.remove("never-deployed")
