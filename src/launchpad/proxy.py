"""Nginx virtual hosts for deployed projects."""

import os
from pathlib import Path

import structlog

from launchpad.command import CommandRunner
from launchpad.config import Settings, get_settings
from launchpad.errors import CommandError, ProxyError
from launchpad.models import validate_name

logger = structlog.get_logger()

SECURITY_HEADERS = """\
    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;
    add_header X-XSS-Protection "1; mode=block" always;
"""

STATIC_TEMPLATE = """\
server {{
    listen 80;
    server_name {domain};
    root {root};
    index index.html;

    # SPA routing
    location / {{
        try_files $uri $uri/ /index.html;
    }}

    location ~* \\.(js|css|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot)$ {{
        expires 1y;
        add_header Cache-Control "public, immutable";
    }}

{headers}}}
"""

UPSTREAM_TEMPLATE = """\
server {{
    listen 80;
    server_name {domain};

    location / {{
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;

        proxy_connect_timeout 60s;
        proxy_send_timeout 60s;
        proxy_read_timeout 60s;
    }}

{headers}}}
"""


class ProxyConfigurator:
    """Writes, enables and removes per-project nginx server blocks."""

    def __init__(self, runner: CommandRunner | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.runner = runner or CommandRunner(self.settings)
        self.sites_available = Path(self.settings.nginx_sites_available)
        self.sites_enabled = Path(self.settings.nginx_sites_enabled)

    def domain_for(self, project: str) -> str:
        return f"{project}.{self.settings.base_domain}"

    def url_for(self, project: str) -> str:
        return f"http://{self.domain_for(project)}"

    def render_static(self, project: str, root: str) -> str:
        return STATIC_TEMPLATE.format(
            domain=self.domain_for(project), root=root, headers=SECURITY_HEADERS
        )

    def render_upstream(self, project: str, port: int) -> str:
        return UPSTREAM_TEMPLATE.format(
            domain=self.domain_for(project), port=port, headers=SECURITY_HEADERS
        )

    async def configure_static(self, project: str, root: str) -> Path:
        """Serve ``root`` as the project's site and reload nginx."""
        path = self._write_site(project, self.render_static(project, root))
        await self.reload()
        logger.info("vhost_configured", project=project, kind="static", root=root)
        return path

    async def configure_upstream(self, project: str, port: int) -> Path:
        """Proxy the project's domain to ``127.0.0.1:port`` and reload nginx."""
        path = self._write_site(project, self.render_upstream(project, port))
        await self.reload()
        logger.info("vhost_configured", project=project, kind="upstream", port=port)
        return path

    def site_paths(self, project: str) -> tuple[Path, Path]:
        """(sites-available file, sites-enabled link) of a project."""
        name = validate_name(project)
        return self.sites_available / name, self.sites_enabled / name

    def _write_site(self, project: str, content: str) -> Path:
        available, enabled = self.site_paths(project)
        tmp = available.with_name(f".{project}.tmp")
        try:
            self.sites_available.mkdir(parents=True, exist_ok=True)
            self.sites_enabled.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, available)
            if not enabled.is_symlink() and not enabled.exists():
                enabled.symlink_to(available)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ProxyError(f"Failed to write vhost for {project}: {e}") from e
        return available

    async def remove(self, project: str) -> None:
        """Drop the project's site; missing files are ignored."""
        available, enabled = self.site_paths(project)
        for path in (enabled, available):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("vhost_remove_failed", project=project, path=str(path), error=str(e))
        await self.reload()
        logger.info("vhost_removed", project=project)

    async def reload(self) -> None:
        """Test and reload nginx; a blank reload command disables this."""
        command = self.settings.nginx_reload_command.strip()
        if not command:
            return
        try:
            await self.runner.run(command, timeout=60)
        except CommandError as e:
            raise ProxyError(f"Nginx reload failed: {e.stderr or e}") from e
        logger.info("nginx_reloaded")
