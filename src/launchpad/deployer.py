"""Deployer service - publishes static bundles and runs containers behind nginx."""

import asyncio
import os
from pathlib import Path
import shlex
import shutil

from docker.errors import DockerException
import httpx
import structlog

from launchpad.command import CancelToken, CommandRunner
from launchpad.config import Settings, get_settings
from launchpad.detector import ensure_index_html, find_static_path
from launchpad.docker_client import (
    LABEL_DEPLOYMENT,
    LABEL_MANAGED,
    LABEL_PROJECT,
    DockerClientWrapper,
)
from launchpad.errors import (
    CommandError,
    DeploymentCancelled,
    HealthCheckTimeout,
    PermissionFixError,
)
from launchpad.models import (
    ArtifactKind,
    BuildResult,
    DeployResult,
    DetectionResult,
    validate_name,
)
from launchpad.ports import PortAllocator, staging_key
from launchpad.proxy import ProxyConfigurator

logger = structlog.get_logger()

RELEASE_IGNORE = shutil.ignore_patterns(".git", "node_modules")


class DeployerService:
    """Runs built artifacts and points the project's vhost at them.

    Container replacement is blue/green: the new container gets a staging
    port, and only after it passes its health check is the vhost switched,
    the port promoted to the project and the previous containers removed.
    """

    def __init__(
        self,
        ports: PortAllocator,
        proxy: ProxyConfigurator | None = None,
        runner: CommandRunner | None = None,
        docker_client: DockerClientWrapper | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.runner = runner or CommandRunner(self.settings)
        self.ports = ports
        self.proxy = proxy or ProxyConfigurator(self.runner, self.settings)
        self.docker = docker_client or DockerClientWrapper()
        self.projects_dir = Path(self.settings.projects_dir)

    def container_name(self, project: str, deployment_id: str) -> str:
        return f"{self.settings.container_prefix}-{project}-{deployment_id[:8]}"

    def releases_dir(self, project: str) -> Path:
        return self.projects_dir / validate_name(project) / "releases"

    async def deploy(
        self,
        project: str,
        detection: DetectionResult,
        build: BuildResult,
        deployment_id: str,
        env_vars: dict[str, str] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> DeployResult:
        """Publish the artifact of ``build``.

        Raises:
            HealthCheckTimeout: new container never became healthy
            PortExhaustion: no port left for the new container
            CommandError: container start failed or was cancelled
            ProxyError: vhost could not be written or nginx reloaded
        """
        if build.artifact_kind is ArtifactKind.STATIC:
            return await self.deploy_static(project, detection, deployment_id)
        return await self.deploy_container(
            project,
            detection,
            build.image_tag or build.artifact_id,
            deployment_id,
            env_vars=env_vars,
            cancel_token=cancel_token,
        )

    # Static

    def _resolve_static_dir(self, detection: DetectionResult) -> Path:
        root = Path(detection.project_root)
        output = detection.output_directory
        if output and output.strip("/") not in ("", "."):
            candidate = root / output.strip("/")
            if candidate.is_dir():
                logger.info("static_path_resolved", directory=output, reason="output directory")
                return candidate
        return find_static_path(root)

    async def deploy_static(
        self, project: str, detection: DetectionResult, deployment_id: str
    ) -> DeployResult:
        static_dir = self._resolve_static_dir(detection)
        ensure_index_html(static_dir)

        release = self.releases_dir(project) / deployment_id
        if release.exists():
            await asyncio.to_thread(shutil.rmtree, release)
        await asyncio.to_thread(
            shutil.copytree, static_dir, release, symlinks=True, ignore=RELEASE_IGNORE
        )
        # copytree carries over the source mtime; releases are ordered by deploy time
        os.utime(release)
        logger.info("static_release_created", project=project, release=str(release))

        try:
            await self.fix_permissions(release)
        except PermissionFixError as e:
            logger.warning("permission_fix_failed", project=project, error=str(e))

        await self.proxy.configure_static(project, str(release))

        # A project switching from container to static leaves nothing running
        await self._retire_containers(project, keep=None)
        await self.ports.release(project)

        await self.prune_releases(project, current=deployment_id)
        return DeployResult(
            success=True,
            url=self.proxy.url_for(project),
            static_path=str(release),
        )

    async def fix_permissions(self, path: Path) -> None:
        """chown to the web owner and chmod 755.

        Raises:
            PermissionFixError: either command failed
        """
        quoted = shlex.quote(str(path))
        try:
            await self.runner.run(f"chown -R {shlex.quote(self.settings.web_owner)} {quoted}")
            await self.runner.run(f"chmod -R 755 {quoted}")
        except CommandError as e:
            raise PermissionFixError(str(e)) from e
        logger.debug("permissions_fixed", path=str(path))

    async def prune_releases(self, project: str, current: str | None = None) -> list[str]:
        """Keep the newest releases, never removing ``current``."""
        root = self.releases_dir(project)
        if not root.is_dir():
            return []
        releases = sorted(
            (entry for entry in root.iterdir() if entry.is_dir()),
            key=lambda entry: entry.stat().st_mtime,
            reverse=True,
        )
        removed = []
        for entry in releases[self.settings.releases_to_keep :]:
            if entry.name == current:
                continue
            await asyncio.to_thread(shutil.rmtree, entry, True)
            removed.append(entry.name)
        if removed:
            logger.info("releases_pruned", project=project, removed=removed)
        return removed

    # Containers

    async def deploy_container(
        self,
        project: str,
        detection: DetectionResult,
        image: str,
        deployment_id: str,
        env_vars: dict[str, str] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> DeployResult:
        name = self.container_name(project, deployment_id)
        candidate = staging_key(project)
        port = await self.ports.reserve(candidate)

        try:
            await self._remove_container(name)
            container_id = await self._start_container(
                name, image, port, project, detection, deployment_id, env_vars, cancel_token
            )
            url = f"http://127.0.0.1:{port}{self.settings.health_check_path}"
            await self.wait_healthy(url, name, cancel_token)
            await self.proxy.configure_upstream(project, port)
        except BaseException:
            await self._remove_container(name)
            await self.ports.release(candidate)
            raise

        await self.ports.promote(candidate, project)
        await self._retire_containers(project, keep=name)
        await self.prune_images(project, current=image)

        logger.info(
            "container_deployed",
            project=project,
            container=name,
            port=port,
            image=image,
        )
        return DeployResult(
            success=True,
            url=self.proxy.url_for(project),
            container_id=container_id,
            container_name=name,
            port=port,
        )

    async def _start_container(
        self,
        name: str,
        image: str,
        port: int,
        project: str,
        detection: DetectionResult,
        deployment_id: str,
        env_vars: dict[str, str] | None,
        cancel_token: CancelToken | None,
    ) -> str:
        internal_port = detection.port
        env = {
            **detection.env,
            **(env_vars or {}),
            "PORT": str(internal_port),
            "LAUNCHPAD_PROJECT": project,
            "LAUNCHPAD_DEPLOYMENT_ID": deployment_id,
        }
        args = [
            "docker",
            "run",
            "-d",
            "--name",
            name,
            "--restart",
            "unless-stopped",
            f"--memory={self.settings.container_memory}",
            f"--cpus={self.settings.container_cpus}",
            "-p",
            f"127.0.0.1:{port}:{internal_port}",
            "--label",
            f"{LABEL_MANAGED}=true",
            "--label",
            f"{LABEL_PROJECT}={project}",
            "--label",
            f"{LABEL_DEPLOYMENT}={deployment_id}",
        ]
        shown = list(args)
        for key, value in sorted(env.items()):
            args += ["-e", f"{key}={value}"]
            shown += ["-e", f"{key}=***"]
        args.append(image)
        shown.append(image)

        result = await self.runner.run(
            shlex.join(args),
            timeout=self.settings.default_timeout,
            cancel_token=cancel_token,
            display=shlex.join(shown),
        )
        container_id = result.stdout.strip().splitlines()[-1] if result.stdout else name
        logger.info("container_started", container=name, container_id=container_id[:12], port=port)
        return container_id

    async def wait_healthy(
        self, url: str, container_name: str, cancel_token: CancelToken | None = None
    ) -> None:
        """Poll ``url`` until it answers below 400.

        Raises:
            HealthCheckTimeout: attempts exhausted or the container exited
            DeploymentCancelled: cancelled while waiting
        """
        attempts = self.settings.health_check_attempts
        last_error: str | None = None
        async with httpx.AsyncClient(timeout=self.settings.health_check_timeout) as client:
            for attempt in range(1, attempts + 1):
                if cancel_token is not None and cancel_token.cancelled:
                    raise DeploymentCancelled(cancel_token.reason or "Cancelled")

                state = await self._container_state(container_name)
                if state is not None and not state.get("Running", False):
                    logs = await self._container_logs(container_name)
                    raise HealthCheckTimeout(
                        url,
                        attempt,
                        f"container exited with code {state.get('ExitCode')}: {logs[-500:]}",
                    )

                try:
                    response = await client.get(url)
                    if response.status_code < 400:
                        logger.info("health_check_passed", url=url, attempt=attempt)
                        return
                    last_error = f"HTTP {response.status_code}"
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"

                logger.debug("health_check_pending", url=url, attempt=attempt, error=last_error)
                await asyncio.sleep(self.settings.health_check_interval)

        raise HealthCheckTimeout(url, attempts, last_error)

    async def _container_state(self, name: str) -> dict | None:
        try:
            return await self.docker.container_state(name)
        except DockerException as e:
            logger.debug("container_inspect_failed", container=name, error=str(e))
            return None

    async def _container_logs(self, name: str) -> str:
        try:
            return await self.docker.container_logs(name)
        except DockerException:
            return ""

    async def _remove_container(self, name: str) -> None:
        try:
            await self.docker.remove_container(name)
        except DockerException as e:
            logger.warning("container_remove_failed", container=name, error=str(e))

    async def _retire_containers(self, project: str, keep: str | None) -> list[str]:
        """Remove the project's containers other than ``keep``."""
        try:
            containers = await self.docker.list_project_containers(project)
        except DockerException as e:
            logger.warning("container_list_failed", project=project, error=str(e))
            return []
        retired = []
        for container in containers:
            if container.name == keep:
                continue
            await self._remove_container(container.name)
            retired.append(container.name)
        if retired:
            logger.info("old_containers_removed", project=project, containers=retired)
        return retired

    async def prune_images(self, project: str, current: str | None = None) -> list[str]:
        """Keep the newest project images; best effort."""
        repository = current.rsplit(":", 1)[0] if current else None
        if not repository:
            return []
        try:
            images = await self.docker.list_project_images(repository)
        except DockerException as e:
            logger.warning("image_list_failed", project=project, error=str(e))
            return []
        images = sorted(images, key=lambda image: image.attrs.get("Created", ""), reverse=True)
        removed = []
        for image in images[self.settings.releases_to_keep :]:
            if current in image.tags:
                continue
            for tag in image.tags:
                try:
                    await self.docker.remove_image(tag)
                    removed.append(tag)
                except DockerException as e:
                    logger.warning("image_remove_failed", image=tag, error=str(e))
        return removed

    async def teardown(self, project: str) -> None:
        """Stop serving a project: containers, ports, vhost and releases."""
        validate_name(project)
        await self._retire_containers(project, keep=None)
        await self.ports.release(project)
        await self.ports.release(staging_key(project))
        await self.proxy.remove(project)
        releases = self.releases_dir(project)
        if releases.exists():
            await asyncio.to_thread(shutil.rmtree, releases, True)
        logger.info("project_torn_down", project=project)
