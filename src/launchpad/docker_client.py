"""Async wrapper around the blocking docker SDK client."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import docker
from docker.errors import ImageNotFound, NotFound
import structlog

logger = structlog.get_logger()

LABEL_MANAGED = "launchpad.managed"
LABEL_PROJECT = "launchpad.project"
LABEL_DEPLOYMENT = "launchpad.deployment"


class DockerClientWrapper:
    """
    Runs docker SDK calls in a thread pool so they never block the event loop.
    The SDK client is created on first use, so constructing the wrapper does
    not require a reachable daemon.
    """

    def __init__(self, max_workers: int = 4):
        self._client: docker.DockerClient | None = None
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _run(self, func, *args, **kwargs):
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def get_container(self, container_id: str) -> Any:
        return await self._run(self.client.containers.get, container_id)

    async def list_project_containers(self, project: str, all: bool = True) -> list[Any]:
        """Containers this engine started for ``project``."""
        filters = {"label": [f"{LABEL_MANAGED}=true", f"{LABEL_PROJECT}={project}"]}
        return await self._run(self.client.containers.list, all=all, filters=filters)

    async def container_state(self, container_id: str) -> dict[str, Any] | None:
        """``State`` section of docker inspect, or None if the container is gone."""
        try:
            container = await self.get_container(container_id)
        except NotFound:
            return None
        return container.attrs.get("State", {})

    async def container_logs(self, container_id: str, tail: int = 50) -> str:
        try:
            container = await self.get_container(container_id)
        except NotFound:
            return ""
        raw = await self._run(container.logs, tail=tail)
        return raw.decode(errors="replace") if isinstance(raw, bytes) else str(raw)

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        """Remove a container; already-removed containers are ignored."""
        try:
            container = await self.get_container(container_id)
            await self._run(container.remove, force=force, v=True)
            logger.info("container_removed", container_id=container_id)
        except NotFound:
            pass

    async def remove_image(self, image: str, force: bool = True) -> None:
        try:
            await self._run(self.client.images.remove, image, force=force)
            logger.info("image_removed", image=image)
        except ImageNotFound:
            pass

    async def list_project_images(self, repository: str) -> list[Any]:
        return await self._run(self.client.images.list, name=repository)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        if self._client is not None:
            self._client.close()
