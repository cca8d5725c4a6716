"""Composition root: one engine per process, shared by every handler."""

import asyncio
from typing import Any

import redis.asyncio as redis
import structlog

from launchpad.builder import BuilderService
from launchpad.cache import Cache
from launchpad.command import CancelToken, CommandRunner
from launchpad.config import Settings, get_settings
from launchpad.deployer import DeployerService
from launchpad.docker_client import DockerClientWrapper
from launchpad.events import EventPublisher
from launchpad.git_service import GitService
from launchpad.models import DeploymentRequest, PipelineResult, PipelineStatus, validate_name
from launchpad.ports import PortAllocator, create_port_allocator
from launchpad.proxy import ProxyConfigurator
from launchpad.queue import PipelineQueue
from launchpad.runner import PipelineRunner
from launchpad.status import STATUS_CACHE_PREFIX, StatusStore
from launchpad.step_logs import StepLogs

logger = structlog.get_logger()


class DeploymentEngine:
    """Owns the status store, queue, port allocator and services.

    Construct once at process start and pass it to whatever accepts
    deployment requests. Without a Redis client the engine runs with
    file-backed ports and does not publish events or mirror statuses.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        redis_client: redis.Redis | None = None,
        docker_client: DockerClientWrapper | None = None,
        ports: PortAllocator | None = None,
    ):
        self.settings = settings or get_settings()
        self.redis = redis_client
        self.cache = Cache(redis_client) if redis_client is not None else None

        self.status = StatusStore(self.settings, self.cache)
        self.queue = PipelineQueue(settings=self.settings)
        self.events = EventPublisher(redis_client, self.settings)
        self.step_logs = StepLogs(self.settings)

        self.commands = CommandRunner(self.settings)
        self.docker = docker_client or DockerClientWrapper()
        self.ports = ports or create_port_allocator(self.settings, redis_client)
        self.proxy = ProxyConfigurator(self.commands, self.settings)

        self.git = GitService(self.commands, self.settings)
        self.builder = BuilderService(
            self.commands, self.docker, self.events, self.step_logs, self.settings
        )
        self.deployer = DeployerService(
            self.ports, self.proxy, self.commands, self.docker, self.settings
        )
        self.runner = PipelineRunner(
            self.git,
            self.builder,
            self.deployer,
            self.status,
            self.step_logs,
            self.events,
            self.settings,
        )
        # Cancel tokens of runs holding an execution slot, by project
        self._active: dict[str, CancelToken] = {}

    def deploy(self, request: DeploymentRequest) -> asyncio.Future:
        """Queue a pipeline run; the future resolves to its PipelineResult."""

        async def task() -> PipelineResult:
            token = CancelToken()
            self._active[request.project] = token
            try:
                return await self.runner.run(request, token)
            finally:
                self._active.pop(request.project, None)

        logger.info(
            "deployment_requested",
            project=request.project,
            deployment_id=request.deployment_id,
            branch=request.branch,
        )
        return self.queue.enqueue(request.project, task, request.deployment_id)

    async def deploy_and_wait(self, request: DeploymentRequest) -> PipelineResult:
        return await self.deploy(request)

    async def cancel(self, project: str, reason: str = "Cancelled by user") -> dict[str, Any]:
        """Drop queued runs of ``project`` and kill its running one."""
        dropped = self.queue.cancel(project)
        token = self._active.get(project)
        if token is not None:
            token.cancel(reason)
        logger.info(
            "deployment_cancel_requested",
            project=project,
            queued_dropped=dropped,
            running_cancelled=token is not None,
        )
        await self.events.publish_audit(
            "deployment.cancel",
            project,
            {"reason": reason, "queuedDropped": dropped, "runningCancelled": token is not None},
        )
        return {"queued": dropped, "running": token is not None}

    def get_status(self, project: str) -> PipelineStatus:
        return self.status.get_status(project)

    def get_queue_position(self, project: str) -> int | None:
        return self.queue.get_queue_position(project)

    def read_logs(self, project: str) -> dict[str, str | None]:
        return self.step_logs.read_all(project)

    async def teardown(self, project: str) -> None:
        """Stop serving ``project`` and forget its status."""
        validate_name(project)
        await self.cancel(project, reason="Project torn down")
        await self.deployer.teardown(project)
        self.status.clear_status(project)
        if self.cache is not None:
            await self.cache.delete(f"{STATUS_CACHE_PREFIX}:{project}")
        await self.events.publish_audit("project.teardown", project)

    def cleanup_statuses(self, retention_hours: int | None = None) -> list[str]:
        return self.status.cleanup_old_statuses(retention_hours)

    async def shutdown(self) -> None:
        """Reject queued runs, cancel running ones and wait for them to finalize."""
        self.queue.clear()
        for project, token in list(self._active.items()):
            token.cancel("Engine shutting down")
            logger.info("running_pipeline_cancelled", project=project)
        await self.queue.drain()
        self.docker.close()
