"""Tests for DeploymentEngine wiring, cancellation and teardown."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from launchpad.engine import DeploymentEngine
from launchpad.errors import DeploymentCancelled, InvalidName, QueueCleared
from launchpad.events import TOPIC_AUDIT
from launchpad.models import DeploymentRequest, DeploymentStatus, PipelineResult
from launchpad.ports import FilePortAllocator
from launchpad.status import STATUS_CACHE_PREFIX


def make_request(project: str = "app", deployment_id: str = "dep-1") -> DeploymentRequest:
    return DeploymentRequest(
        project=project,
        repo_url="https://github.com/acme/app.git",
        deployment_id=deployment_id,
    )


def result_for(request: DeploymentRequest, status: DeploymentStatus) -> PipelineResult:
    return PipelineResult(
        project=request.project,
        deployment_id=request.deployment_id,
        status=status,
        success=status is DeploymentStatus.READY,
    )


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def engine(settings, fake_redis):
    engine = DeploymentEngine(settings, fake_redis, docker_client=MagicMock())
    engine.runner = MagicMock()
    return engine


def block_until_cancelled(engine: DeploymentEngine):
    """Runner that holds its slot until its cancel token fires."""
    started = asyncio.Event()

    async def run(request, token):
        started.set()
        await token.wait()
        return result_for(request, DeploymentStatus.CANCELLED)

    engine.runner.run = AsyncMock(side_effect=run)
    return started


class TestWiring:
    def test_without_redis(self, settings):
        engine = DeploymentEngine(settings, docker_client=MagicMock())

        assert engine.cache is None
        assert engine.events.redis is None
        assert isinstance(engine.ports, FilePortAllocator)

    def test_shares_services(self, engine):
        assert engine.runner is not None
        assert engine.builder.step_logs is engine.step_logs
        assert engine.deployer.ports is engine.ports
        assert engine.status.cache is engine.cache


class TestDeploy:
    @pytest.mark.asyncio
    async def test_future_resolves_to_pipeline_result(self, engine):
        request = make_request()
        engine.runner.run = AsyncMock(return_value=result_for(request, DeploymentStatus.READY))

        result = await engine.deploy_and_wait(request)

        assert result.success is True
        engine.runner.run.assert_awaited_once()
        assert engine._active == {}

    @pytest.mark.asyncio
    async def test_queue_position_of_waiting_run(self, engine):
        started = block_until_cancelled(engine)
        first = engine.deploy(make_request("app", "dep-1"))
        second = engine.deploy(make_request("app", "dep-2"))
        await started.wait()

        assert engine.get_queue_position("app") == 0
        assert engine.get_queue_position("other") is None

        await engine.shutdown()
        assert (await first).status is DeploymentStatus.CANCELLED
        with pytest.raises(QueueCleared):
            await second


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_kills_running_and_drops_queued(self, engine, fake_redis, settings):
        started = block_until_cancelled(engine)
        running = engine.deploy(make_request("app", "dep-1"))
        queued = engine.deploy(make_request("app", "dep-2"))
        await started.wait()

        outcome = await engine.cancel("app")

        assert outcome == {"queued": 1, "running": True}
        assert (await running).status is DeploymentStatus.CANCELLED
        with pytest.raises(DeploymentCancelled):
            await queued
        assert engine.runner.run.await_count == 1

        [(_, fields)] = await fake_redis.xrange(settings.topic(TOPIC_AUDIT))
        audit = json.loads(fields["data"])
        assert audit["action"] == "deployment.cancel"
        assert audit["data"]["runningCancelled"] is True

    @pytest.mark.asyncio
    async def test_cancel_idle_project(self, engine):
        assert await engine.cancel("idle") == {"queued": 0, "running": False}


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_forgets_project(self, engine, fake_redis):
        engine.deployer = MagicMock()
        engine.deployer.teardown = AsyncMock()
        status = engine.status.initialize_status("app", "dep-1")
        await engine.status.mirror(status)

        await engine.teardown("app")

        engine.deployer.teardown.assert_awaited_once_with("app")
        assert engine.get_status("app").found is False
        assert await fake_redis.get(f"{STATUS_CACHE_PREFIX}:app") is None

    @pytest.mark.asyncio
    async def test_teardown_rejects_unsafe_project(self, engine):
        engine.deployer = MagicMock()
        engine.deployer.teardown = AsyncMock()

        with pytest.raises(InvalidName):
            await engine.teardown("../..")

        engine.deployer.teardown.assert_not_called()


class TestStatusAndLogs:
    def test_status_and_logs_passthrough(self, engine):
        engine.status.update_status("app", current_step="build")
        engine.step_logs.write("app", "build", "Command: npm run build")

        assert engine.get_status("app").current_step == "build"
        assert engine.read_logs("app")["build"] == "Command: npm run build"
        assert engine.read_logs("app")["test"] is None

    def test_cleanup_statuses(self, engine):
        engine.status.initialize_status("app")

        assert engine.cleanup_statuses(retention_hours=0) == ["app"]


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_cancels_and_drains(self, engine):
        started = block_until_cancelled(engine)
        running = engine.deploy(make_request("app", "dep-1"))
        waiting = engine.deploy(make_request("app", "dep-2"))
        await started.wait()

        await engine.shutdown()

        assert running.done()
        assert (await running).status is DeploymentStatus.CANCELLED
        with pytest.raises(QueueCleared):
            await waiting
        engine.docker.close.assert_called_once()
        assert engine._active == {}
