"""Tests for PipelineRunner with mocked git, builder and deployer."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from launchpad.command import CancelToken, CommandResult
from launchpad.errors import CommandError, DeploymentCancelled
from launchpad.events import TOPIC_DEPLOYMENTS, EventPublisher
from launchpad.models import (
    ArtifactKind,
    BuildResult,
    CloneResult,
    DeploymentRequest,
    DeploymentStatus,
    DeployResult,
    DetectionResult,
    PipelineConfig,
    ProjectType,
)
from launchpad.runner import PipelineRunner
from launchpad.status import StatusStore
from launchpad.step_logs import StepLogs

DETECTION = DetectionResult(
    framework="react",
    language="javascript",
    project_type=ProjectType.FRONTEND,
    install_command="npm install",
    build_command="npm run build",
    test_command="npm test",
    output_directory="build",
    project_root="/tmp/work/dep-1",
)


def command_ok(stdout: str) -> CommandResult:
    return CommandResult(command="cmd", exit_code=0, stdout=stdout, stderr="", duration=0.1)


@pytest.fixture(autouse=True)
def fake_detection(monkeypatch):
    detected = {"result": DETECTION, "calls": [], "pipeline": None}

    def detect(path, root_directory=None):
        detected["calls"].append((path, root_directory))
        return detected["result"]

    monkeypatch.setattr("launchpad.runner.detect_project", detect)
    monkeypatch.setattr(
        "launchpad.runner.load_pipeline_config", lambda project_root: detected["pipeline"]
    )
    return detected


@pytest.fixture
def git():
    mock = MagicMock()
    mock.clone_repository = AsyncMock(
        return_value=CloneResult(
            success=True,
            path="/tmp/work/dep-1",
            commit_hash="a1b2c3d4e5",
            branch="main",
            author="Dev",
            message="Initial commit",
        )
    )
    mock.cleanup = AsyncMock()
    return mock


@pytest.fixture
def builder():
    mock = MagicMock()
    mock.install = AsyncMock(return_value=command_ok("added 120 packages"))
    mock.build = AsyncMock(
        return_value=BuildResult(
            success=True,
            artifact_kind=ArtifactKind.STATIC,
            artifact_id="static:/tmp/work/dep-1",
            logs="Compiled successfully",
        )
    )
    mock.run_tests = AsyncMock(return_value=command_ok("3 passing"))
    mock.image_tag = MagicMock(return_value="launchpad/app:dep-1")
    return mock


@pytest.fixture
def deployer():
    mock = MagicMock()
    mock.deploy = AsyncMock(
        return_value=DeployResult(
            success=True,
            url="http://app.launchpad.local",
            static_path="/var/www/projects/app/releases/dep-1",
        )
    )
    return mock


@pytest.fixture
def status(settings):
    return StatusStore(settings)


@pytest.fixture
def step_logs(settings):
    return StepLogs(settings)


@pytest.fixture
def events(fake_redis, settings):
    return EventPublisher(fake_redis, settings)


@pytest.fixture
def make_runner(git, builder, deployer, status, step_logs, events, settings):
    def make(**overrides):
        return PipelineRunner(
            git,
            builder,
            deployer,
            status,
            step_logs,
            events,
            settings.model_copy(update=overrides),
        )

    return make


@pytest.fixture
def request_():
    return DeploymentRequest(
        project="app",
        repo_url="https://github.com/acme/app.git",
        deployment_id="dep-1",
    )


async def event_types(fake_redis, settings) -> list[str]:
    entries = await fake_redis.xrange(settings.topic(TOPIC_DEPLOYMENTS))
    return [json.loads(fields["data"])["eventType"] for _id, fields in entries]


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_runs_all_steps(
        self, make_runner, request_, status, step_logs, git, deployer, fake_redis, settings
    ):
        result = await make_runner().run(request_)

        assert result.success is True
        assert result.status is DeploymentStatus.READY
        assert result.url == "http://app.launchpad.local"

        current = status.get_status("app")
        assert current.done is True
        assert current.success is True
        assert current.current_step == "completed"
        assert current.step_index == 4  # noqa: PLR2004
        assert current.total_steps == 4  # noqa: PLR2004
        for step in ("preDeploy", "build", "test", "postDeploy"):
            assert current.logs[step].startswith("✓ Completed in ")
        assert current.logs["summary"].startswith("Pipeline completed successfully")

        git.cleanup.assert_awaited_once_with("dep-1")
        deployer.deploy.assert_awaited_once()

        assert await event_types(fake_redis, settings) == [
            "deployment.started",
            "deployment.step",
            "deployment.step",
            "deployment.step",
            "deployment.step",
            "deployment.ready",
        ]

    @pytest.mark.asyncio
    async def test_step_log_files(self, make_runner, request_, step_logs):
        await make_runner().run(request_)

        logs = step_logs.read_all("app")
        assert logs["preDeploy"].startswith(
            "Command: git clone --depth 1 --single-branch --branch main "
            "https://github.com/acme/app.git && npm install\n"
        )
        assert "Cloned https://github.com/acme/app.git (main) at a1b2c3d4e5" in logs["preDeploy"]
        assert "added 120 packages" in logs["preDeploy"]
        assert logs["build"] == "Command: npm run build\nDuration: 0s\nOutput:\nCompiled successfully"
        assert logs["test"].endswith("Output:\n3 passing")
        assert "URL: http://app.launchpad.local" in logs["postDeploy"]
        assert "Steps executed: preDeploy, build, test, postDeploy" in logs["summary"]
        assert "Commit: a1b2c3d4e5" in logs["summary"]
        assert logs["error"] is None

    @pytest.mark.asyncio
    async def test_previous_error_log_is_removed(self, make_runner, request_, step_logs):
        step_logs.write("app", "error", "old failure")

        await make_runner().run(request_)

        assert step_logs.read("app", "error") is None

    @pytest.mark.asyncio
    async def test_overrides_beat_detection(
        self, make_runner, builder, fake_detection, settings
    ):
        request = DeploymentRequest(
            project="app",
            repo_url="https://github.com/acme/app.git",
            root_directory="web",
            build_command="make site",
        )

        await make_runner().run(request)

        assert fake_detection["calls"] == [("/tmp/work/dep-1", "web")]
        detection = builder.build.call_args.args[1]
        assert detection.build_command == "make site"
        assert detection.install_command == "npm install"

    @pytest.mark.asyncio
    async def test_pipeline_json_sits_between_detection_and_request(
        self, make_runner, builder, fake_detection, step_logs
    ):
        fake_detection["pipeline"] = PipelineConfig.model_validate(
            {"preDeploy": "make deps", "build": "make all", "test": "make check"}
        )
        request = DeploymentRequest(
            project="app",
            repo_url="https://github.com/acme/app.git",
            deployment_id="dep-1",
            build_command="make site",
        )

        await make_runner().run(request)

        detection = builder.build.call_args.args[1]
        assert detection.install_command == "make deps"
        assert detection.build_command == "make site"
        assert detection.test_command == "make check"
        assert "Pipeline config: pipeline.json" in step_logs.read("app", "preDeploy")

    @pytest.mark.asyncio
    async def test_step_timeouts(self, make_runner, request_, builder, settings):
        await make_runner().run(request_)

        assert 0 < builder.install.call_args.kwargs["timeout"] <= settings.default_timeout
        assert builder.build.call_args.kwargs["timeout"] == settings.build_timeout
        assert builder.run_tests.call_args.kwargs["timeout"] == settings.test_timeout


class TestFailedRun:
    @pytest.mark.asyncio
    async def test_clone_failure_stops_pipeline(
        self, make_runner, request_, git, builder, status, step_logs
    ):
        git.clone_repository.return_value = CloneResult(
            success=False, error="Repository not found"
        )

        result = await make_runner().run(request_)

        assert result.success is False
        assert result.status is DeploymentStatus.FAILED
        assert result.error == "preDeploy failed: Repository not found"
        builder.build.assert_not_called()

        current = status.get_status("app")
        assert current.done is True
        assert current.success is False
        assert current.error == "preDeploy failed: Repository not found"
        assert current.logs["preDeploy"] == "✗ Failed: Repository not found"
        assert "build" not in current.logs

        assert "Error:\nRepository not found" in step_logs.read("app", "preDeploy")
        error_log = step_logs.read("app", "error")
        assert error_log.startswith("Pipeline failed\nError: Repository not found\nFailed at: preDeploy")
        assert current.logs["error"] == error_log
        git.cleanup.assert_awaited_once_with("dep-1")

    @pytest.mark.asyncio
    async def test_build_failure_logs_build_output(
        self, make_runner, request_, builder, deployer, step_logs, fake_redis, settings
    ):
        builder.build.return_value = BuildResult(
            success=False,
            artifact_kind=ArtifactKind.STATIC,
            logs="npm ERR! missing script: build",
            error="Command failed with exit code 1",
        )

        result = await make_runner().run(request_)

        assert result.error == "build failed: Command failed with exit code 1"
        deployer.deploy.assert_not_called()
        build_log = step_logs.read("app", "build")
        assert build_log == (
            "Command: npm run build\nError:\nCommand failed with exit code 1\n"
            "Output:\nnpm ERR! missing script: build"
        )
        assert (await event_types(fake_redis, settings))[-1] == "deployment.failed"

    @pytest.mark.asyncio
    async def test_test_failure_fails_pipeline(self, make_runner, request_, builder, deployer):
        builder.run_tests.side_effect = CommandError(
            "docker run", "Command failed with exit code 1", exit_code=1, stdout="1 failing"
        )

        result = await make_runner().run(request_)

        assert result.status is DeploymentStatus.FAILED
        assert result.error.startswith("test failed: ")
        deployer.deploy.assert_not_called()

    @pytest.mark.asyncio
    async def test_allowed_test_failure_keeps_deploying(
        self, make_runner, request_, builder, deployer, step_logs
    ):
        builder.run_tests.side_effect = CommandError(
            "docker run", "Command failed with exit code 1", exit_code=1, stdout="1 failing"
        )

        result = await make_runner(allow_test_failures=True).run(request_)

        assert result.success is True
        deployer.deploy.assert_awaited_once()
        assert "continuing because test failures are allowed" in step_logs.read("app", "test")

    @pytest.mark.asyncio
    async def test_test_timeout_fails_even_when_failures_allowed(
        self, make_runner, request_, builder
    ):
        builder.run_tests.side_effect = CommandError(
            "docker run", "Command timed out after 300s and was killed", timed_out=True, killed=True
        )

        result = await make_runner(allow_test_failures=True).run(request_)

        assert result.status is DeploymentStatus.FAILED
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_pre_deploy_is_bounded_as_a_whole(self, make_runner, request_, git, builder):
        async def slow_clone(*args, **kwargs):
            await asyncio.sleep(0.6)
            return git.clone_repository.return_value

        async def slow_install(*args, **kwargs):
            await asyncio.sleep(0.6)
            return command_ok("added 120 packages")

        git.clone_repository.side_effect = slow_clone
        builder.install.side_effect = slow_install

        result = await make_runner(default_timeout=1).run(request_)

        assert result.error == "preDeploy failed: Pre-deploy timed out after 1s"
        builder.build.assert_not_called()

    @pytest.mark.asyncio
    async def test_deploy_timeout(self, make_runner, request_, deployer):
        async def slow_deploy(*args, **kwargs):
            await asyncio.sleep(10)

        deployer.deploy.side_effect = slow_deploy

        result = await make_runner(default_timeout=1).run(request_)

        assert result.error == "postDeploy failed: Deploy timed out after 1s"

    @pytest.mark.asyncio
    async def test_unexpected_error_outside_step(
        self, git, builder, deployer, status, step_logs, settings, request_
    ):
        events = MagicMock()
        events.publish_deployment_event = AsyncMock(
            side_effect=[None, RuntimeError("bus down"), None]
        )
        events.publish_metric = AsyncMock()
        events.publish_notification = AsyncMock()
        runner = PipelineRunner(git, builder, deployer, status, step_logs, events, settings)

        result = await runner.run(request_)

        assert result.success is False
        assert result.error == "preDeploy failed: bus down"
        assert "Failed at: preDeploy" in step_logs.read("app", "error")
        git.cleanup.assert_awaited_once_with("dep-1")


class TestSkippedTests:
    @pytest.mark.asyncio
    async def test_disabled_by_configuration(self, make_runner, request_, builder, status, step_logs):
        result = await make_runner(skip_tests=True).run(request_)

        assert result.success is True
        builder.run_tests.assert_not_called()
        assert status.get_status("app").logs["test"] == "- Skipped: tests disabled by configuration"
        assert step_logs.read("app", "test") == (
            "Command: npm test\nSkipped: tests disabled by configuration"
        )
        assert "Steps executed: preDeploy, build, postDeploy" in step_logs.read("app", "summary")

    @pytest.mark.asyncio
    async def test_no_test_command(self, make_runner, request_, builder, status, fake_detection):
        fake_detection["result"] = DETECTION.model_copy(update={"test_command": None})

        await make_runner().run(request_)

        builder.run_tests.assert_not_called()
        assert status.get_status("app").logs["test"] == "- Skipped: no test command detected"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_runner, request_, git, status, fake_redis, settings):
        token = CancelToken()
        token.cancel("Cancelled by user")

        result = await make_runner().run(request_, token)

        assert result.status is DeploymentStatus.CANCELLED
        assert result.error == "preDeploy cancelled: Cancelled by user"
        git.clone_repository.assert_not_called()
        assert status.get_status("app").logs["preDeploy"] == "✗ Cancelled: Cancelled by user"
        assert (await event_types(fake_redis, settings))[-1] == "deployment.cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_during_deploy(self, make_runner, request_, deployer, step_logs):
        token = CancelToken()

        async def cancelled_deploy(*args, **kwargs):
            token.cancel("Cancelled by user")
            raise DeploymentCancelled("Cancelled by user")

        deployer.deploy.side_effect = cancelled_deploy

        result = await make_runner().run(request_, token)

        assert result.status is DeploymentStatus.CANCELLED
        assert result.error == "postDeploy cancelled: Cancelled by user"
        assert step_logs.read("app", "error").startswith("Pipeline cancelled")

    @pytest.mark.asyncio
    async def test_cancel_between_steps_skips_the_rest(self, make_runner, request_, builder):
        token = CancelToken()

        async def build_then_cancel(*args, **kwargs):
            token.cancel("Engine shutting down")
            return BuildResult(success=True, artifact_kind=ArtifactKind.STATIC, logs="ok")

        builder.build.side_effect = build_then_cancel

        result = await make_runner().run(request_, token)

        assert result.error == "test cancelled: Engine shutting down"
        builder.run_tests.assert_not_called()
