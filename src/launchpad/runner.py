"""Pipeline runner - drives one deployment through its fixed step sequence."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import time

import structlog

from launchpad.builder import BuilderService
from launchpad.command import CancelToken
from launchpad.config import Settings, get_settings
from launchpad.deployer import DeployerService
from launchpad.detector import PIPELINE_CONFIG_FILE, detect_project, load_pipeline_config
from launchpad.errors import (
    BuildError,
    CloneError,
    CommandError,
    DeploymentCancelled,
    LaunchpadError,
)
from launchpad.events import (
    DEPLOYMENT_CANCELLED,
    DEPLOYMENT_FAILED,
    DEPLOYMENT_READY,
    DEPLOYMENT_STARTED,
    DEPLOYMENT_STEP,
    EventPublisher,
)
from launchpad.git_service import GitService, parse_repo_url
from launchpad.logging_config import bind_deployment_context, clear_deployment_context
from launchpad.models import (
    EXECUTED_STEPS,
    ArtifactKind,
    BuildResult,
    Deployment,
    DeploymentRequest,
    DeploymentStatus,
    DeployResult,
    DetectionResult,
    PipelineResult,
    PipelineStatus,
    PipelineStep,
)
from launchpad.status import StatusStore
from launchpad.step_logs import StepLogs

logger = structlog.get_logger()

# Characters of an error kept in the status log map
STATUS_ERROR_PREVIEW = 200


@dataclass
class StepRecord:
    """What a successful step ran and printed."""

    command: str
    output: str = ""
    skipped: str | None = None


@dataclass
class RunState:
    """Values handed from one step to the next within a single run."""

    request: DeploymentRequest
    deployment: Deployment
    cancel_token: CancelToken
    command: str = ""
    output: str = ""
    detection: DetectionResult | None = None
    build: BuildResult | None = None
    deploy: DeployResult | None = None
    executed: list[str] = field(default_factory=list)


class StepFailed(LaunchpadError):
    """A step raised; carries the step and whether it was a cancellation."""

    def __init__(self, step: PipelineStep, message: str, cancelled: bool = False):
        super().__init__(message)
        self.step = step
        self.message = message
        self.cancelled = cancelled


StepHandler = Callable[[RunState, float], Awaitable[StepRecord]]


def _is_cancellation(error: BaseException, token: CancelToken) -> bool:
    if isinstance(error, DeploymentCancelled):
        return True
    if isinstance(error, CommandError) and error.cancelled:
        return True
    return token.cancelled


class PipelineRunner:
    """Runs preDeploy -> build -> test -> postDeploy -> summary for a project.

    Every step writes its own log file and a short line in the status log
    map. The first failure skips the remaining steps, writes error.log and
    finalizes the status; nothing a step raises escapes ``run``.
    """

    def __init__(
        self,
        git: GitService,
        builder: BuilderService,
        deployer: DeployerService,
        status: StatusStore,
        step_logs: StepLogs | None = None,
        events: EventPublisher | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.git = git
        self.builder = builder
        self.deployer = deployer
        self.status = status
        self.step_logs = step_logs or StepLogs(self.settings)
        self.events = events or EventPublisher(None, self.settings)
        self._handlers: dict[PipelineStep, StepHandler] = {
            PipelineStep.PRE_DEPLOY: self._pre_deploy,
            PipelineStep.BUILD: self._build,
            PipelineStep.TEST: self._test,
            PipelineStep.POST_DEPLOY: self._post_deploy,
        }

    def timeout_for(self, step: PipelineStep) -> float:
        if step is PipelineStep.BUILD:
            return self.settings.build_timeout
        if step is PipelineStep.TEST:
            return self.settings.test_timeout
        return self.settings.default_timeout

    def _write_log(self, project: str, step: PipelineStep, content: str) -> None:
        try:
            self.step_logs.write(project, step, content)
        except OSError as e:
            logger.warning("step_log_write_failed", step=step.value, error=str(e))

    async def _update(self, project: str, **changes) -> PipelineStatus:
        status = self.status.update_status(project, **changes)
        await self.status.mirror(status)
        return status

    async def run(
        self, request: DeploymentRequest, cancel_token: CancelToken | None = None
    ) -> PipelineResult:
        """Execute the pipeline for ``request`` and return its final outcome."""
        token = cancel_token or CancelToken()
        project = request.project
        deployment = Deployment(
            project=project,
            deployment_id=request.deployment_id,
            branch=request.branch,
        )
        state = RunState(request=request, deployment=deployment, cancel_token=token)

        bind_deployment_context(project, request.deployment_id)
        try:
            initial = self.status.initialize_status(
                project, request.deployment_id, total_steps=len(EXECUTED_STEPS)
            )
            await self.status.mirror(initial)
            logger.info(
                "pipeline_started",
                repo_url=request.repo_url,
                branch=request.branch,
                provider=parse_repo_url(request.repo_url).provider.value,
            )
            await self.events.publish_deployment_event(
                DEPLOYMENT_STARTED,
                request.deployment_id,
                {"project": project, "branch": request.branch},
            )

            try:
                self.step_logs.reset(project)
                deployment.transition(DeploymentStatus.BUILDING)
                for index, step in enumerate(EXECUTED_STEPS, start=1):
                    if token.cancelled:
                        raise StepFailed(step, token.reason or "Cancelled", cancelled=True)
                    if step is PipelineStep.POST_DEPLOY:
                        deployment.transition(DeploymentStatus.DEPLOYING)
                    await self._run_step(state, step, index)
                return await self._finish_success(state)
            except StepFailed as failure:
                return await self._finish_failure(state, failure)
            except Exception as e:
                logger.error(
                    "pipeline_internal_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                current = self.status.get_status(project).current_step or "initialization"
                failure = StepFailed(PipelineStep.ERROR, str(e))
                return await self._finish_failure(state, failure, failed_at=current)
        finally:
            await self.git.cleanup(request.deployment_id)
            clear_deployment_context()

    async def _run_step(self, state: RunState, step: PipelineStep, index: int) -> None:
        project = state.request.project
        handler = self._handlers[step]
        timeout = self.timeout_for(step)
        state.command = step.value
        state.output = ""

        await self._update(
            project,
            current_step=step.value,
            step_index=index,
            logs={step.value: "Running..."},
        )
        await self.events.publish_deployment_event(
            DEPLOYMENT_STEP,
            state.request.deployment_id,
            {"project": project, "step": step.value, "index": index},
        )
        logger.info("pipeline_step_started", step=step.value, index=index, timeout=timeout)

        started = time.monotonic()
        try:
            record = await handler(state, timeout)
        except Exception as e:
            message = str(e) or type(e).__name__
            content = f"Command: {state.command}\nError:\n{message}"
            if state.output:
                content = f"{content}\nOutput:\n{state.output}"
            self._write_log(project, step, content)
            cancelled = _is_cancellation(e, state.cancel_token)
            logger.error(
                "pipeline_step_failed",
                step=step.value,
                error=message,
                error_type=type(e).__name__,
                cancelled=cancelled,
            )
            raise StepFailed(step, message, cancelled=cancelled) from e

        duration = round(time.monotonic() - started)
        if record.skipped:
            self._write_log(project, step, f"Command: {record.command}\nSkipped: {record.skipped}")
            await self._update(project, logs={step.value: f"- Skipped: {record.skipped}"})
            logger.info("pipeline_step_skipped", step=step.value, reason=record.skipped)
            return

        self._write_log(
            project,
            step,
            f"Command: {record.command}\nDuration: {duration}s\nOutput:\n{record.output}",
        )
        state.executed.append(step.value)
        await self._update(project, logs={step.value: f"✓ Completed in {duration}s"})
        logger.info("pipeline_step_completed", step=step.value, duration=duration)

    # Steps

    async def _pre_deploy(self, state: RunState, timeout: float) -> StepRecord:
        """Clone, detect and install dependencies, all within one ``timeout``."""
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            return await asyncio.wait_for(self._prepare(state, deadline), timeout=timeout)
        except TimeoutError as e:
            raise LaunchpadError(f"Pre-deploy timed out after {timeout}s") from e

    async def _prepare(self, state: RunState, deadline: float) -> StepRecord:
        request = state.request
        deployment = state.deployment
        state.command = (
            f"git clone --depth 1 --single-branch --branch {request.branch} {request.repo_url}"
        )

        clone = await self.git.clone_repository(
            request.repo_url,
            request.deployment_id,
            branch=request.branch,
            token=request.token,
            cancel_token=state.cancel_token,
        )
        if not clone.success:
            raise CloneError(clone.error or "Clone failed")
        deployment.commit_sha = clone.commit_hash
        deployment.commit_message = clone.message
        deployment.commit_author = clone.author

        detection = await asyncio.to_thread(detect_project, clone.path, request.root_directory)
        pipeline = await asyncio.to_thread(load_pipeline_config, detection.project_root)
        if pipeline is not None:
            detection = detection.with_overrides(**pipeline.overrides())
        # Request configuration beats the repository's pipeline.json
        detection = detection.with_overrides(**request.overrides())
        state.detection = detection

        lines = [
            f"Cloned {request.repo_url} ({request.branch}) at {clone.commit_hash}",
            f"Author: {clone.author}",
            f"Message: {clone.message}",
            f"Detected: {detection.framework} ({detection.language}, {detection.project_type.value})",
            f"Project root: {detection.project_root}",
            f"Artifact: {detection.artifact_kind.value}",
        ]
        if pipeline is not None:
            lines.append(f"Pipeline config: {PIPELINE_CONFIG_FILE}")

        install = await self.builder.install(
            request.project,
            detection,
            request.deployment_id,
            cancel_token=state.cancel_token,
            timeout=max(deadline - asyncio.get_running_loop().time(), 1.0),
        )
        if install is not None:
            state.command = f"{state.command} && {detection.install_command}"
            lines += ["", install.output]
        return StepRecord(command=state.command, output="\n".join(lines))

    async def _build(self, state: RunState, timeout: float) -> StepRecord:
        request = state.request
        detection = state.detection
        if detection.artifact_kind is ArtifactKind.CONTAINER:
            state.command = f"docker build -t {self.builder.image_tag(request.project, request.deployment_id)}"
        else:
            state.command = detection.build_command or "(no build command)"

        build = await self.builder.build(
            request.project,
            detection,
            request.deployment_id,
            env_vars=request.env_vars,
            cancel_token=state.cancel_token,
            timeout=timeout,
        )
        if not build.success:
            state.output = build.logs
            raise BuildError(build.error or "Build failed")
        state.build = build
        return StepRecord(command=state.command, output=build.logs)

    async def _test(self, state: RunState, timeout: float) -> StepRecord:
        request = state.request
        detection = state.detection
        state.command = detection.test_command or "(no test command)"
        if self.settings.skip_tests:
            return StepRecord(command=state.command, skipped="tests disabled by configuration")
        if not detection.test_command:
            return StepRecord(command=state.command, skipped="no test command detected")

        try:
            result = await self.builder.run_tests(
                request.project,
                detection,
                state.build,
                request.deployment_id,
                cancel_token=state.cancel_token,
                timeout=timeout,
            )
        except CommandError as e:
            if not self.settings.allow_test_failures or e.cancelled or e.timed_out:
                state.output = "\n".join(filter(None, [e.stdout, e.stderr]))
                raise
            logger.warning("tests_failed_ignored", error=str(e))
            output = "\n".join(filter(None, [e.stdout, e.stderr]))
            return StepRecord(
                command=state.command,
                output=f"{output}\nTests failed ({e}); continuing because test failures are allowed",
            )
        return StepRecord(command=state.command, output=result.output)

    async def _post_deploy(self, state: RunState, timeout: float) -> StepRecord:
        request = state.request
        build = state.build
        if build.artifact_kind is ArtifactKind.CONTAINER:
            state.command = f"docker run {build.image_tag}"
        else:
            state.command = "publish static release"

        try:
            result = await asyncio.wait_for(
                self.deployer.deploy(
                    request.project,
                    state.detection,
                    build,
                    request.deployment_id,
                    env_vars=request.env_vars,
                    cancel_token=state.cancel_token,
                ),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise LaunchpadError(f"Deploy timed out after {timeout}s") from e
        state.deploy = result
        state.deployment.url = result.url

        lines = [f"URL: {result.url}"]
        if result.static_path:
            lines.append(f"Static path: {result.static_path}")
        if result.container_name:
            lines.append(f"Container: {result.container_name} ({(result.container_id or '')[:12]})")
        if result.port:
            lines.append(f"Port: {result.port}")
        return StepRecord(command=state.command, output="\n".join(lines))

    # Finalization

    async def _finish_success(self, state: RunState) -> PipelineResult:
        request = state.request
        deployment = state.deployment
        deployment.transition(DeploymentStatus.READY)

        status = await self._update(
            request.project, done=True, success=True, current_step="completed"
        )
        summary = "\n".join(
            [
                "Pipeline completed successfully",
                f"Steps executed: {', '.join(state.executed)}",
                f"Commit: {deployment.commit_sha}",
                f"URL: {deployment.url}",
                f"Total duration: {status.duration}s",
                f"Completed at: {status.end_time.isoformat()}",
            ]
        )
        self._write_log(request.project, PipelineStep.SUMMARY, summary)
        await self._update(request.project, logs={PipelineStep.SUMMARY.value: summary})

        logger.info("pipeline_completed", url=deployment.url, duration=status.duration)
        await self.events.publish_deployment_event(
            DEPLOYMENT_READY,
            request.deployment_id,
            {
                "project": request.project,
                "url": deployment.url,
                "commitSha": deployment.commit_sha,
                "duration": status.duration,
            },
        )
        await self.events.publish_metric(
            "pipeline.duration", status.duration or 0, {"project": request.project, "result": "ready"}
        )
        await self.events.publish_notification(
            request.project, f"Deployed {request.project} to {deployment.url}"
        )
        return PipelineResult(
            project=request.project,
            deployment_id=request.deployment_id,
            status=deployment.status,
            success=True,
            url=deployment.url,
            duration=status.duration,
        )

    async def _finish_failure(
        self, state: RunState, failure: StepFailed, failed_at: str | None = None
    ) -> PipelineResult:
        request = state.request
        deployment = state.deployment
        step_name = failed_at or failure.step.value

        if failure.cancelled:
            final = DeploymentStatus.CANCELLED
            error = f"{step_name} cancelled: {failure.message}"
            marker = f"✗ Cancelled: {failure.message[:STATUS_ERROR_PREVIEW]}"
        else:
            final = DeploymentStatus.FAILED
            error = f"{step_name} failed: {failure.message}"
            marker = f"✗ Failed: {failure.message[:STATUS_ERROR_PREVIEW]}"
        if not deployment.status.is_terminal:
            deployment.transition(final)

        logs = {} if failed_at else {step_name: marker}
        status = await self._update(
            request.project, done=True, success=False, error=error, logs=logs
        )
        error_log = "\n".join(
            [
                "Pipeline cancelled" if failure.cancelled else "Pipeline failed",
                f"Error: {failure.message}",
                f"Failed at: {step_name}",
                f"Duration: {status.duration or 0}s",
            ]
        )
        self._write_log(request.project, PipelineStep.ERROR, error_log)
        await self._update(request.project, logs={PipelineStep.ERROR.value: error_log})

        logger.error("pipeline_failed", step=step_name, error=failure.message, status=final.value)
        await self.events.publish_deployment_event(
            DEPLOYMENT_CANCELLED if failure.cancelled else DEPLOYMENT_FAILED,
            request.deployment_id,
            {"project": request.project, "step": step_name, "error": failure.message},
        )
        await self.events.publish_metric(
            "pipeline.duration",
            status.duration or 0,
            {"project": request.project, "result": final.value.lower()},
        )
        await self.events.publish_notification(
            request.project, error, level="warning" if failure.cancelled else "error"
        )
        return PipelineResult(
            project=request.project,
            deployment_id=request.deployment_id,
            status=deployment.status,
            success=False,
            error=error,
            duration=status.duration,
        )
