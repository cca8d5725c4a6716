"""Builder service - turns a detected project into a deployable artifact."""

from pathlib import Path
import shlex
import time

from docker.errors import DockerException
import structlog

from launchpad.command import CancelToken, CommandResult, CommandRunner
from launchpad.config import Settings, get_settings
from launchpad.docker_client import (
    LABEL_DEPLOYMENT,
    LABEL_MANAGED,
    LABEL_PROJECT,
    DockerClientWrapper,
)
from launchpad.dockerfiles import DOCKERIGNORE, GENERATED_DOCKERFILE, generate_dockerfile
from launchpad.errors import CommandError
from launchpad.events import EventPublisher
from launchpad.models import ArtifactKind, BuildResult, DetectionResult, PipelineStep
from launchpad.step_logs import StepLogs

logger = structlog.get_logger()


class BuildLogSink:
    """Streams build output to build.log and the build-log topic as it arrives."""

    def __init__(
        self,
        project: str,
        deployment_id: str,
        step_logs: StepLogs,
        events: EventPublisher,
        step: PipelineStep = PipelineStep.BUILD,
    ):
        self.deployment_id = deployment_id
        self.events = events
        self.path = step_logs.path_for(project, step)
        self.lines = 0

    def __enter__(self) -> "BuildLogSink":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("w", encoding="utf-8")
        return self

    def __exit__(self, *exc_info) -> None:
        self._file.close()

    async def __call__(self, line: str, stream: str) -> None:
        self._file.write(f"{line}\n")
        self._file.flush()
        self.lines += 1
        await self.events.publish_build_log(self.deployment_id, line, stream)


class BuilderService:
    """Builds container images and static bundles under resource caps."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        docker_client: DockerClientWrapper | None = None,
        events: EventPublisher | None = None,
        step_logs: StepLogs | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.runner = runner or CommandRunner(self.settings)
        self.docker = docker_client or DockerClientWrapper()
        self.events = events or EventPublisher(None, self.settings)
        self.step_logs = step_logs or StepLogs(self.settings)

    def image_name(self, project: str) -> str:
        name = f"{self.settings.image_prefix}/{project}"
        if self.settings.registry_url:
            name = f"{self.settings.registry_url.rstrip('/')}/{name}"
        return name

    def image_tag(self, project: str, deployment_id: str) -> str:
        return f"{self.image_name(project)}:{deployment_id[:8]}"

    def _toolchain_command(
        self,
        project_root: str,
        script: str,
        name: str,
        env: dict[str, str] | None = None,
        image: str | None = None,
    ) -> str:
        """``docker run`` of ``script`` inside a resource-capped toolchain container."""
        args = [
            "docker",
            "run",
            "--rm",
            "--name",
            name,
            "-v",
            f"{project_root}:/app",
            "-w",
            "/app",
            f"--memory={self.settings.build_memory}",
            f"--cpus={self.settings.build_cpus}",
        ]
        for key, value in sorted((env or {}).items()):
            args += ["-e", f"{key}={value}"]
        args += [image or self.settings.toolchain_image, "sh", "-c", script]
        return shlex.join(args)

    async def _force_remove(self, container_name: str) -> None:
        """Stop a toolchain container left behind by a killed ``docker run``."""
        try:
            await self.docker.remove_container(container_name)
        except DockerException as e:
            logger.warning("container_cleanup_failed", container=container_name, error=str(e))

    async def install(
        self,
        project: str,
        detection: DetectionResult,
        deployment_id: str,
        cancel_token: CancelToken | None = None,
        timeout: float | None = None,
    ) -> CommandResult | None:
        """Install dependencies for static artifacts.

        Container artifacts install inside their image build, so this is a
        no-op for them and for projects without an install command.
        """
        if detection.artifact_kind is ArtifactKind.CONTAINER or not detection.install_command:
            return None
        name = f"{self.settings.container_prefix}-install-{deployment_id[:8]}"
        command = self._toolchain_command(
            detection.project_root,
            detection.install_command,
            name,
            env=detection.env,
            image=detection.toolchain_image,
        )
        logger.info("install_started", project=project, command=detection.install_command)
        try:
            return await self.runner.run(
                command,
                timeout=timeout or self.settings.default_timeout,
                cancel_token=cancel_token,
            )
        except CommandError:
            await self._force_remove(name)
            raise

    async def build(
        self,
        project: str,
        detection: DetectionResult,
        deployment_id: str,
        env_vars: dict[str, str] | None = None,
        cancel_token: CancelToken | None = None,
        timeout: float | None = None,
    ) -> BuildResult:
        """Produce the artifact; failures come back as ``success=False``."""
        timeout = timeout or self.settings.build_timeout
        if detection.artifact_kind is ArtifactKind.STATIC:
            return await self._build_static(
                project, detection, deployment_id, env_vars, cancel_token, timeout
            )
        return await self._build_image(
            project, detection, deployment_id, cancel_token, timeout
        )

    async def _build_static(
        self,
        project: str,
        detection: DetectionResult,
        deployment_id: str,
        env_vars: dict[str, str] | None,
        cancel_token: CancelToken | None,
        timeout: float,
    ) -> BuildResult:
        artifact_id = f"static:{detection.project_root}"
        if not detection.build_command:
            logger.info("static_build_skipped", project=project, reason="no build command")
            return BuildResult(
                success=True,
                artifact_kind=ArtifactKind.STATIC,
                artifact_id=artifact_id,
                logs="No build command; serving files as-is",
            )

        name = f"{self.settings.container_prefix}-build-{deployment_id[:8]}"
        env = {**detection.env, **(env_vars or {})}
        command = self._toolchain_command(
            detection.project_root,
            detection.build_command,
            name,
            env=env,
            image=detection.toolchain_image,
        )
        started = time.monotonic()
        logger.info(
            "static_build_started",
            project=project,
            framework=detection.framework,
            command=detection.build_command,
        )
        with BuildLogSink(project, deployment_id, self.step_logs, self.events) as sink:
            try:
                result = await self.runner.run(
                    command, timeout=timeout, cancel_token=cancel_token, on_line=sink
                )
            except CommandError as e:
                await self._force_remove(name)
                logger.error("static_build_failed", project=project, error=str(e))
                return BuildResult(
                    success=False,
                    artifact_kind=ArtifactKind.STATIC,
                    logs="\n".join(filter(None, [e.stdout, e.stderr])),
                    duration=time.monotonic() - started,
                    error=str(e),
                )

        logger.info("static_build_completed", project=project, duration=round(result.duration, 1))
        return BuildResult(
            success=True,
            artifact_kind=ArtifactKind.STATIC,
            artifact_id=artifact_id,
            logs=result.output,
            duration=result.duration,
        )

    def _prepare_context(self, detection: DetectionResult) -> tuple[str, bool]:
        """Dockerfile name to build with, and whether it was generated."""
        root = Path(detection.project_root)
        dockerignore = root / ".dockerignore"
        if not dockerignore.exists():
            dockerignore.write_text(DOCKERIGNORE, encoding="utf-8")

        if detection.dockerfile_exists and (root / "Dockerfile").exists():
            return "Dockerfile", False

        (root / GENERATED_DOCKERFILE).write_text(generate_dockerfile(detection), encoding="utf-8")
        logger.info("dockerfile_generated", framework=detection.framework)
        return GENERATED_DOCKERFILE, True

    async def _build_image(
        self,
        project: str,
        detection: DetectionResult,
        deployment_id: str,
        cancel_token: CancelToken | None,
        timeout: float,
    ) -> BuildResult:
        image = self.image_tag(project, deployment_id)
        started = time.monotonic()
        try:
            dockerfile, generated = self._prepare_context(detection)
        except OSError as e:
            logger.error("build_context_failed", project=project, error=str(e))
            return BuildResult(
                success=False,
                artifact_kind=ArtifactKind.CONTAINER,
                image_tag=image,
                error=f"Failed to prepare build context: {e}",
            )
        command = shlex.join(
            [
                "docker",
                "build",
                f"--memory={self.settings.build_memory}",
                f"--cpu-quota={int(self.settings.build_cpus * 100000)}",
                "-f",
                dockerfile,
                "-t",
                image,
                "--label",
                f"{LABEL_MANAGED}=true",
                "--label",
                f"{LABEL_PROJECT}={project}",
                "--label",
                f"{LABEL_DEPLOYMENT}={deployment_id}",
                ".",
            ]
        )
        logger.info(
            "image_build_started",
            project=project,
            image=image,
            framework=detection.framework,
            generated_dockerfile=generated,
        )

        try:
            with BuildLogSink(project, deployment_id, self.step_logs, self.events) as sink:
                result = await self.runner.run(
                    command,
                    cwd=detection.project_root,
                    timeout=timeout,
                    # Legacy builder honours --memory / --cpu-quota
                    env={"DOCKER_BUILDKIT": "0"},
                    cancel_token=cancel_token,
                    on_line=sink,
                )
        except CommandError as e:
            # Never leave a half-built image tagged as usable
            try:
                await self.docker.remove_image(image)
            except DockerException as cleanup_error:
                logger.warning("image_cleanup_failed", image=image, error=str(cleanup_error))
            logger.error("image_build_failed", project=project, image=image, error=str(e))
            return BuildResult(
                success=False,
                artifact_kind=ArtifactKind.CONTAINER,
                image_tag=image,
                logs="\n".join(filter(None, [e.stdout, e.stderr])),
                duration=time.monotonic() - started,
                error=str(e),
            )
        finally:
            if generated:
                (Path(detection.project_root) / GENERATED_DOCKERFILE).unlink(missing_ok=True)

        logs = result.output
        if self.settings.registry_url:
            logs = f"{logs}\n{await self.push_image(image, cancel_token)}"

        logger.info("image_build_completed", project=project, image=image, duration=round(result.duration, 1))
        return BuildResult(
            success=True,
            artifact_kind=ArtifactKind.CONTAINER,
            artifact_id=image,
            image_tag=image,
            logs=logs,
            duration=result.duration,
        )

    async def push_image(self, image: str, cancel_token: CancelToken | None = None) -> str:
        """Push to the configured registry; a failed push only warns."""
        try:
            await self.runner.run(
                shlex.join(["docker", "push", image]),
                timeout=self.settings.default_timeout,
                cancel_token=cancel_token,
            )
        except CommandError as e:
            logger.warning("image_push_failed", image=image, error=str(e))
            return f"Push to registry failed: {e}"
        logger.info("image_pushed", image=image)
        return f"Pushed {image}"

    async def run_tests(
        self,
        project: str,
        detection: DetectionResult,
        build: BuildResult,
        deployment_id: str,
        cancel_token: CancelToken | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run the test command inside the built image, or in a toolchain container.

        Static bundles and compiled projects whose runtime image lacks their
        SDK (those with a ``toolchain_image``) are tested on the source tree.

        Raises:
            CommandError: tests failed, timed out or were cancelled
        """
        name = f"{self.settings.container_prefix}-test-{deployment_id[:8]}"
        script = detection.test_command or "true"
        in_image = build.artifact_kind is ArtifactKind.CONTAINER and build.image_tag
        if in_image and not detection.toolchain_image:
            command = shlex.join(
                [
                    "docker",
                    "run",
                    "--rm",
                    "--name",
                    name,
                    f"--memory={self.settings.build_memory}",
                    f"--cpus={self.settings.build_cpus}",
                    "--entrypoint",
                    "sh",
                    build.image_tag,
                    "-c",
                    script,
                ]
            )
        else:
            command = self._toolchain_command(
                detection.project_root,
                script,
                name,
                env=detection.env,
                image=detection.toolchain_image,
            )

        logger.info("tests_started", project=project, command=script)
        try:
            return await self.runner.run(
                command,
                timeout=timeout or self.settings.test_timeout,
                cancel_token=cancel_token,
            )
        except CommandError:
            await self._force_remove(name)
            raise

    async def remove_image(self, image: str) -> None:
        try:
            await self.docker.remove_image(image)
        except DockerException as e:
            logger.warning("image_remove_failed", image=image, error=str(e))
