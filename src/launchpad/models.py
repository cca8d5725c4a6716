"""Data models for deployments, pipelines and per-call outcomes."""

from datetime import UTC, datetime
from enum import Enum
import re
from typing import Any
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from launchpad.errors import InvalidName, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(UTC)


# Names end up as path segments, container names and vhost file names
PROJECT_NAME_PATTERN = r"^[a-zA-Z0-9_-]{2,50}$"
DEPLOYMENT_ID_PATTERN = r"^[a-zA-Z0-9_-]{1,64}$"

_NAME_PATTERNS = {
    "project": re.compile(PROJECT_NAME_PATTERN),
    "deployment id": re.compile(DEPLOYMENT_ID_PATTERN),
}


def validate_name(value: str, kind: str = "project") -> str:
    """Return ``value`` unchanged if it is a valid project name or deployment id.

    Raises:
        InvalidName: value contains anything but letters, digits, hyphens and
            underscores, or has the wrong length
    """
    if not isinstance(value, str) or not _NAME_PATTERNS[kind].fullmatch(value):
        raise InvalidName(f"Invalid {kind}: {value!r}")
    return value


class DeploymentStatus(str, Enum):
    """Lifecycle of a single deployment."""

    PENDING = "PENDING"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    READY = "READY"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {DeploymentStatus.READY, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
)

_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset(
        {DeploymentStatus.BUILDING, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
    ),
    DeploymentStatus.BUILDING: frozenset(
        {DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
    ),
    DeploymentStatus.DEPLOYING: frozenset(
        {DeploymentStatus.READY, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
    ),
    # Terminal: only cancellation of a finished deployment is accepted
    DeploymentStatus.READY: frozenset({DeploymentStatus.CANCELLED}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.CANCELLED}),
    DeploymentStatus.CANCELLED: frozenset(),
}


class PipelineStep(str, Enum):
    """Pipeline steps in execution order; values double as log file names."""

    PRE_DEPLOY = "preDeploy"
    BUILD = "build"
    TEST = "test"
    POST_DEPLOY = "postDeploy"
    SUMMARY = "summary"
    ERROR = "error"


EXECUTED_STEPS = (
    PipelineStep.PRE_DEPLOY,
    PipelineStep.BUILD,
    PipelineStep.TEST,
    PipelineStep.POST_DEPLOY,
)
LOG_STEPS = (*EXECUTED_STEPS, PipelineStep.SUMMARY, PipelineStep.ERROR)


class ProjectType(str, Enum):
    STATIC = "static"
    FRONTEND = "frontend"
    BACKEND = "backend"
    FULLSTACK = "fullstack"
    UNKNOWN = "unknown"


class ArtifactKind(str, Enum):
    """What the builder produces and the deployer publishes."""

    STATIC = "static"
    CONTAINER = "container"


class GitProvider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    CUSTOM = "custom"


class Deployment(BaseModel):
    """One attempt to build and publish a commit of a project."""

    project: str = Field(..., description="Project identity (slug)")
    deployment_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    branch: str = "main"
    commit_sha: str | None = None
    commit_message: str | None = None
    commit_author: str | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    logs: str | None = None
    url: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    def transition(self, status: DeploymentStatus) -> None:
        """Move to a new status, enforcing terminal-state immutability.

        Raises:
            InvalidTransition: change not permitted from the current status
        """
        if status == self.status:
            return
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Deployment {self.deployment_id}: {self.status.value} -> {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()


class DeploymentRequest(BaseModel):
    """Request to deploy a project from a repository."""

    project: str = Field(
        ..., pattern=PROJECT_NAME_PATTERN, description="Project identity (slug)"
    )
    repo_url: str = Field(..., description="Git clone URL")
    branch: str = "main"
    token: str | None = Field(default=None, description="Access token for private repos")
    deployment_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex, pattern=DEPLOYMENT_ID_PATTERN
    )
    root_directory: str | None = Field(
        default=None, description="Subdirectory that holds the project manifest"
    )
    install_command: str | None = None
    build_command: str | None = None
    start_command: str | None = None
    test_command: str | None = None
    output_directory: str | None = None
    port: int | None = Field(default=None, description="Port the app listens on in its container")
    env_vars: dict[str, str] = Field(default_factory=dict)

    def overrides(self) -> dict[str, Any]:
        """Explicit per-project configuration that beats detected defaults."""
        return {
            "install_command": self.install_command,
            "build_command": self.build_command,
            "start_command": self.start_command,
            "test_command": self.test_command,
            "output_directory": self.output_directory,
            "port": self.port,
        }


class PipelineStatus(BaseModel):
    """Progress of the current pipeline of a project, polled externally."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project: str
    deployment_id: str | None = None
    current_step: str | None = None
    step_index: int = 0
    total_steps: int = 0
    logs: dict[str, str] = Field(default_factory=dict)
    done: bool = False
    success: bool = False
    error: str | None = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    duration: int | None = None
    found: bool = True

    @classmethod
    def not_found(cls, project: str) -> "PipelineStatus":
        return cls(project=project, found=False, error="Pipeline not found")

    def to_public(self) -> dict[str, Any]:
        """camelCase JSON-ready view for API and cache consumers."""
        return self.model_dump(mode="json", by_alias=True)


class DetectionResult(BaseModel):
    """What the detector inferred about a checked-out tree."""

    framework: str = "unknown"
    language: str = "unknown"
    package_manager: str | None = None
    project_type: ProjectType = ProjectType.UNKNOWN
    install_command: str | None = None
    build_command: str | None = None
    start_command: str | None = None
    test_command: str | None = None
    output_directory: str | None = None
    project_root: str = "."
    port: int = 3000
    node_version: str | None = None
    dockerfile_exists: bool = False
    # Image that runs install, static builds and source-tree tests; None means the default
    toolchain_image: str | None = None
    confidence: int = 0
    env: dict[str, str] = Field(default_factory=dict)

    @property
    def artifact_kind(self) -> ArtifactKind:
        if self.dockerfile_exists:
            return ArtifactKind.CONTAINER
        if self.project_type in (ProjectType.STATIC, ProjectType.FRONTEND, ProjectType.UNKNOWN):
            return ArtifactKind.STATIC
        return ArtifactKind.CONTAINER

    def with_overrides(self, **overrides: Any) -> "DetectionResult":
        """Copy with explicit configuration applied; None values keep the detected default."""
        update = {key: value for key, value in overrides.items() if value is not None}
        return self.model_copy(update=update)


class PipelineConfig(BaseModel):
    """Per-step commands a repository pins in its pipeline.json.

    Keys are the step names (``preDeploy``, ``build``, ``test``) plus
    ``install``, ``start``, ``outputDirectory`` and ``port``. ``preDeploy``
    is an alias for ``install``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    pre_deploy: str | None = None
    install: str | None = None
    build: str | None = None
    test: str | None = None
    start: str | None = None
    post_deploy: str | None = None
    output_directory: str | None = None
    port: int | None = None

    def overrides(self) -> dict[str, Any]:
        return {
            "install_command": self.install or self.pre_deploy,
            "build_command": self.build,
            "start_command": self.start,
            "test_command": self.test,
            "output_directory": self.output_directory,
            "port": self.port,
        }


class CommitInfo(BaseModel):
    hash: str
    author: str
    email: str | None = None
    message: str
    timestamp: str


class BranchInfo(BaseModel):
    name: str
    commit: str = ""
    is_remote: bool = False


class RepoInfo(BaseModel):
    """Classification of a repository URL."""

    provider: GitProvider
    owner: str = ""
    repo: str = ""
    base_url: str = ""
    is_valid: bool = False


class CloneResult(BaseModel):
    success: bool
    path: str | None = None
    commit_hash: str | None = None
    branch: str | None = None
    author: str | None = None
    message: str | None = None
    timestamp: str | None = None
    error: str | None = None


class BuildResult(BaseModel):
    success: bool
    artifact_kind: ArtifactKind
    artifact_id: str | None = Field(
        default=None, description="Image tag, or static:<path> for static bundles"
    )
    image_tag: str | None = None
    logs: str = ""
    duration: float = 0.0
    error: str | None = None


class DeployResult(BaseModel):
    success: bool
    url: str | None = None
    container_id: str | None = None
    container_name: str | None = None
    port: int | None = None
    static_path: str | None = None
    error: str | None = None


class PipelineResult(BaseModel):
    """Final outcome handed back to whoever submitted the deployment."""

    project: str
    deployment_id: str
    status: DeploymentStatus
    success: bool
    url: str | None = None
    error: str | None = None
    duration: int | None = None
