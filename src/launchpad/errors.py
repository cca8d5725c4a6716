"""Exception hierarchy for the deployment engine."""


class LaunchpadError(Exception):
    """Base class for engine errors."""


class CommandError(LaunchpadError):
    """A subprocess exited non-zero, timed out, was signalled or was cancelled."""

    def __init__(
        self,
        command: str,
        message: str,
        exit_code: int | None = None,
        signal: int | None = None,
        killed: bool = False,
        stderr: str = "",
        stdout: str = "",
        timed_out: bool = False,
        cancelled: bool = False,
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.signal = signal
        self.killed = killed
        self.stderr = stderr
        self.stdout = stdout
        self.timed_out = timed_out
        self.cancelled = cancelled

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "message": str(self),
            "exit_code": self.exit_code,
            "signal": self.signal,
            "killed": self.killed,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
        }


class CloneError(LaunchpadError):
    """Repository could not be cloned or checked out."""


class DetectionError(LaunchpadError):
    """Project tree could not be inspected at all."""


class BuildError(LaunchpadError):
    """Artifact construction failed."""


class HealthCheckTimeout(LaunchpadError):
    """A freshly started container never answered its health check."""

    def __init__(self, url: str, attempts: int, reason: str | None = None):
        message = f"Health check at {url} failed after {attempts} attempts"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class PortExhaustion(LaunchpadError):
    """No free port left in the configured range."""


class PermissionFixError(LaunchpadError):
    """Ownership or mode fixup failed; callers log it as a warning."""


class ProxyError(LaunchpadError):
    """Reverse proxy configuration could not be written or reloaded."""


class DeploymentCancelled(LaunchpadError):
    """The running pipeline was cancelled."""


class InvalidTransition(LaunchpadError):
    """Deployment status change not permitted from the current state."""


class QueueCleared(LaunchpadError):
    """A waiting pipeline was dropped from the queue before it started."""


class InvalidName(LaunchpadError):
    """Project name or deployment id is not a safe path segment."""
