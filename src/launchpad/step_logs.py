"""Per-project step log files: <projects_dir>/<project>/logs/<step>.log."""

from pathlib import Path

import structlog

from launchpad.config import Settings, get_settings
from launchpad.models import LOG_STEPS, PipelineStep, validate_name

logger = structlog.get_logger()


class StepLogs:
    """Reads and writes one log file per pipeline step."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.projects_dir = Path(self.settings.projects_dir)

    def logs_dir(self, project: str) -> Path:
        return self.projects_dir / validate_name(project) / "logs"

    def path_for(self, project: str, step: PipelineStep | str) -> Path:
        name = step.value if isinstance(step, PipelineStep) else step
        return self.logs_dir(project) / f"{name}.log"

    def write(self, project: str, step: PipelineStep | str, content: str) -> Path:
        """Replace the step's log file with ``content``."""
        path = self.path_for(project, step)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def append(self, project: str, step: PipelineStep | str, line: str) -> None:
        path = self.path_for(project, step)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(line if line.endswith("\n") else f"{line}\n")

    def reset(self, project: str) -> None:
        """Remove step logs left over from the previous run of a project."""
        for step in LOG_STEPS:
            self.path_for(project, step).unlink(missing_ok=True)

    def read(self, project: str, step: PipelineStep | str) -> str | None:
        try:
            return self.path_for(project, step).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("step_log_read_failed", project=project, step=str(step), error=str(e))
            return None

    def read_all(self, project: str) -> dict[str, str | None]:
        """All step logs of a project, verbatim; missing steps map to None."""
        return {step.value: self.read(project, step) for step in LOG_STEPS}
