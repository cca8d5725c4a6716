"""In-memory pipeline status store, polled by external callers."""

from datetime import timedelta
import threading
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError
import structlog

from launchpad.config import Settings, get_settings
from launchpad.models import PipelineStatus, utcnow

if TYPE_CHECKING:
    from launchpad.cache import Cache

logger = structlog.get_logger()

STATUS_CACHE_PREFIX = "pipeline:status"


class StatusStore:
    """Project -> PipelineStatus map guarded by a mutex.

    Callers always get copies, so a snapshot never changes under them.
    When a cache is attached, ``mirror`` pushes snapshots to it for other
    processes to read.
    """

    def __init__(self, settings: Settings | None = None, cache: "Cache | None" = None):
        self.settings = settings or get_settings()
        self.cache = cache
        self._statuses: dict[str, PipelineStatus] = {}
        self._lock = threading.Lock()

    def initialize_status(
        self, project: str, deployment_id: str | None = None, total_steps: int = 0
    ) -> PipelineStatus:
        """Start a fresh entry for a new run, replacing any previous one."""
        status = PipelineStatus(
            project=project,
            deployment_id=deployment_id,
            total_steps=total_steps,
        )
        with self._lock:
            self._statuses[project] = status
            return status.model_copy(deep=True)

    def update_status(self, project: str, **changes: Any) -> PipelineStatus:
        """Merge ``changes`` into the project's entry, creating it if needed.

        ``logs`` is merged key by key. Setting ``done=True`` stamps
        ``end_time`` and computes ``duration`` in whole seconds.
        """
        with self._lock:
            current = self._statuses.get(project) or PipelineStatus(project=project)
            logs = changes.pop("logs", None)
            update = dict(changes)
            if logs:
                update["logs"] = {**current.logs, **logs}
            if update.get("done"):
                end_time = utcnow()
                update["end_time"] = end_time
                update["duration"] = round((end_time - current.start_time).total_seconds())
            status = current.model_copy(update=update)
            self._statuses[project] = status
            return status.model_copy(deep=True)

    def get_status(self, project: str) -> PipelineStatus:
        """Current entry, or the not-found marker."""
        with self._lock:
            status = self._statuses.get(project)
            if status is None:
                return PipelineStatus.not_found(project)
            return status.model_copy(deep=True)

    def get_all_statuses(self) -> dict[str, PipelineStatus]:
        with self._lock:
            return {name: status.model_copy(deep=True) for name, status in self._statuses.items()}

    def clear_status(self, project: str) -> bool:
        with self._lock:
            return self._statuses.pop(project, None) is not None

    def cleanup_old_statuses(self, retention_hours: int | None = None) -> list[str]:
        """Drop entries whose run started before the retention window.

        Returns:
            Names of removed projects
        """
        hours = retention_hours if retention_hours is not None else self.settings.status_retention_hours
        cutoff = utcnow() - timedelta(hours=hours)
        with self._lock:
            expired = [
                name for name, status in self._statuses.items() if status.start_time < cutoff
            ]
            for name in expired:
                del self._statuses[name]
        if expired:
            logger.info("statuses_cleaned_up", removed=expired, retention_hours=hours)
        return expired

    async def mirror(self, status: PipelineStatus) -> None:
        """Push a snapshot to the attached cache, if any."""
        if self.cache is None:
            return
        try:
            await self.cache.set(
                f"{STATUS_CACHE_PREFIX}:{status.project}",
                status.to_public(),
                ttl=self.settings.status_cache_ttl,
            )
        except RedisError as e:
            logger.warning("status_mirror_failed", project=status.project, error=str(e))
