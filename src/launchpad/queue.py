"""Pipeline queue - global admission gate for pipeline runs."""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
import threading
from typing import Any

import structlog

from launchpad.config import Settings, get_settings
from launchpad.errors import DeploymentCancelled, QueueCleared
from launchpad.models import utcnow

logger = structlog.get_logger()

PipelineTask = Callable[[], Awaitable[Any]]


@dataclass
class QueueEntry:
    """A pipeline waiting for, or holding, an execution slot."""

    project: str
    task: PipelineTask
    future: asyncio.Future
    deployment_id: str | None = None
    enqueued_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None


class PipelineQueue:
    """Bounded FIFO admission of pipeline runs.

    At most ``max_concurrent`` runs execute at once, and never two for the
    same project: a project's later entry keeps its FIFO place but is only
    admitted after its running entry finishes. Entries behind it that belong
    to other projects may start first.
    """

    def __init__(self, max_concurrent: int | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.max_concurrent = max_concurrent or self.settings.max_concurrent
        self._waiting: deque[QueueEntry] = deque()
        self._running: dict[str, QueueEntry] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    def enqueue(
        self, project: str, task: PipelineTask, deployment_id: str | None = None
    ) -> asyncio.Future:
        """Queue ``task`` and return a future resolving to its result.

        Must be called from the event loop. The entry may be admitted
        before this returns.
        """
        loop = asyncio.get_running_loop()
        entry = QueueEntry(
            project=project,
            task=task,
            future=loop.create_future(),
            deployment_id=deployment_id,
        )
        with self._lock:
            self._waiting.append(entry)
            waiting = len(self._waiting)
        logger.info(
            "pipeline_queued",
            project=project,
            deployment_id=deployment_id,
            waiting=waiting,
            running=len(self._running),
        )
        self._dispatch()
        return entry.future

    async def submit(
        self, project: str, task: PipelineTask, deployment_id: str | None = None
    ) -> Any:
        """Queue ``task`` and wait for it to run to completion."""
        return await self.enqueue(project, task, deployment_id)

    def _dispatch(self) -> None:
        """Admit waiting entries while capacity allows."""
        admitted: list[QueueEntry] = []
        with self._lock:
            while len(self._running) < self.max_concurrent:
                entry = self._next_admissible()
                if entry is None:
                    break
                self._waiting.remove(entry)
                entry.started_at = utcnow()
                self._running[entry.project] = entry
                admitted.append(entry)

        for entry in admitted:
            logger.info(
                "pipeline_admitted",
                project=entry.project,
                deployment_id=entry.deployment_id,
                waited=round((entry.started_at - entry.enqueued_at).total_seconds(), 2),
            )
            task = asyncio.create_task(self._run(entry))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _next_admissible(self) -> QueueEntry | None:
        for entry in list(self._waiting):
            if entry.future.done():
                # Submitter gave up waiting
                self._waiting.remove(entry)
                continue
            if entry.project not in self._running:
                return entry
        return None

    async def _run(self, entry: QueueEntry) -> None:
        try:
            result = await entry.task()
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            logger.error(
                "pipeline_task_failed",
                project=entry.project,
                error=str(e),
                error_type=type(e).__name__,
            )
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            with self._lock:
                self._running.pop(entry.project, None)
            self._dispatch()

    def get_queue_position(self, project: str) -> int | None:
        """0 while running, 1-based rank among waiting entries, None if unknown."""
        with self._lock:
            if project in self._running:
                return 0
            for index, entry in enumerate(self._waiting, start=1):
                if entry.project == project:
                    return index
        return None

    def is_running(self, project: str) -> bool:
        with self._lock:
            return project in self._running

    def get_queue_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": len(self._running),
                "queued": len(self._waiting),
                "max_concurrent": self.max_concurrent,
                "running_projects": list(self._running),
                "queued_projects": [entry.project for entry in self._waiting],
            }

    def cancel(self, project: str) -> int:
        """Drop the project's waiting entries; running entries are not touched.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = [entry for entry in self._waiting if entry.project == project]
            for entry in removed:
                self._waiting.remove(entry)
        for entry in removed:
            if not entry.future.done():
                entry.future.set_exception(DeploymentCancelled(f"{project} cancelled while queued"))
        if removed:
            logger.info("queued_pipelines_cancelled", project=project, count=len(removed))
        return len(removed)

    def clear(self) -> int:
        """Reject every waiting entry."""
        with self._lock:
            removed = list(self._waiting)
            self._waiting.clear()
        for entry in removed:
            if not entry.future.done():
                entry.future.set_exception(QueueCleared("Queue cleared"))
        logger.info("queue_cleared", count=len(removed))
        return len(removed)

    async def drain(self) -> None:
        """Wait for every admitted run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
