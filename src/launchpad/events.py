"""Event publishing for deployment lifecycle, build logs and audit trails."""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog

from launchpad.config import Settings, get_settings
from launchpad.models import utcnow

logger = structlog.get_logger()

TOPIC_DEPLOYMENTS = "deployments"
TOPIC_BUILD_LOGS = "build-logs"
TOPIC_METRICS = "metrics"
TOPIC_NOTIFICATIONS = "notifications"
TOPIC_AUDIT = "audit"

DEPLOYMENT_STARTED = "deployment.started"
DEPLOYMENT_STEP = "deployment.step"
DEPLOYMENT_READY = "deployment.ready"
DEPLOYMENT_FAILED = "deployment.failed"
DEPLOYMENT_CANCELLED = "deployment.cancelled"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeploymentEvent(_CamelModel):
    """Lifecycle event, keyed by deployment id."""

    event_type: str
    deployment_id: str
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())
    data: dict[str, Any] = Field(default_factory=dict)


class BuildLogLine(_CamelModel):
    deployment_id: str
    line: str
    stream: str = "stdout"
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


class EventPublisher:
    """Publishes JSON events to Redis streams, one stream per topic.

    Build-log lines also go out on a per-deployment PubSub channel for live
    tailing. Publishing is best effort: failures are logged, never raised.
    Without a Redis client every publish is a no-op.
    """

    def __init__(self, redis_client: redis.Redis | None, settings: Settings | None = None):
        self.redis = redis_client
        self.settings = settings or get_settings()

    def live_log_channel(self, deployment_id: str) -> str:
        return f"{self.settings.topic(TOPIC_BUILD_LOGS)}:{deployment_id}"

    async def publish_deployment_event(
        self, event_type: str, deployment_id: str, data: dict[str, Any] | None = None
    ) -> None:
        event = DeploymentEvent(event_type=event_type, deployment_id=deployment_id, data=data or {})
        await self._publish(TOPIC_DEPLOYMENTS, event.model_dump(by_alias=True), key=deployment_id)

    async def publish_build_log(self, deployment_id: str, line: str, stream: str = "stdout") -> None:
        """Publish one build output line to the topic and the live channel."""
        payload = BuildLogLine(deployment_id=deployment_id, line=line, stream=stream).model_dump(
            by_alias=True
        )
        await self._publish(TOPIC_BUILD_LOGS, payload, key=deployment_id)
        if self.redis is None:
            return
        try:
            await self.redis.publish(self.live_log_channel(deployment_id), json.dumps(payload))
        except RedisError as e:
            logger.warning("live_log_publish_failed", deployment_id=deployment_id, error=str(e))

    async def publish_metric(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        await self._publish(
            TOPIC_METRICS,
            {"name": name, "value": value, "tags": tags or {}, "timestamp": utcnow().isoformat()},
            key=name,
        )

    async def publish_notification(self, project: str, message: str, level: str = "info") -> None:
        await self._publish(
            TOPIC_NOTIFICATIONS,
            {
                "project": project,
                "message": message,
                "level": level,
                "timestamp": utcnow().isoformat(),
            },
            key=project,
        )

    async def publish_audit(self, action: str, project: str, data: dict[str, Any] | None = None) -> None:
        await self._publish(
            TOPIC_AUDIT,
            {
                "action": action,
                "project": project,
                "data": data or {},
                "timestamp": utcnow().isoformat(),
            },
            key=project,
        )

    async def _publish(self, topic: str, payload: dict[str, Any], key: str | None = None) -> None:
        if self.redis is None:
            return
        stream = self.settings.topic(topic)
        fields = {"data": json.dumps(payload)}
        if key is not None:
            fields["key"] = key
        try:
            await self.redis.xadd(
                stream,
                fields,
                maxlen=self.settings.event_stream_maxlen,
                approximate=True,
            )
        except RedisError as e:
            logger.warning("event_publish_failed", stream=stream, error=str(e))
