"""Launchpad worker - consumes deployment requests and runs pipelines.

Run standalone: python -m launchpad.main
"""

import asyncio
from collections.abc import Awaitable, Callable
import json
import os
import signal
from typing import Any

from pydantic import ValidationError
import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError
import structlog

from launchpad.config import Settings, get_settings
from launchpad.engine import DeploymentEngine
from launchpad.logging_config import setup_logging
from launchpad.models import DeploymentRequest, PipelineResult

logger = structlog.get_logger()

CONSUMER_NAME = f"launchpad-worker-{os.getpid()}"
RESULT_TTL = 3600

# Shutdown flag
_shutdown = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown
    logger.info("shutdown_signal_received", signal=signum)
    _shutdown = True


async def ensure_consumer_group(redis_client: redis.Redis, settings: Settings) -> None:
    """Ensure Redis consumer group exists."""
    try:
        await redis_client.xgroup_create(
            settings.request_stream, settings.consumer_group, id="0", mkstream=True
        )
        logger.info("consumer_group_created", group=settings.consumer_group)
    except ResponseError as e:
        # Group already exists
        if "BUSYGROUP" in str(e):
            logger.debug("consumer_group_exists", group=settings.consumer_group)
        else:
            raise


def _log_outcome(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning("deployment_not_run", error=str(error), error_type=type(error).__name__)
        return
    result: PipelineResult = future.result()
    logger.info(
        "deployment_finished",
        project=result.project,
        deployment_id=result.deployment_id,
        status=result.status.value,
        duration=result.duration,
    )


async def handle_deploy(engine: DeploymentEngine, data: dict[str, Any]) -> dict[str, Any]:
    """Queue a deployment without waiting for it to run."""
    request = DeploymentRequest.model_validate(data)
    future = engine.deploy(request)
    future.add_done_callback(_log_outcome)
    return {
        "success": True,
        "project": request.project,
        "deployment_id": request.deployment_id,
        "queue_position": engine.get_queue_position(request.project),
    }


async def handle_cancel(engine: DeploymentEngine, data: dict[str, Any]) -> dict[str, Any]:
    project = data.get("project")
    if not project:
        return {"success": False, "error": "project is required"}
    outcome = await engine.cancel(project, reason=data.get("reason") or "Cancelled by user")
    return {"success": True, "project": project, **outcome}


async def handle_status(engine: DeploymentEngine, data: dict[str, Any]) -> dict[str, Any]:
    project = data.get("project")
    if not project:
        return {"success": False, "error": "project is required"}
    return {
        "success": True,
        "status": engine.get_status(project).to_public(),
        "queue_position": engine.get_queue_position(project),
    }


Handler = Callable[[DeploymentEngine, dict[str, Any]], Awaitable[dict[str, Any]]]

HANDLERS: dict[str, Handler] = {
    "deploy": handle_deploy,
    "cancel": handle_cancel,
    "status": handle_status,
}


def parse_request(raw_data: dict[str, str]) -> dict[str, Any] | None:
    """Decode a stream entry: JSON under "data", or the flat fields themselves."""
    if "data" not in raw_data:
        return dict(raw_data)
    try:
        data = json.loads(raw_data["data"])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def process_request(engine: DeploymentEngine, data: dict[str, Any]) -> dict[str, Any]:
    """Dispatch one request; failures are returned, never raised."""
    command = data.get("command")
    handler = HANDLERS.get(command)
    if handler is None:
        logger.warning("unknown_command", command=command)
        return {"success": False, "error": f"Unknown command: {command}"}

    payload = {key: value for key, value in data.items() if key not in ("command", "request_id")}
    try:
        return await handler(engine, payload)
    except ValidationError as e:
        logger.warning("invalid_request", command=command, error=str(e))
        return {"success": False, "error": f"Invalid request: {e.errors(include_url=False)}"}
    except Exception as e:
        logger.error(
            "request_failed",
            command=command,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return {"success": False, "error": str(e)}


async def status_cleanup_loop(engine: DeploymentEngine, interval: float) -> None:
    """Periodically drop statuses older than the retention window."""
    while True:
        await asyncio.sleep(interval)
        engine.cleanup_statuses()


async def run_worker(settings: Settings | None = None) -> None:
    """Main worker loop."""
    settings = settings or get_settings()
    setup_logging(
        service_name=f"{settings.service_name}-worker",
        log_format=settings.log_format,
        log_level=settings.log_level,
    )

    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    engine = DeploymentEngine(settings, redis_client)
    await ensure_consumer_group(redis_client, settings)
    cleanup = asyncio.create_task(
        status_cleanup_loop(engine, settings.status_cleanup_interval)
    )

    logger.info(
        "worker_started",
        consumer=CONSUMER_NAME,
        stream=settings.request_stream,
        max_concurrent=settings.max_concurrent,
    )

    try:
        while not _shutdown:
            try:
                messages = await redis_client.xreadgroup(
                    groupname=settings.consumer_group,
                    consumername=CONSUMER_NAME,
                    streams={settings.request_stream: ">"},
                    count=10,
                    block=5000,
                )

                if not messages:
                    continue

                for _stream_name, entries in messages:
                    for entry_id, raw_data in entries:
                        try:
                            data = parse_request(raw_data)
                            if data is None:
                                logger.warning("malformed_request", entry_id=entry_id)
                                result = {"success": False, "error": "Malformed request"}
                                data = {}
                            else:
                                result = await process_request(engine, data)

                            request_id = data.get("request_id")
                            if request_id:
                                await redis_client.set(
                                    f"{settings.stream_prefix}:result:{request_id}",
                                    json.dumps(result, default=str),
                                    ex=RESULT_TTL,
                                )

                            await redis_client.xack(
                                settings.request_stream, settings.consumer_group, entry_id
                            )
                            logger.debug("request_acked", entry_id=entry_id)

                        except RedisError as e:
                            logger.error(
                                "request_processing_error",
                                entry_id=entry_id,
                                error=str(e),
                                error_type=type(e).__name__,
                            )
                            # Not acked; redelivered from the pending list

            except asyncio.CancelledError:
                logger.info("worker_cancelled")
                break
            except RedisError as e:
                logger.error("worker_loop_error", error=str(e))
                await asyncio.sleep(1)

    finally:
        cleanup.cancel()
        await engine.shutdown()
        await redis_client.aclose()
        logger.info("worker_shutdown")


def main():
    """Entry point for running as module."""
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
