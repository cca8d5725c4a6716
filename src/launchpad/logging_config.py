"""Structured logging for the launchpad worker and CLI.

Every process calls ``setup_logging`` once at startup. Output is JSON lines
for log shippers or coloured console output for local runs, chosen by
``LAUNCHPAD_LOG_FORMAT``. A pipeline run binds its project and deployment id
with ``bind_deployment_context`` so every line it emits, including those from
the git, builder and deployer services, can be grepped by deployment.

Usage:
    from launchpad.logging_config import setup_logging
    import structlog

    setup_logging(service_name="launchpad-worker")
    logger = structlog.get_logger()
    logger.info("pipeline_started", branch="main")
"""

import logging
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor

from launchpad.config import get_settings

SECRET_KEYS = frozenset({"token", "git_token", "password", "authorization"})


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values logged under secret-looking keys."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=False)
    return structlog.dev.ConsoleRenderer(
        colors=True,
        exception_formatter=structlog.dev.plain_traceback,
    )


def setup_logging(
    service_name: str | None = None,
    log_format: Literal["json", "console"] | None = None,
    log_level: str | None = None,
) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        service_name: Bound as ``service`` on every line, e.g. "launchpad-worker".
        log_format: "json" or "console".
        log_level: DEBUG, INFO, WARNING or ERROR.

    Omitted arguments come from the ``LAUNCHPAD_`` settings.
    """
    settings = get_settings()
    service_name = service_name or settings.service_name
    log_format = log_format or settings.log_format
    log_level = (log_level or settings.log_level).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level, logging.INFO),
        force=True,
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=False),
        # project / deployment_id bound per pipeline run
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name)
    structlog.get_logger().info(
        "logging_initialized",
        service=service_name,
        log_format=log_format,
        log_level=log_level,
    )


def bind_deployment_context(project: str, deployment_id: str) -> None:
    """Attach project and deployment id to every log line in the current task."""
    structlog.contextvars.bind_contextvars(project=project, deployment_id=deployment_id)


def get_deployment_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("deployment_id")


def clear_deployment_context() -> None:
    """Drop pipeline-scoped context variables, keeping the service binding."""
    structlog.contextvars.unbind_contextvars("project", "deployment_id")
