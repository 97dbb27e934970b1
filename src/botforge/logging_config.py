"""Structured logging for botforge.

Application events (``deployment_status_changed``, ``panel_server_created``,
...) go through structlog to stdout, as JSON or colored console lines. They
are separate from the user-visible deployment log kept on each record.

Bot configuration carries secrets (session ids, tokens), so a masking
processor replaces config values with their key names before rendering.

Usage:
    from botforge.logging_config import get_logger, setup_logging

    setup_logging()
    logger = get_logger(__name__)
    logger.info("deployment_requested", deployment_id=deployment_id)
"""

import logging
import re
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor

MASK = "***"

# Event keys whose values are whole bot configs
CONFIG_KEYS = frozenset({"config", "env", "env_vars", "environment"})

SECRET_KEY_RE = re.compile(r"(secret|token|password|api_key|session|authorization)", re.IGNORECASE)

# Chatty at INFO: one line per panel poll or access log
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def mask_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep bot config values and credentials out of application logs."""
    for key, value in event_dict.items():
        if key in CONFIG_KEYS and isinstance(value, dict):
            event_dict[key] = {name: MASK for name in value}
        elif SECRET_KEY_RE.search(key) and value is not None:
            event_dict[key] = MASK
    return event_dict


def _processors(log_format: str) -> list[Processor]:
    processors: list[Processor] = [
        # deployment_id is bound per pipeline task, request_id per API request
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(exception_formatter=structlog.dev.plain_traceback)
        )
    return processors


def setup_logging(
    service_name: str | None = None,
    log_format: Literal["json", "console"] | None = None,
    log_level: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Arguments left as None come from Settings (SERVICE_NAME, LOG_FORMAT, LOG_LEVEL).
    """
    from botforge.config import get_settings

    settings = get_settings()
    service_name = service_name or settings.service_name
    log_format = log_format or settings.log_format
    log_level = (log_level or settings.log_level).upper()

    level = getattr(logging, log_level, logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_processors(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)

    get_logger(__name__).debug("logging_configured", log_format=log_format, log_level=log_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
