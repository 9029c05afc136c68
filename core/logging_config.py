"""Logging setup shared by the API process and scripts.

Stdlib logging carries uvicorn/SQLAlchemy output; structlog renders the
pipeline's structured events on top of it.
"""
import logging
import sys

import structlog

from core.settings import SETTINGS


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    level = (level or SETTINGS.APP.LOG_LEVEL).upper()
    json_logs = SETTINGS.APP.JSON_LOGS if json_logs is None else json_logs

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
