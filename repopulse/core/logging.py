"""structlog on top of stdlib logging, configured from ``REPOPULSE_LOG_*``."""

from __future__ import annotations

import logging
import logging.config
import os

import structlog

# Third-party loggers that are chatty at INFO during a harvest.
_QUIET_LOGGERS = ("sqlalchemy.engine", "asyncpg", "httpx", "httpcore")


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Explicit arguments win over the environment:
        REPOPULSE_LOG_LEVEL   level for ``repopulse.*`` loggers (default INFO)
        REPOPULSE_LOG_FORMAT  ``console`` or ``json`` (default console)
    """
    log_level = (level or os.environ.get("REPOPULSE_LOG_LEVEL", "INFO")).upper()
    log_format = (fmt or os.environ.get("REPOPULSE_LOG_FORMAT", "console")).lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if log_format == "json":
        shared_processors.append(structlog.processors.dict_tracebacks)
        renderer = structlog.processors.JSONRenderer()
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    loggers: dict[str, dict] = {"repopulse": {"level": log_level}}
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": shared_processors,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        renderer,
                    ],
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "structlog",
                },
            },
            "root": {"handlers": ["default"], "level": "WARNING"},
            "loggers": loggers,
        }
    )


def bind_repository(owner: str, repo: str):
    """Context manager tagging every log line inside it with ``repo=owner/repo``.

    Bound through contextvars, so it follows the asyncio tasks spawned
    inside the block (one per harvester).
    """
    return structlog.contextvars.bound_contextvars(repo=f"{owner}/{repo}")
