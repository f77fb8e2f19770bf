"""structlog setup for Vibeforge.

Every record, whether emitted through structlog or a stdlib logger (uvicorn,
httpx, the E2B and LLM SDKs), goes through the same processor chain and one
stdout handler. Production renders JSON; debug mode renders a colored console.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

from vibeforge.core.config import Settings

SERVICE_NAME = "vibeforge"

# SDK and transport loggers that are chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "e2b", "anthropic", "openai")


def add_correlation_id(logger, method, event_dict):
    """Attach the request's X-Request-ID, when there is one."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def add_service(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain and route stdlib logging through it.

    Must run before any module calls ``structlog.get_logger``, because loggers
    are cached on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines when True, ConsoleRenderer when False
    """
    shared = _shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    })

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_logging_from_settings(settings: Settings) -> None:
    """Debug mode logs at DEBUG to the console; otherwise INFO as JSON."""
    configure_structlog(
        log_level="DEBUG" if settings.debug else "INFO",
        json_logs=not settings.debug,
    )
