"""
Structured logging configuration using structlog.

Every record is one JSON object carrying the service name, environment
and whatever context the caller bound (instance_id, delivery_id, ...).
"""
import structlog
import logging
import sys

from gateway.config import settings

# Libraries whose per-request chatter would drown delivery logs
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def add_service_context(logger, method_name, event_dict):
    """Stamp service and environment on every record."""
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def configure_logging():
    """Configure structlog for JSON output; DEBUG in settings enables debug records."""
    level = logging.DEBUG if settings.DEBUG else logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with component or entity context bound.

    Usage:
        log = get_logger(component="delivery_scheduler")
        log.bind(delivery_id=delivery.id).warning("webhook_retry_scheduled", retry_count=2)
    """
    return logger.bind(**context)
