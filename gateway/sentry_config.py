"""
Sentry configuration for error tracking.

Captures unhandled exceptions plus permanently failed webhook deliveries
and storage outages in the background scheduler.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from gateway.config import settings
from gateway.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.
    
    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", environment=settings.ENVIRONMENT)


def add_context(event, hint):
    """
    Tag error events with the instance and delivery they concern.

    Callers pass these through sentry_sdk scopes; this hook copies them
    into searchable tags.
    """
    extra = event.get("extra") or {}
    tags = event.setdefault("tags", {})
    for key in ("instance_id", "delivery_id"):
        if key in extra:
            tags[key] = str(extra[key])
    return event


def capture_exception(exc_info=None, **context):
    """
    Capture an exception to Sentry.
    
    Usage:
        try:
            # some code
        except StorageUnavailable as e:
            capture_exception(e, instance_id=instance_id)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info", **context):
    """
    Capture a message to Sentry.
    
    Usage:
        capture_message("Webhook permanently failed", level="warning", delivery_id=42)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
