"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the web app and the worker.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.config import Settings, settings as default_settings
from app.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry(settings: Settings = default_settings) -> bool:
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN to be set; returns False when disabled.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return False

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
    return True


def add_context(event, hint):
    """Tag events with the conversation being processed, when known."""
    extra = event.get("extra") or {}
    conversation_id = extra.get("conversation_id")
    if conversation_id:
        event.setdefault("tags", {})["conversation_id"] = conversation_id
    return event


def capture_exception(exc_info=None, **extra):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception:
            capture_exception(conversation_id=conversation_id)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in extra.items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exc_info)
