"""
Sentry error tracking for the segmentation service.

Optional: everything here is a no-op until SENTRY_DSN is configured.
Reports unhandled API errors and failed reconcile jobs, which otherwise
only surface in logs.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from segmentation.config import settings

logger = logging.getLogger(__name__)

_sentry_initialized = False

SENSITIVE_HEADERS = ("authorization", "cookie", "x-internal-api-key")


def init_sentry(release: Optional[str] = None) -> bool:
    """Initialize the SDK. Returns whether error tracking is enabled."""
    global _sentry_initialized

    if not settings.SENTRY_DSN:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=release,
            traces_sample_rate=0.1 if settings.is_production else 1.0,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
            ],
            before_send=filter_sensitive_data,
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
        )
    except Exception as e:
        logger.warning(f"Failed to initialize Sentry: {e}")
        return False

    _sentry_initialized = True
    logger.info(f"Sentry initialized for {settings.ENVIRONMENT} environment")
    return True


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Mask credentials in request headers before an event leaves the process."""
    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = "[Filtered]"
    return event


def capture_exception(exception: BaseException, context: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Report an exception with extra context. Returns the event ID when sent."""
    if not _sentry_initialized:
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in (context or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(exception)
