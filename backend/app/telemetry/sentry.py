"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the arq worker.

Related files:
- app/main.py: Initializes Sentry on app startup
- app/workers/arq_worker.py: Initializes Sentry on worker startup
- app/services/store_sync_service.py: Reports unexpected background sync failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Customer emails flow through order sync
        release=os.environ.get("RELEASE_VERSION"),
    )

    logger.info("[SENTRY] Initialized for %s environment", environment)
    return True


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked, e.g. a background sync that failed after its trigger returned.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "store_sync", "store_id": store_id})
    """
    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
