"""Error reporting for mailgate: Sentry setup and its structlog hook."""

from __future__ import annotations

import logging

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration
from structlog_sentry import SentryProcessor


def init_sentry(dsn: str, production: bool = False) -> bool:
    """Start the Sentry client when a DSN is configured.

    Message bodies and addresses are never attached (``send_default_pii`` is
    off); only the structured log event reaches Sentry.

    Returns:
        True when the client was started, False for an empty *dsn*.
    """
    if not dsn:
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment="production" if production else "development",
        traces_sample_rate=0.1,
        send_default_pii=False,
        integrations=[
            # structlog-sentry forwards errors; stdlib capture would duplicate them.
            LoggingIntegration(event_level=None, level=None),
        ],
    )
    return True


def get_sentry_processor() -> structlog.types.Processor:
    """Processor that ships ``error`` and worse log events to Sentry.

    Needs ``level`` in the event dict, so it runs after ``add_log_level``.
    """
    return SentryProcessor(event_level=logging.ERROR)
