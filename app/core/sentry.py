"""Sentry error tracking for the analysis workers.

Enabled only when ``SENTRY_DSN`` is set. Events raised while a report is
being processed are tagged with its id.
"""

import logging

from app.core.config import settings
from app.core.logging import current_report_id

logger = logging.getLogger(__name__)


def tag_report(event: dict, hint: dict) -> dict:
    report_id = current_report_id.get()
    if report_id:
        event.setdefault("tags", {})["report_id"] = report_id
    return event


def init_sentry() -> bool:
    """Returns True when Sentry was initialised."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=tag_report,
        integrations=[CeleryIntegration(), SqlalchemyIntegration()],
    )
    logger.info("Sentry initialized for %s workers", settings.app_env)
    return True
