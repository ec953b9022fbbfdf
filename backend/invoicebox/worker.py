"""Dramatiq worker configuration.

This module configures logging and Sentry, then imports all tasks so
they are registered with the broker when the worker starts.

Run with:
    dramatiq invoicebox.worker

Set RENORMALIZE_CRON_ENABLED=true to periodically sweep attachments
still awaiting format conversion.
"""

import logging
import os
import threading
import time

from invoicebox.core.config import settings  # noqa: F401  (loads .env)
from invoicebox.core.observability import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Import tasks to register them
from invoicebox.core.tasks import renormalize_attachment, renormalize_pending  # noqa: F401,E402

logger.info("Tasks registered successfully")


def _maybe_start_renormalize_cron():  # pragma: no cover - simple orchestrator
    if os.getenv("RENORMALIZE_CRON_ENABLED", "false").lower() not in {"1", "true", "yes"}:
        return
    interval = int(os.getenv("RENORMALIZE_CRON_INTERVAL_SECONDS", "600"))
    batch_limit = int(os.getenv("RENORMALIZE_CRON_BATCH_LIMIT", "100"))

    def loop():
        while True:
            try:
                logger.info("[cron] enqueue renormalize_pending interval=%ss limit=%s", interval, batch_limit)
                renormalize_pending.send(limit=batch_limit)
            except Exception:
                logger.exception("[cron] failed to enqueue renormalize_pending")
            time.sleep(interval)

    t = threading.Thread(target=loop, name="renormalize-cron", daemon=True)
    t.start()
    logger.info("Renormalize cron loop started (interval=%ss)", interval)


_maybe_start_renormalize_cron()
