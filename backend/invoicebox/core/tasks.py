"""Dramatiq task definitions for background processing.

Attachments whose format conversion failed during a request are kept in
their original encoding and linked with status ``pending_normalization``.
The actors below retry the conversion outside the request cycle.

To run these tasks start a Dramatiq worker pointed at the worker module:

```bash
dramatiq invoicebox.worker --processes 1 --threads 2
```

The broker is Redis (``DRAMATIQ_BROKER_URL`` falling back to
``REDIS_URL``).  With ``TASK_BROKER=stub`` an in-memory ``StubBroker`` is
used instead, which is what the test-suite does.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from invoicebox.core.config import settings
from invoicebox.core.errors import ConversionError, NotFoundError
from invoicebox.core.observability import sentry_breadcrumb

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build_broker() -> dramatiq.Broker:
    if (settings.TASK_BROKER or "redis").lower() == "stub":
        return StubBroker()
    broker = RedisBroker(url=settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL)

    def _has_mw(mw_cls) -> bool:
        return any(isinstance(m, mw_cls) for m in broker.middleware)

    for mw in (AgeLimit(), TimeLimit(), ShutdownNotifications()):
        if not _has_mw(type(mw)):
            broker.add_middleware(mw)
    if not _has_mw(Retries):
        # Exponential backoff up to ~1m
        broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000, backoff=2.0))
    return broker


broker = _build_broker()
dramatiq.set_broker(broker)


def _run_with_manager(work: Callable[..., Awaitable[T]]) -> T:
    """Run ``work(manager)`` on a fresh event loop with its own engine."""
    from invoicebox.core.database import db_url
    from invoicebox.services.ingestion_service import AttachmentIngestionPipeline
    from invoicebox.services.invoice_service import InvoiceAttachmentManager

    async def _main() -> T:
        # NullPool: connections must not outlive this event loop
        engine = create_async_engine(db_url, poolclass=NullPool)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as session:
                manager = InvoiceAttachmentManager(session, AttachmentIngestionPipeline.from_settings(settings))
                return await work(manager)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


@dramatiq.actor(max_retries=3, time_limit=5 * 60 * 1000)
def renormalize_attachment(reference: str) -> None:
    """Retry format conversion for one pending attachment."""

    async def work(manager) -> None:
        try:
            attachment = await manager.retry_normalization(reference)
        except NotFoundError:
            logger.info("[tasks] %s no longer linked; nothing to normalize", reference)
            return
        except ConversionError as e:
            sentry_breadcrumb(category="tasks", message="renormalize.failed", level="warning", data={"reference": reference})
            logger.warning("[tasks] renormalize %s failed: %s", reference, e.reason)
            # Raising lets the Retries middleware back off and try again
            raise
        logger.info("[tasks] renormalized %s -> %s", reference, attachment.reference)

    _run_with_manager(work)


@dramatiq.actor(max_retries=0)
def renormalize_pending(limit: int = 100) -> None:
    """Sweep: enqueue a retry for every attachment still awaiting conversion."""

    async def work(manager) -> list[str]:
        return await manager.pending_normalizations(limit)

    references = _run_with_manager(work)
    for reference in references:
        renormalize_attachment.send(reference)
    logger.info("[tasks] queued %d pending normalization(s)", len(references))
