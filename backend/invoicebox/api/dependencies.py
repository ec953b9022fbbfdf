"""Common dependencies for FastAPI routes.

The ingestion pipeline (and through it the blob store and normalizer)
is built once per process from ``settings`` and handed to a per-request
``InvoiceAttachmentManager`` together with the request's DB session.
Tests override ``get_pipeline`` and ``get_db_session`` to point at a
temporary directory and database.
"""

from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from invoicebox.core.config import settings
from invoicebox.core.database import get_db
from invoicebox.services.ingestion_service import AttachmentIngestionPipeline
from invoicebox.services.invoice_service import InvoiceAttachmentManager


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in get_db():
        yield session


@lru_cache(maxsize=1)
def get_pipeline() -> AttachmentIngestionPipeline:
    return AttachmentIngestionPipeline.from_settings(settings)


async def get_manager(
    db: AsyncSession = Depends(get_db_session),
    pipeline: AttachmentIngestionPipeline = Depends(get_pipeline),
) -> InvoiceAttachmentManager:
    return InvoiceAttachmentManager(db, pipeline)
