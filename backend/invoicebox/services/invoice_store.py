"""Relational persistence for invoices and their attachment link rows.

Thin SQLAlchemy accessors with no business rules of their own; the
``InvoiceAttachmentManager`` decides when to call them and when to
commit.  Row counts are returned where callers detect "not found" from
zero affected rows.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from invoicebox.models.enums import AttachmentStatus
from invoicebox.models.tables import Invoice, InvoiceAttachment


class InvoiceStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Invoices

    async def insert(self, fields: Mapping[str, Any]) -> int:
        invoice = Invoice(**fields)
        self.session.add(invoice)
        await self.session.flush()
        return invoice.id

    async def update_scalars(self, invoice_id: int, fields: Mapping[str, Any]) -> int:
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def delete(self, invoice_id: int) -> int:
        result = await self.session.execute(delete(Invoice).where(Invoice.id == invoice_id))
        return result.rowcount

    async def get(self, invoice_id: int) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .options(selectinload(Invoice.attachments))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def exists(self, invoice_id: int) -> bool:
        result = await self.session.execute(select(Invoice.id).where(Invoice.id == invoice_id))
        return result.scalar_one_or_none() is not None

    async def list_all(self) -> Sequence[Invoice]:
        result = await self.session.execute(
            select(Invoice).options(selectinload(Invoice.attachments)).order_by(Invoice.id)
        )
        return result.scalars().all()

    # ------------------------------------------------------------------
    # Link rows

    async def add_link(
        self,
        invoice_id: int,
        reference: str,
        *,
        original_filename: Optional[str] = None,
        content_type: Optional[str] = None,
        status: AttachmentStatus = AttachmentStatus.LINKED,
    ) -> InvoiceAttachment:
        link = InvoiceAttachment(
            invoice_id=invoice_id,
            reference=reference,
            original_filename=original_filename,
            content_type=content_type,
            status=status,
        )
        self.session.add(link)
        await self.session.flush()
        return link

    async def links_for(self, invoice_id: int) -> Sequence[InvoiceAttachment]:
        result = await self.session.execute(
            select(InvoiceAttachment)
            .where(InvoiceAttachment.invoice_id == invoice_id)
            .order_by(InvoiceAttachment.id)
        )
        return result.scalars().all()

    async def references_for(self, invoice_id: int) -> list[str]:
        result = await self.session.execute(
            select(InvoiceAttachment.reference)
            .where(InvoiceAttachment.invoice_id == invoice_id)
            .order_by(InvoiceAttachment.id)
        )
        return list(result.scalars().all())

    async def get_link(self, reference: str) -> Optional[InvoiceAttachment]:
        result = await self.session.execute(select(InvoiceAttachment).where(InvoiceAttachment.reference == reference))
        return result.scalar_one_or_none()

    async def delete_links_for(self, invoice_id: int) -> list[str]:
        """Delete every link row of ``invoice_id`` and return their references."""
        result = await self.session.execute(
            delete(InvoiceAttachment)
            .where(InvoiceAttachment.invoice_id == invoice_id)
            .returning(InvoiceAttachment.reference)
        )
        return list(result.scalars().all())

    async def delete_link(self, reference: str) -> int:
        result = await self.session.execute(delete(InvoiceAttachment).where(InvoiceAttachment.reference == reference))
        return result.rowcount

    async def replace_reference(self, reference: str, new_reference: str, status: AttachmentStatus) -> int:
        result = await self.session.execute(
            update(InvoiceAttachment)
            .where(InvoiceAttachment.reference == reference)
            .values(reference=new_reference, status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def pending_links(self, limit: int = 100) -> Sequence[InvoiceAttachment]:
        result = await self.session.execute(
            select(InvoiceAttachment)
            .where(InvoiceAttachment.status == AttachmentStatus.PENDING_NORMALIZATION)
            .order_by(InvoiceAttachment.id)
            .limit(limit)
        )
        return result.scalars().all()
