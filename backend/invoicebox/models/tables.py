"""SQLAlchemy ORM models for the invoice API.

These models define the relational schema: one ``invoices`` row per
expense record and one ``invoice_attachments`` link row per stored
receipt image.  Link rows reference blobs by their globally unique
storage name; the UNIQUE constraint on ``reference`` backs the naming
scheme so a reference can never point at two invoices.

If you extend or modify these models call the ``init_db`` helper during
development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from invoicebox.core.database import Base
from .enums import AttachmentStatus


class Invoice(Base):
    """Expense / invoice record with its scalar business fields."""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    receipt_number = Column(String, nullable=False)
    invoice_number = Column(String, nullable=True)
    date = Column(String, nullable=True)
    time = Column(String, nullable=True)
    receipt_type = Column(String, nullable=True)
    narrative = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)

    attachments = relationship(
        "InvoiceAttachment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="InvoiceAttachment.id",
    )


class InvoiceAttachment(Base):
    """Link row binding one stored blob to one invoice."""

    __tablename__ = "invoice_attachments"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    reference = Column(String, unique=True, nullable=False)
    original_filename = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    status = Column(Enum(AttachmentStatus), default=AttachmentStatus.LINKED, nullable=False)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="attachments")
