"""Pydantic schemas for request and response models.

Pydantic models are used for validating and serialising data that
crosses the boundary of the API and for the structured results the
invoice service returns.  They are intentionally separate from the ORM
models so the shape exposed through the API can differ from what is
stored in the database.

Invoice scalar fields are pass-through values: apart from type coercion
no semantic validation happens here.  The one required field,
``receipt_number``, is checked by ``InvoiceAttachmentManager`` so that a
missing value surfaces as a domain ``ValidationError`` before any write.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from invoicebox.core.errors import InvoiceBoxError, PartialFailure
from .enums import AttachmentStatus


# ---------------------------------------------------------------------------
# Invoice fields


class InvoiceFields(BaseModel):
    """Scalar business fields of an invoice."""

    receipt_number: Optional[str] = None
    invoice_number: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    receipt_type: Optional[str] = None
    narrative: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    created_by: Optional[str] = None


class AttachmentRead(BaseModel):
    id: int
    invoice_id: int
    reference: str
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    status: AttachmentStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceRead(BaseModel):
    id: int
    receipt_number: str
    invoice_number: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    receipt_type: Optional[str] = None
    narrative: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    attachments: List[AttachmentRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Operation results


class FileFailure(BaseModel):
    """One file of a batch that did not end up usable."""

    index: int
    filename: Optional[str] = None
    error: str
    details: str
    # Set when the blob was stored and linked but is not in canonical form
    reference: Optional[str] = None

    @classmethod
    def from_error(cls, index: int, filename: Optional[str], exc: InvoiceBoxError, reference: Optional[str] = None) -> "FileFailure":
        return cls(index=index, filename=filename, error=type(exc).__name__, details=exc.message, reference=reference)


class InvoiceResult(BaseModel):
    """Outcome of create/update: the invoice plus a per-file report.

    Partial success is a normal result, not an exception.  ``attachments``
    lists links made by this call, ``failures`` the files that were
    rejected or could not be stored and ``warnings`` the files that were
    linked but are still awaiting format normalization.
    """

    invoice: InvoiceRead
    attachments: List[AttachmentRead] = Field(default_factory=list)
    failures: List[FileFailure] = Field(default_factory=list)
    warnings: List[FileFailure] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def raise_for_failures(self) -> None:
        """Raise ``PartialFailure`` if any file of the batch failed."""
        if self.failures:
            raise PartialFailure(
                succeeded=[a.reference for a in self.attachments],
                failed=[f.model_dump() for f in self.failures],
                invoice_id=self.invoice.id,
            )


class DeletionResult(BaseModel):
    """Outcome of deleting an invoice and its blobs."""

    invoice_id: int
    removed: List[str] = Field(default_factory=list)
    residual: List[str] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def degraded(self) -> bool:
        return bool(self.residual)


class RemovalResult(BaseModel):
    """Outcome of removing a single attachment."""

    reference: str
    invoice_id: int
    blob_removed: bool
    warning: Optional[str] = None


class RemoveAttachmentRequest(BaseModel):
    image_url: str = Field(alias="imageUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)
