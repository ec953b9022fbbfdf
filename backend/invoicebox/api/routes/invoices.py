"""API routes for invoices and their receipt images.

The handlers only parse the request (multipart form fields and files)
and delegate to ``InvoiceAttachmentManager``.  Domain errors propagate to
the handlers registered in ``invoicebox.api.error_handlers``.

Form field names keep the camelCase spelling existing clients send
(``receiptNumber``, ``invoiceNumber`` ...); responses are snake_case.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from dramatiq.errors import DramatiqError
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import BaseModel
from redis.exceptions import RedisError

from invoicebox.core.config import settings
from invoicebox.core.errors import ValidationError
from invoicebox.core.tasks import renormalize_attachment
from invoicebox.api.dependencies import get_manager
from invoicebox.models.enums import AttachmentStatus, ReceiptType
from invoicebox.models.schemas import (
    AttachmentRead,
    DeletionResult,
    InvoiceRead,
    InvoiceResult,
    RemovalResult,
    RemoveAttachmentRequest,
)
from invoicebox.services.cache import (
    cache_get_json,
    cache_set_json,
    invalidate_invoice,
    invoice_cache_key,
)
from invoicebox.services.ingestion_service import FileCandidate
from invoicebox.services.invoice_service import InvoiceAttachmentManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


class AttachmentList(BaseModel):
    invoice_id: int
    images: List[str]


def invoice_form(
    receipt_number: Optional[str] = Form(None, alias="receiptNumber"),
    invoice_number: Optional[str] = Form(None, alias="invoiceNumber"),
    date: Optional[str] = Form(None),
    time: Optional[str] = Form(None),
    receipt_type: Optional[str] = Form(None, alias="receiptType"),
    narrative: Optional[str] = Form(None),
    amount: Optional[str] = Form(None),
    currency: Optional[str] = Form(None),
    created_by: Optional[str] = Form(None, alias="createdBy"),
) -> Dict[str, Any]:
    """Collect the scalar invoice fields from a multipart form."""
    return {
        "receipt_number": receipt_number,
        "invoice_number": invoice_number,
        "date": date,
        "time": time,
        "receipt_type": receipt_type,
        "narrative": narrative,
        # Empty form inputs mean "no amount"
        "amount": amount if amount not in (None, "") else None,
        "currency": currency,
        "created_by": created_by,
    }


async def _to_candidates(files: Optional[List[UploadFile]]) -> List[FileCandidate]:
    files = [f for f in (files or []) if f is not None]
    if len(files) > settings.MAX_FILES_PER_REQUEST:
        raise ValidationError(f"Too many files (max {settings.MAX_FILES_PER_REQUEST})", field="images")
    candidates = []
    for f in files:
        # One byte past the limit is enough for the pipeline to reject it
        data = await f.read(settings.MAX_UPLOAD_SIZE + 1)
        await f.close()
        candidates.append(FileCandidate(filename=f.filename, content_type=f.content_type, data=data))
    return candidates


def _schedule_renormalization(references: Iterable[Optional[str]]) -> None:
    """Queue background conversion retries; failures to enqueue are logged, not raised."""
    for reference in references:
        if not reference:
            continue
        try:
            renormalize_attachment.send(reference)
        except (DramatiqError, RedisError) as e:
            logger.warning("[invoices] could not enqueue renormalization for %s: %s", reference, e)


def _reference_from_url(image_url: str) -> str:
    """Accept either a bare reference or a URL/path ending in it (``/uploads/<ref>``)."""
    return image_url.strip().rstrip("/").rsplit("/", 1)[-1]


@router.post("", response_model=InvoiceResult, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    fields: Dict[str, Any] = Depends(invoice_form),
    images: Optional[List[UploadFile]] = File(None),
    strict: bool = Query(False, description="Answer 207 with the per-file report when any file failed"),
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> InvoiceResult:
    """Create an invoice with up to ``MAX_FILES_PER_REQUEST`` receipt images.

    Files that are rejected or fail to store are listed in ``failures``;
    the invoice is still created with the files that succeeded.
    With ``strict=true`` such a batch answers 207 Multi-Status instead.
    """
    candidates = await _to_candidates(images)
    result = await manager.create_invoice(fields, candidates)
    _schedule_renormalization(w.reference for w in result.warnings)
    if strict:
        result.raise_for_failures()
    return result


@router.get("", response_model=List[InvoiceRead])
async def list_invoices(manager: InvoiceAttachmentManager = Depends(get_manager)) -> List[InvoiceRead]:
    return await manager.list_invoices()


@router.get("/receipt-types", response_model=List[str])
async def list_receipt_types() -> List[str]:
    """Known receipt categories for client drop-downs."""
    return [t.value for t in ReceiptType]


@router.delete("/images", response_model=RemovalResult)
async def remove_image(
    payload: RemoveAttachmentRequest,
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> RemovalResult:
    """Delete one image by reference.  A file already missing from storage is a warning."""
    reference = _reference_from_url(payload.image_url)
    logger.info("[invoices] deleting image %s", reference)
    result = await manager.remove_attachment(reference)
    await invalidate_invoice(result.invoice_id)
    return result


@router.post("/images/{reference}/normalize", response_model=AttachmentRead)
async def normalize_image(
    reference: str,
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> AttachmentRead:
    """Retry format conversion for an image still pending normalization."""
    attachment = await manager.retry_normalization(reference)
    await invalidate_invoice(attachment.invoice_id)
    return attachment


@router.get("/{invoice_id}", response_model=InvoiceRead)
async def get_invoice(
    invoice_id: int,
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> InvoiceRead:
    """Get a specific invoice including its images."""
    ck = invoice_cache_key(invoice_id)
    cached = await cache_get_json(ck)
    if isinstance(cached, dict):
        return InvoiceRead(**cached)
    invoice = await manager.get_invoice(invoice_id)
    await cache_set_json(ck, invoice.model_dump(mode="json"), ttl=settings.CACHE_TTL_SECONDS)
    return invoice


@router.put("/{invoice_id}", response_model=InvoiceResult)
async def update_invoice(
    invoice_id: int,
    fields: Dict[str, Any] = Depends(invoice_form),
    images: Optional[List[UploadFile]] = File(None),
    strict: bool = Query(False, description="Answer 207 with the per-file report when any file failed"),
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> InvoiceResult:
    """Update scalar fields and append any uploaded images.  Existing images are kept."""
    candidates = await _to_candidates(images)
    result = await manager.update_invoice(invoice_id, fields, candidates)
    await invalidate_invoice(invoice_id)
    _schedule_renormalization(w.reference for w in result.warnings)
    if strict:
        result.raise_for_failures()
    return result


@router.delete("/{invoice_id}", response_model=DeletionResult)
async def delete_invoice(
    invoice_id: int,
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> DeletionResult:
    """Delete an invoice, its image links and image files.

    ``degraded`` is true when some files could not be removed; they are
    listed in ``residual``.
    """
    result = await manager.delete_invoice(invoice_id)
    await invalidate_invoice(invoice_id)
    return result


@router.post("/{invoice_id}/images", response_model=AttachmentRead, status_code=status.HTTP_201_CREATED)
async def add_image(
    invoice_id: int,
    image: Optional[UploadFile] = File(None),
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> AttachmentRead:
    """Attach one image to an existing invoice."""
    if image is None:
        raise ValidationError("Image file is missing", field="image")
    candidates = await _to_candidates([image])
    attachment = await manager.add_attachment(invoice_id, candidates[0])
    await invalidate_invoice(invoice_id)
    if attachment.status == AttachmentStatus.PENDING_NORMALIZATION:
        _schedule_renormalization([attachment.reference])
    return attachment


@router.get("/{invoice_id}/images", response_model=AttachmentList)
async def list_images(
    invoice_id: int,
    manager: InvoiceAttachmentManager = Depends(get_manager),
) -> AttachmentList:
    """References of an invoice's images in the order they were added."""
    return AttachmentList(invoice_id=invoice_id, images=await manager.list_attachments(invoice_id))
