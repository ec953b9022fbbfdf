"""Invoice-attachment manager.

Owns the relation between an invoice and its attachment link rows and
orchestrates every multi-step operation across the relational store and
the blob store.  Consistency contract:

* Required-field validation and existence checks happen before any write.
* ``create_invoice``/``update_invoice`` have partial-success semantics: the
  invoice row is committed first, each surviving file is linked and
  committed on its own, and the result enumerates which files failed.
  A blob whose link row cannot be written is deleted again.
* ``delete_invoice`` removes link rows and the invoice in one transaction,
  then removes blobs; blobs that cannot be removed are returned as
  ``residual`` instead of being dropped silently.
* ``remove_attachment`` matches by reference only.  References are unique
  across all invoices (naming scheme plus UNIQUE constraint).

Concurrent operations on the same invoice are not serialized: scalar
updates are last-writer-wins, attachment appends are independent inserts
and therefore additive.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invoicebox.core.errors import (
    BlobNotFoundError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from invoicebox.core.observability import sentry_breadcrumb, sentry_capture
from invoicebox.models.enums import AttachmentStatus, IngestionState
from invoicebox.models.schemas import (
    AttachmentRead,
    DeletionResult,
    FileFailure,
    InvoiceFields,
    InvoiceRead,
    InvoiceResult,
    RemovalResult,
)
from invoicebox.services.ingestion_service import (
    AttachmentIngestionPipeline,
    FileCandidate,
    IngestionOutcome,
)
from invoicebox.services.invoice_store import InvoiceStore

logger = logging.getLogger(__name__)

FieldsInput = Union[InvoiceFields, Mapping[str, Any]]


class InvoiceAttachmentManager:
    """Create, update and delete invoices together with their attachments."""

    def __init__(self, session: AsyncSession, pipeline: AttachmentIngestionPipeline) -> None:
        self.session = session
        self.pipeline = pipeline
        self.store = pipeline.store
        self.records = InvoiceStore(session)

    # ------------------------------------------------------------------
    # Invoices

    async def create_invoice(self, fields: FieldsInput, candidates: Sequence[FileCandidate] = ()) -> InvoiceResult:
        values = self._scalar_values(fields)
        invoice_id = await self.records.insert(values)
        await self.session.commit()
        logger.info("[invoice] created id=%s files=%d", invoice_id, len(candidates))
        return await self._attach(invoice_id, candidates)

    async def update_invoice(
        self, invoice_id: int, fields: FieldsInput, candidates: Sequence[FileCandidate] = ()
    ) -> InvoiceResult:
        values = self._scalar_values(fields)
        # The creator is fixed at creation time
        values.pop("created_by", None)
        affected = await self.records.update_scalars(invoice_id, values)
        if affected == 0:
            await self.session.rollback()
            raise NotFoundError("Invoice", invoice_id)
        await self.session.commit()
        logger.info("[invoice] updated id=%s new_files=%d", invoice_id, len(candidates))
        return await self._attach(invoice_id, candidates)

    async def delete_invoice(self, invoice_id: int) -> DeletionResult:
        references = await self.records.delete_links_for(invoice_id)
        affected = await self.records.delete(invoice_id)
        if affected == 0:
            await self.session.rollback()
            raise NotFoundError("Invoice", invoice_id)
        await self.session.commit()

        result = DeletionResult(invoice_id=invoice_id)
        for reference in references:
            try:
                await self.store.delete(reference)
            except BlobNotFoundError:
                logger.warning("[invoice] delete id=%s: blob %s already absent", invoice_id, reference)
            except StorageError as e:
                logger.error("[invoice] delete id=%s: could not remove blob %s: %s", invoice_id, reference, e.reason)
                result.residual.append(reference)
                continue
            result.removed.append(reference)
        if result.residual:
            sentry_breadcrumb(
                category="invoice",
                message="invoice.delete.degraded",
                level="warning",
                data={"invoice_id": invoice_id, "residual": result.residual},
            )
        logger.info(
            "[invoice] deleted id=%s blobs_removed=%d residual=%d",
            invoice_id,
            len(result.removed),
            len(result.residual),
        )
        return result

    async def get_invoice(self, invoice_id: int) -> InvoiceRead:
        invoice = await self.records.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return InvoiceRead.model_validate(invoice)

    async def list_invoices(self) -> list[InvoiceRead]:
        return [InvoiceRead.model_validate(i) for i in await self.records.list_all()]

    # ------------------------------------------------------------------
    # Attachments

    async def add_attachment(self, invoice_id: int, candidate: FileCandidate) -> AttachmentRead:
        if not await self.records.exists(invoice_id):
            raise NotFoundError("Invoice", invoice_id)
        outcome = await self.pipeline.ingest_one(candidate)
        if not outcome.stored:
            raise outcome.error  # type: ignore[misc]
        return await self._link(invoice_id, outcome)

    async def remove_attachment(self, reference: str) -> RemovalResult:
        link = await self.records.get_link(reference)
        if link is None:
            raise NotFoundError("Attachment", reference)
        invoice_id = link.invoice_id
        if await self.records.delete_link(reference) == 0:
            await self.session.rollback()
            raise NotFoundError("Attachment", reference)
        await self.session.commit()

        result = RemovalResult(reference=reference, invoice_id=invoice_id, blob_removed=True)
        try:
            await self.store.delete(reference)
        except BlobNotFoundError:
            result.blob_removed = False
            result.warning = "Attachment file was already missing from storage"
            logger.warning("[invoice] remove %s: blob already absent", reference)
        except StorageError as e:
            result.blob_removed = False
            result.warning = f"Attachment file could not be removed: {e.reason}"
            logger.error("[invoice] remove %s: could not remove blob: %s", reference, e.reason)
            sentry_breadcrumb(
                category="invoice",
                message="attachment.remove.residual",
                level="warning",
                data={"reference": reference},
            )
        return result

    async def list_attachments(self, invoice_id: int) -> list[str]:
        return await self.records.references_for(invoice_id)

    # ------------------------------------------------------------------
    # Deferred normalization

    async def pending_normalizations(self, limit: int = 100) -> list[str]:
        return [link.reference for link in await self.records.pending_links(limit)]

    async def retry_normalization(self, reference: str) -> AttachmentRead:
        """Convert a pending attachment and point its link row at the result.

        Raises ``ConversionError`` when conversion fails again; the link row
        and the original blob are then unchanged.
        """
        link = await self.records.get_link(reference)
        if link is None:
            raise NotFoundError("Attachment", reference)
        if link.status != AttachmentStatus.PENDING_NORMALIZATION:
            return AttachmentRead.model_validate(link)

        normalizer = self.pipeline.normalizer
        # The source stays until the link row names the canonical blob
        canonical = await normalizer.write_canonical(reference)
        try:
            affected = await self.records.replace_reference(reference, canonical, AttachmentStatus.LINKED)
            if affected:
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("[invoice] converted %s to %s but could not update link row: %s", reference, canonical, e)
            sentry_capture(e)
            await self.pipeline.discard([canonical])
            raise StorageError(reference, f"link row update failed: {e}") from e
        if not affected:
            # Link removed while converting; the new blob has no owner
            await self.pipeline.discard([canonical])
            raise NotFoundError("Attachment", reference)
        if canonical != reference:
            await normalizer.remove_source(reference, canonical)

        updated = await self.records.get_link(canonical)
        await self.session.refresh(updated)
        logger.info("[invoice] normalized pending attachment %s -> %s", reference, canonical)
        return AttachmentRead.model_validate(updated)

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _scalar_values(fields: FieldsInput) -> dict[str, Any]:
        if not isinstance(fields, InvoiceFields):
            try:
                fields = InvoiceFields.model_validate(dict(fields))
            except PydanticValidationError as e:
                first = e.errors()[0]
                raise ValidationError(
                    f"Invalid value for {'.'.join(map(str, first['loc']))}: {first['msg']}",
                    field=str(first["loc"][0]) if first["loc"] else None,
                ) from e
        if not (fields.receipt_number or "").strip():
            raise ValidationError("Receipt Number is required", field="receipt_number")
        return fields.model_dump()

    async def _attach(self, invoice_id: int, candidates: Sequence[FileCandidate]) -> InvoiceResult:
        attachments: list[AttachmentRead] = []
        failures: list[FileFailure] = []
        warnings: list[FileFailure] = []
        if candidates:
            for outcome in await self.pipeline.ingest(candidates):
                if not outcome.stored:
                    failures.append(FileFailure.from_error(outcome.index, outcome.filename, outcome.error))  # type: ignore[arg-type]
                    continue
                try:
                    attachment = await self._link(invoice_id, outcome)
                except StorageError as e:
                    failures.append(FileFailure.from_error(outcome.index, outcome.filename, e))
                    continue
                attachments.append(attachment)
                if outcome.state == IngestionState.NORMALIZATION_FAILED:
                    warnings.append(
                        FileFailure.from_error(outcome.index, outcome.filename, outcome.error, reference=outcome.reference)  # type: ignore[arg-type]
                    )
        if failures:
            logger.warning("[invoice] id=%s: %d of %d file(s) failed", invoice_id, len(failures), len(candidates))
        return InvoiceResult(
            invoice=await self.get_invoice(invoice_id),
            attachments=attachments,
            failures=failures,
            warnings=warnings,
        )

    async def _link(self, invoice_id: int, outcome: IngestionOutcome) -> AttachmentRead:
        """Persist the link row for a stored outcome, or delete its blob and raise."""
        reference = outcome.reference or ""
        status = (
            AttachmentStatus.PENDING_NORMALIZATION
            if outcome.state == IngestionState.NORMALIZATION_FAILED
            else AttachmentStatus.LINKED
        )
        try:
            link = await self.records.add_link(
                invoice_id,
                reference,
                original_filename=outcome.filename,
                content_type=outcome.content_type,
                status=status,
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("[invoice] id=%s: link row for %s failed: %s", invoice_id, reference, e)
            residual = await self.pipeline.discard([reference])
            reason = "link row insert failed"
            if residual:
                reason += "; stored file could not be removed"
            raise StorageError(reference, reason) from e
        return AttachmentRead.model_validate(link)
