from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from invoicebox.core.errors import (
    ConversionError,
    NotFoundError,
    PartialFailure,
    StorageError,
    ValidationError,
)
from invoicebox.models.enums import AttachmentStatus
from invoicebox.models.tables import Base, Invoice, InvoiceAttachment
from invoicebox.services.ingestion_service import (
    AttachmentIngestionPipeline,
    FileCandidate,
    IngestionConfig,
)
from invoicebox.services.invoice_service import InvoiceAttachmentManager
from invoicebox.services.normalizer_service import ConverterError, FormatConverter, FormatNormalizer
from invoicebox.services.storage_service import FilesystemBlobStore


class StaticConverter(FormatConverter):
    async def convert(self, data, source_suffix):
        return b"jpeg:" + data


class BrokenConverter(FormatConverter):
    async def convert(self, data, source_suffix):
        raise ConverterError("no HEIF decoder available")


class CrashingConverter(FormatConverter):
    async def convert(self, data, source_suffix):
        raise OSError("scratch space unavailable")


class UndeletableStore(FilesystemBlobStore):
    def _delete(self, name):
        raise StorageError(name, "permission denied")


FIELDS = {
    "receipt_number": "R-1001",
    "invoice_number": "INV-77",
    "date": "2024-03-01",
    "time": "12:30",
    "receipt_type": "Meal Expense",
    "narrative": "Team lunch",
    "amount": "42.50",
    "currency": "EUR",
    "created_by": "alice",
}


def png(name="receipt.png", data=b"png-bytes"):
    return FileCandidate(name, "image/png", data)


def make_pipeline(store, converter=None):
    config = IngestionConfig(
        accepted_content_types=frozenset({"image/jpeg", "image/png", "image/heic"}),
        max_upload_size=1024,
        non_canonical_extensions=frozenset({".heic", ".heif"}),
    )
    normalizer = FormatNormalizer(store, converter or StaticConverter(), config.non_canonical_extensions)
    return AttachmentIngestionPipeline(store, normalizer, config)


@asynccontextmanager
async def manager_for(tmp_path, converter=None, store_cls=FilesystemBlobStore):
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    pipeline = make_pipeline(store_cls(tmp_path), converter)
    async with Session() as session:
        yield InvoiceAttachmentManager(session, pipeline)
    await engine.dispose()


def blobs(tmp_path):
    return sorted(p.name for p in tmp_path.iterdir())


async def count(session, model):
    return (await session.execute(select(func.count(model.id)))).scalar()


@pytest.mark.asyncio
async def test_create_links_every_file_in_order(tmp_path):
    async with manager_for(tmp_path) as manager:
        result = await manager.create_invoice(FIELDS, [png("a.png", b"a"), png("b.png", b"b")])

        assert result.partial is False
        assert result.failures == []
        assert result.invoice.receipt_number == "R-1001"
        assert result.invoice.amount == Decimal("42.50")
        refs = [a.reference for a in result.attachments]
        assert [a.reference for a in result.invoice.attachments] == refs
        assert await manager.list_attachments(result.invoice.id) == refs
        assert blobs(tmp_path) == sorted(refs)
        assert all(a.status == AttachmentStatus.LINKED for a in result.attachments)
        assert [a.original_filename for a in result.attachments] == ["a.png", "b.png"]


@pytest.mark.asyncio
async def test_create_without_files(tmp_path):
    async with manager_for(tmp_path) as manager:
        result = await manager.create_invoice({"receipt_number": "R-1"})
        assert result.attachments == []
        assert result.invoice.invoice_number is None
        assert await manager.list_attachments(result.invoice.id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("receipt_number", [None, "", "   "])
async def test_missing_receipt_number_writes_nothing(tmp_path, receipt_number):
    async with manager_for(tmp_path) as manager:
        with pytest.raises(ValidationError) as excinfo:
            await manager.create_invoice({**FIELDS, "receipt_number": receipt_number}, [png()])
        assert excinfo.value.message == "Receipt Number is required"
        assert await count(manager.session, Invoice) == 0
        assert blobs(tmp_path) == []


@pytest.mark.asyncio
async def test_bad_amount_is_a_validation_error(tmp_path):
    async with manager_for(tmp_path) as manager:
        with pytest.raises(ValidationError) as excinfo:
            await manager.create_invoice({**FIELDS, "amount": "lots"})
        assert excinfo.value.field == "amount"
        assert await count(manager.session, Invoice) == 0


@pytest.mark.asyncio
async def test_create_reports_partial_success(tmp_path):
    async with manager_for(tmp_path) as manager:
        result = await manager.create_invoice(
            FIELDS, [png("ok.png"), FileCandidate("notes.txt", "text/plain", b"hi"), png("ok2.png")]
        )

        assert result.partial is True
        assert len(result.attachments) == 2
        assert [(f.index, f.filename, f.error) for f in result.failures] == [(1, "notes.txt", "ValidationError")]
        assert await manager.list_attachments(result.invoice.id) == [a.reference for a in result.attachments]
        assert len(blobs(tmp_path)) == 2

        with pytest.raises(PartialFailure) as excinfo:
            result.raise_for_failures()
        assert excinfo.value.succeeded == [a.reference for a in result.attachments]
        assert excinfo.value.failed[0]["filename"] == "notes.txt"


@pytest.mark.asyncio
async def test_link_failure_removes_stored_blob(tmp_path, monkeypatch):
    async with manager_for(tmp_path) as manager:

        async def boom(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(manager.records, "add_link", boom)
        result = await manager.create_invoice(FIELDS, [png()])

        assert result.attachments == []
        assert result.failures[0].error == "StorageError"
        assert "link row insert failed" in result.failures[0].details
        assert blobs(tmp_path) == []
        assert await count(manager.session, InvoiceAttachment) == 0


@pytest.mark.asyncio
async def test_update_unknown_invoice_writes_nothing(tmp_path):
    async with manager_for(tmp_path) as manager:
        with pytest.raises(NotFoundError):
            await manager.update_invoice(999, FIELDS, [png()])
        assert blobs(tmp_path) == []


@pytest.mark.asyncio
async def test_update_replaces_scalars_and_appends_files(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS, [png("first.png")])
        invoice_id = created.invoice.id
        first_ref = created.attachments[0].reference

        updated = await manager.update_invoice(
            invoice_id,
            {**FIELDS, "receipt_number": "R-2002", "narrative": None, "created_by": "mallory"},
            [png("second.png")],
        )

        assert updated.invoice.receipt_number == "R-2002"
        assert updated.invoice.narrative is None
        # The creator is fixed at creation time
        assert updated.invoice.created_by == "alice"
        refs = await manager.list_attachments(invoice_id)
        assert refs[0] == first_ref
        assert refs[1] == updated.attachments[0].reference
        assert len(blobs(tmp_path)) == 2


@pytest.mark.asyncio
async def test_update_requires_receipt_number(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS)
        with pytest.raises(ValidationError):
            await manager.update_invoice(created.invoice.id, {**FIELDS, "receipt_number": ""}, [png()])
        assert (await manager.get_invoice(created.invoice.id)).receipt_number == "R-1001"
        assert blobs(tmp_path) == []


@pytest.mark.asyncio
async def test_delete_removes_rows_and_blobs(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS, [png("a.png"), png("b.png")])
        invoice_id = created.invoice.id

        result = await manager.delete_invoice(invoice_id)

        assert sorted(result.removed) == sorted(a.reference for a in created.attachments)
        assert result.residual == []
        assert result.degraded is False
        assert blobs(tmp_path) == []
        assert await manager.list_attachments(invoice_id) == []
        with pytest.raises(NotFoundError):
            await manager.get_invoice(invoice_id)
        with pytest.raises(NotFoundError):
            await manager.delete_invoice(invoice_id)


@pytest.mark.asyncio
async def test_delete_tolerates_blob_already_missing(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS, [png("a.png"), png("b.png")])
        (tmp_path / created.attachments[0].reference).unlink()

        result = await manager.delete_invoice(created.invoice.id)

        assert result.degraded is False
        assert len(result.removed) == 2
        assert blobs(tmp_path) == []


@pytest.mark.asyncio
async def test_delete_reports_residual_blobs(tmp_path):
    async with manager_for(tmp_path, store_cls=UndeletableStore) as manager:
        created = await manager.create_invoice(FIELDS, [png()])
        reference = created.attachments[0].reference

        result = await manager.delete_invoice(created.invoice.id)

        assert result.degraded is True
        assert result.residual == [reference]
        assert result.removed == []
        # Rows are gone even though the blob is not
        assert await count(manager.session, InvoiceAttachment) == 0
        assert await count(manager.session, Invoice) == 0


@pytest.mark.asyncio
async def test_add_attachment(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS, [png("a.png")])
        attachment = await manager.add_attachment(created.invoice.id, png("c.png"))

        assert attachment.invoice_id == created.invoice.id
        assert attachment.status == AttachmentStatus.LINKED
        refs = await manager.list_attachments(created.invoice.id)
        assert refs == [created.attachments[0].reference, attachment.reference]


@pytest.mark.asyncio
async def test_add_attachment_to_unknown_invoice_stores_nothing(tmp_path):
    async with manager_for(tmp_path) as manager:
        with pytest.raises(NotFoundError):
            await manager.add_attachment(12345, png())
        assert blobs(tmp_path) == []


@pytest.mark.asyncio
async def test_add_attachment_rejects_invalid_file(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS)
        with pytest.raises(ValidationError):
            await manager.add_attachment(created.invoice.id, FileCandidate("x.pdf", "application/pdf", b"%PDF"))
        assert await manager.list_attachments(created.invoice.id) == []
        assert blobs(tmp_path) == []


@pytest.mark.asyncio
async def test_remove_attachment(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS, [png("a.png"), png("b.png")])
        gone, kept = [a.reference for a in created.attachments]

        result = await manager.remove_attachment(gone)

        assert result.invoice_id == created.invoice.id
        assert result.blob_removed is True
        assert result.warning is None
        assert await manager.list_attachments(created.invoice.id) == [kept]
        assert blobs(tmp_path) == [kept]
        with pytest.raises(NotFoundError):
            await manager.remove_attachment(gone)


@pytest.mark.asyncio
async def test_remove_attachment_with_missing_blob_warns(tmp_path):
    async with manager_for(tmp_path) as manager:
        created = await manager.create_invoice(FIELDS, [png()])
        reference = created.attachments[0].reference
        (tmp_path / reference).unlink()

        result = await manager.remove_attachment(reference)

        assert result.blob_removed is False
        assert result.warning == "Attachment file was already missing from storage"
        assert await manager.list_attachments(created.invoice.id) == []


@pytest.mark.asyncio
async def test_list_attachments_of_unknown_invoice_is_empty(tmp_path):
    async with manager_for(tmp_path) as manager:
        assert await manager.list_attachments(404) == []


@pytest.mark.asyncio
async def test_heic_is_linked_as_jpeg(tmp_path):
    async with manager_for(tmp_path) as manager:
        result = await manager.create_invoice(FIELDS, [FileCandidate("IMG_1.heic", "image/heic", b"heic")])

        attachment = result.attachments[0]
        assert attachment.reference.endswith("_IMG_1.jpg")
        assert attachment.status == AttachmentStatus.LINKED
        assert result.warnings == []
        assert blobs(tmp_path) == [attachment.reference]


@pytest.mark.asyncio
async def test_failed_conversion_links_pending_and_retry_completes_it(tmp_path):
    async with manager_for(tmp_path, converter=BrokenConverter()) as manager:
        result = await manager.create_invoice(FIELDS, [FileCandidate("IMG_1.heic", "image/heic", b"heic")])

        pending = result.attachments[0]
        assert pending.status == AttachmentStatus.PENDING_NORMALIZATION
        assert pending.reference.endswith("_IMG_1.heic")
        assert result.partial is False
        assert [w.reference for w in result.warnings] == [pending.reference]
        assert result.warnings[0].error == "ConversionError"
        assert await manager.pending_normalizations() == [pending.reference]

        # Still broken: nothing changes
        with pytest.raises(ConversionError):
            await manager.retry_normalization(pending.reference)
        assert blobs(tmp_path) == [pending.reference]

        manager.pipeline.normalizer.converter = StaticConverter()
        normalized = await manager.retry_normalization(pending.reference)

        assert normalized.id == pending.id
        assert normalized.status == AttachmentStatus.LINKED
        assert normalized.reference.endswith("_IMG_1.jpg")
        assert await manager.list_attachments(result.invoice.id) == [normalized.reference]
        assert blobs(tmp_path) == [normalized.reference]
        assert await manager.pending_normalizations() == []

        # Already canonical: returned unchanged
        again = await manager.retry_normalization(normalized.reference)
        assert again.reference == normalized.reference


@pytest.mark.asyncio
async def test_retry_keeps_source_when_link_update_fails(tmp_path, monkeypatch):
    async with manager_for(tmp_path, converter=BrokenConverter()) as manager:
        result = await manager.create_invoice(FIELDS, [FileCandidate("IMG_2.heic", "image/heic", b"heic")])
        pending = result.attachments[0]
        manager.pipeline.normalizer.converter = StaticConverter()

        async def boom(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(manager.records, "replace_reference", boom)
        with pytest.raises(StorageError):
            await manager.retry_normalization(pending.reference)

        # Every link row still names an existing blob, and no blob is unowned
        refs = await manager.list_attachments(result.invoice.id)
        assert refs == [pending.reference]
        assert blobs(tmp_path) == refs
        assert await manager.pending_normalizations() == [pending.reference]


@pytest.mark.asyncio
async def test_converter_crash_keeps_sibling_files(tmp_path):
    async with manager_for(tmp_path, converter=CrashingConverter()) as manager:
        result = await manager.create_invoice(FIELDS, [png("ok.png"), FileCandidate("IMG_3.heic", "image/heic", b"heic")])

        assert result.failures == []
        assert [a.status for a in result.attachments] == [
            AttachmentStatus.LINKED,
            AttachmentStatus.PENDING_NORMALIZATION,
        ]
        assert result.warnings[0].error == "ConversionError"
        assert blobs(tmp_path) == sorted(a.reference for a in result.attachments)


@pytest.mark.asyncio
async def test_retry_unknown_reference(tmp_path):
    async with manager_for(tmp_path) as manager:
        with pytest.raises(NotFoundError):
            await manager.retry_normalization("1700000000000-deadbeef_missing.heic")


@pytest.mark.asyncio
async def test_list_invoices(tmp_path):
    async with manager_for(tmp_path) as manager:
        await manager.create_invoice({**FIELDS, "receipt_number": "R-1"}, [png()])
        await manager.create_invoice({**FIELDS, "receipt_number": "R-2"})
        invoices = await manager.list_invoices()
        assert [i.receipt_number for i in invoices] == ["R-1", "R-2"]
        assert len(invoices[0].attachments) == 1
        assert invoices[1].attachments == []


@pytest.mark.asyncio
async def test_concurrent_appends_are_additive(tmp_path):
    # Separate sessions on a shared file database, like two requests
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'invoices.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    pipeline = make_pipeline(FilesystemBlobStore(tmp_path / "blobs"))

    async with Session() as s1, Session() as s2, Session() as s3:
        first = InvoiceAttachmentManager(s1, pipeline)
        created = await first.create_invoice(FIELDS)
        invoice_id = created.invoice.id
        second = InvoiceAttachmentManager(s2, pipeline)

        a, b = await asyncio.gather(
            first.update_invoice(invoice_id, {**FIELDS, "narrative": "one"}, [png("one.png")]),
            second.update_invoice(invoice_id, {**FIELDS, "narrative": "two"}, [png("two.png")]),
        )

        refs = await InvoiceAttachmentManager(s3, pipeline).list_attachments(invoice_id)
        assert sorted(refs) == sorted([a.attachments[0].reference, b.attachments[0].reference])
        # Last writer wins for scalars
        narrative = (await InvoiceAttachmentManager(s3, pipeline).get_invoice(invoice_id)).narrative
        assert narrative in ("one", "two")
    await engine.dispose()
