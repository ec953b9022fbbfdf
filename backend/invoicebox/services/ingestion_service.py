"""Attachment ingestion pipeline: validate -> store -> normalize.

Given candidate files from a request, the pipeline produces one outcome
per candidate, in input order.  Two policies apply uniformly to every
entry point that ingests files:

* **Validation: drop invalid, keep rest.**  A candidate with an
  unaccepted content type, an empty payload or an oversized payload is
  reported as ``REJECTED`` and its siblings continue.
* **Normalization failure: keep original, mark pending.**  When the
  normalizer raises ``ConversionError`` the stored original is kept and
  reported as ``NORMALIZATION_FAILED``; it is linked with status
  ``pending_normalization`` and can be converted later.

Candidates are processed concurrently.  For a single candidate, storage
always completes before normalization starts.  If the batch is cancelled
the blobs it already wrote are deleted before the cancellation
propagates; writes still in flight are harmless because every storage
name is unique.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, Mapping, Optional, Sequence

from invoicebox.core.config import Settings
from invoicebox.core.errors import (
    BlobNotFoundError,
    ConversionError,
    InvoiceBoxError,
    StorageError,
    ValidationError,
)
from invoicebox.models.enums import IngestionState
from invoicebox.services.normalizer_service import FormatNormalizer, build_converter
from invoicebox.services.storage_service import BlobStore, create_blob_store
from invoicebox.utils.sanitization import sanitize_filename

logger = logging.getLogger(__name__)

# First entry is the extension appended when a name lacks a matching one
CONTENT_TYPE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "image/jpeg": (".jpg", ".jpeg", ".jpe"),
    "image/png": (".png",),
    "image/gif": (".gif",),
    "image/webp": (".webp",),
    "image/heic": (".heic",),
    "image/heif": (".heif", ".heic"),
}


@dataclass(frozen=True)
class FileCandidate:
    """An uploaded file as handed over by the routing layer."""

    filename: Optional[str]
    content_type: Optional[str]
    data: bytes


@dataclass
class IngestionOutcome:
    index: int
    filename: Optional[str]
    content_type: Optional[str]
    state: IngestionState
    reference: Optional[str] = None
    error: Optional[InvoiceBoxError] = None

    @property
    def stored(self) -> bool:
        """True when a blob exists for this candidate and should be linked."""
        return self.state in (IngestionState.STORED, IngestionState.NORMALIZATION_FAILED)


@dataclass(frozen=True)
class IngestionConfig:
    """Explicit configuration of the pipeline (no ambient globals)."""

    accepted_content_types: frozenset[str]
    max_upload_size: int
    non_canonical_extensions: frozenset[str]
    conversion_timeout: float = 30.0
    extensions: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: dict(CONTENT_TYPE_EXTENSIONS))

    @classmethod
    def from_settings(cls, config: Settings) -> "IngestionConfig":
        return cls(
            accepted_content_types=frozenset(ct.lower() for ct in config.ACCEPTED_CONTENT_TYPES),
            max_upload_size=config.MAX_UPLOAD_SIZE,
            non_canonical_extensions=frozenset(ext.lower() for ext in config.NON_CANONICAL_EXTENSIONS),
            conversion_timeout=config.CONVERSION_TIMEOUT_SECONDS,
        )


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


class AttachmentIngestionPipeline:
    """Validate, store and normalize batches of uploaded files."""

    def __init__(self, store: BlobStore, normalizer: FormatNormalizer, config: IngestionConfig) -> None:
        self.store = store
        self.normalizer = normalizer
        self.config = config

    @classmethod
    def from_settings(cls, config: Settings, store: Optional[BlobStore] = None) -> "AttachmentIngestionPipeline":
        ingestion_config = IngestionConfig.from_settings(config)
        store = store or create_blob_store(config)
        normalizer = FormatNormalizer(
            store,
            build_converter(config),
            ingestion_config.non_canonical_extensions,
            timeout=ingestion_config.conversion_timeout,
        )
        return cls(store, normalizer, ingestion_config)

    # ------------------------------------------------------------------
    # Validation and naming

    def validate(self, candidate: FileCandidate) -> Optional[ValidationError]:
        """Return the reason ``candidate`` is rejected, or None if accepted."""
        name = candidate.filename or "<unnamed>"
        media_type = _media_type(candidate.content_type)
        if media_type not in self.config.accepted_content_types:
            return ValidationError(
                f"Unsupported content type {candidate.content_type!r} for {name}",
                field="content_type",
                filename=candidate.filename,
            )
        if not candidate.data:
            return ValidationError(f"Empty upload payload for {name}", field="data", filename=candidate.filename)
        if len(candidate.data) > self.config.max_upload_size:
            return ValidationError(
                f"File too large: {name} ({len(candidate.data)} bytes, max {self.config.max_upload_size})",
                field="data",
                filename=candidate.filename,
            )
        return None

    def storage_name(self, candidate: FileCandidate) -> str:
        """Build a globally unique, URL-safe blob name for ``candidate``.

        Shape: ``<epoch ms>-<8 hex>_<sanitized original name>``.
        """
        safe_name = sanitize_filename(candidate.filename)
        known = self.config.extensions.get(_media_type(candidate.content_type), ())
        if known and PurePosixPath(safe_name).suffix.lower() not in known:
            safe_name += known[0]
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}_{safe_name}"

    # ------------------------------------------------------------------
    # Ingestion

    async def ingest(self, candidates: Sequence[FileCandidate]) -> list[IngestionOutcome]:
        """Ingest ``candidates`` concurrently; one outcome per candidate, same order."""
        written: list[str] = []
        try:
            results = await asyncio.gather(
                *(self._ingest_one(i, c, written) for i, c in enumerate(candidates)),
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            logger.warning("[ingest] batch cancelled; removing %d stored blob(s)", len(written))
            await self.discard(written)
            raise
        unexpected = [r for r in results if isinstance(r, BaseException)]
        if unexpected:
            logger.error("[ingest] batch aborted by unexpected error; removing %d stored blob(s)", len(written))
            await self.discard(written)
            raise unexpected[0]
        return list(results)  # type: ignore[arg-type]

    async def ingest_one(self, candidate: FileCandidate) -> IngestionOutcome:
        return (await self.ingest([candidate]))[0]

    async def _ingest_one(self, index: int, candidate: FileCandidate, written: list[str]) -> IngestionOutcome:
        outcome = IngestionOutcome(
            index=index,
            filename=candidate.filename,
            content_type=_media_type(candidate.content_type) or None,
            state=IngestionState.REJECTED,
        )
        rejection = self.validate(candidate)
        if rejection is not None:
            logger.info("[ingest] rejected #%d: %s", index, rejection.message)
            outcome.error = rejection
            return outcome

        name = self.storage_name(candidate)
        try:
            await self.store.write(name, candidate.data)
        except StorageError as e:
            logger.error("[ingest] storing #%d (%s) failed: %s", index, candidate.filename, e.message)
            outcome.state = IngestionState.FAILED
            outcome.error = e
            return outcome
        written.append(name)
        outcome.state = IngestionState.STORED
        outcome.reference = name

        if not self.normalizer.needs_conversion(name):
            return outcome
        # Claimed before the write so a cancelled batch also removes it
        target = self.normalizer.canonical_name(name)
        written.append(target)
        try:
            canonical = await self.normalizer.convert(name)
        except ConversionError as e:
            written.remove(target)
            outcome.state = IngestionState.NORMALIZATION_FAILED
            outcome.error = e
            return outcome
        written.remove(name)
        outcome.reference = canonical
        return outcome

    async def discard(self, references: Iterable[str]) -> list[str]:
        """Best-effort delete of ``references``; return those that could not be removed."""
        residual: list[str] = []
        for reference in list(references):
            try:
                await self.store.delete(reference)
            except BlobNotFoundError:
                logger.warning("[ingest] cleanup: %s already absent", reference)
            except StorageError as e:
                logger.error("[ingest] cleanup: could not remove %s: %s", reference, e.reason)
                residual.append(reference)
        return residual
