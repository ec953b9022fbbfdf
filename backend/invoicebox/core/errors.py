"""Domain exceptions for the attachment lifecycle.

Every failure raised by the services derives from ``InvoiceBoxError`` so
the API layer can translate them with a single family of handlers (see
``invoicebox.api.error_handlers``).  Exceptions carry the file name or
blob reference they concern so callers can report precisely which
attachment failed.

``ValidationError`` and ``NotFoundError`` are raised before any side
effect happens.  ``StorageError`` and ``ConversionError`` concern a
single blob.  ``PartialFailure`` enumerates both sides of a multi-file
operation.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class InvoiceBoxError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "details": self.message}


class ValidationError(InvoiceBoxError):
    """A required field is missing or an upload candidate was rejected."""

    def __init__(self, message: str, *, field: Optional[str] = None, filename: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field
        self.filename = filename


class NotFoundError(InvoiceBoxError):
    """The referenced invoice or attachment does not exist."""

    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class StorageError(InvoiceBoxError):
    """A blob write, read or delete failed."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Storage operation failed for {name}: {reason}")
        self.name = name
        self.reason = reason


class BlobNotFoundError(StorageError):
    """The named blob is absent from the store."""

    def __init__(self, name: str) -> None:
        super().__init__(name, "blob does not exist")


class BlobCollisionError(StorageError):
    """A write targeted a name that already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(name, "a blob with this name already exists")


class ConversionError(InvoiceBoxError):
    """Format normalization failed for one blob; the source is left intact."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"Conversion failed for {reference}: {reason}")
        self.reference = reference
        self.reason = reason


class PartialFailure(InvoiceBoxError):
    """Some items of a multi-file operation succeeded and others failed."""

    def __init__(
        self,
        succeeded: Sequence[str],
        failed: Sequence[dict[str, Any]],
        invoice_id: Optional[int] = None,
    ) -> None:
        super().__init__(f"{len(failed)} of {len(succeeded) + len(failed)} attachment(s) failed")
        self.succeeded = list(succeeded)
        self.failed = list(failed)
        self.invoice_id = invoice_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.invoice_id is not None:
            data["invoice_id"] = self.invoice_id
        data["succeeded"] = self.succeeded
        data["failed"] = self.failed
        return data


__all__ = [
    "InvoiceBoxError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "BlobNotFoundError",
    "BlobCollisionError",
    "ConversionError",
    "PartialFailure",
]
