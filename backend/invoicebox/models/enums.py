"""Enumeration types used throughout the invoice API.

Enumerations make it easier to constrain the values that can be
stored in the database or passed through the API. They also
improve readability when dealing with domain concepts like receipt
categories or attachment states.

When modifying these enums you should update any corresponding
database columns or Pydantic validators so that new values are
accepted where appropriate.
"""

from enum import Enum


class ReceiptType(str, Enum):
    """Known receipt categories offered to clients.

    The ``receipt_type`` column is free text; these values are advertised
    but not enforced.
    """

    INVOICE = "Invoice"
    GAS = "Gas"
    SUPPORT_OFFICE = "Support Office"
    MEAL_EXPENSE = "Meal Expense"
    REPRESENTATION_EXPENSE = "Representation Expense"
    OTHER = "Other"


class AttachmentStatus(str, Enum):
    """Persisted state of a link row."""

    LINKED = "linked"
    PENDING_NORMALIZATION = "pending_normalization"


class IngestionState(str, Enum):
    """Outcome of one candidate file passing through ingestion."""

    STORED = "stored"
    NORMALIZATION_FAILED = "normalization_failed"
    REJECTED = "rejected"
    FAILED = "failed"
