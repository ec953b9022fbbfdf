"""Top-level application package for the invoice management API.

This package contains the FastAPI backend that stores invoices together
with their receipt images.  It includes database models, Pydantic
schemas, the blob store and format normalizer, the attachment ingestion
pipeline, the invoice-attachment manager, background tasks for deferred
normalization, and the API routers.

To run the API locally you can execute:

```bash
uvicorn invoicebox.api.main:app --reload
```

This will serve the FastAPI application on http://localhost:8000 and
automatically reload on code changes. The default configuration uses
a local SQLite database stored in ``invoicebox.db`` and keeps uploaded
images under ``./uploads``. You can override configuration values using
environment variables or a ``.env`` file at the project root.
"""

__all__: list[str] = []  # explicit for linters; populated dynamically elsewhere if needed
