"""
Custom exception handlers for FastAPI.
Translates domain errors into clear, actionable JSON responses.
"""

import logging

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_207_MULTI_STATUS,
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
)

from invoicebox.core.errors import (
    ConversionError,
    InvoiceBoxError,
    NotFoundError,
    PartialFailure,
    StorageError,
    ValidationError,
)
from invoicebox.core.observability import sentry_capture

logger = logging.getLogger(__name__)

# Most specific first
_STATUS_BY_ERROR: list[tuple[type[InvoiceBoxError], int]] = [
    (ValidationError, HTTP_400_BAD_REQUEST),
    (NotFoundError, HTTP_404_NOT_FOUND),
    (ConversionError, HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageError, HTTP_502_BAD_GATEWAY),
    (PartialFailure, HTTP_207_MULTI_STATUS),
]


def status_for(exc: InvoiceBoxError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return HTTP_500_INTERNAL_SERVER_ERROR


def domain_exception_handler(request: Request, exc: InvoiceBoxError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        sentry_capture(exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    sentry_capture(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(InvoiceBoxError, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
