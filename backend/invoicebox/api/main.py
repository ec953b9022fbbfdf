"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and
sets up startup and shutdown events. When run with uvicorn it
initialises the database and loads configuration from
``invoicebox.core.config``:

```bash
uvicorn invoicebox.api.main:app --reload
```
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from invoicebox.api.endpoints.health import router as health_router
from invoicebox.api.error_handlers import register_exception_handlers
from invoicebox.api.routes.invoices import router as invoices_router
from invoicebox.core.config import settings
from invoicebox.core.database import get_db_debug_info, init_db
from invoicebox.core.observability import init_sentry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting up...")
    # Centralised Sentry init (idempotent)
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    version="1.0.0",
    lifespan=lifespan,
)

# In development allow all origins; otherwise only the configured ones
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
allow_origins = ["*"] if env_is_dev else list(dict.fromkeys(settings.BACKEND_CORS_ORIGINS or []))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register custom exception handlers
register_exception_handlers(app)

# Include routers
app.include_router(invoices_router, prefix=settings.API_PREFIX)
app.include_router(health_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}


@app.get("/debug/db")
async def db_debug():
    """Return non-sensitive DB diagnostics (for development)."""
    return get_db_debug_info()
