"""Health check endpoints for monitoring."""
from typing import Dict, Any
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from redis.exceptions import RedisError

from invoicebox.api.dependencies import get_db_session, get_pipeline
from invoicebox.core.config import settings
from invoicebox.core.errors import StorageError
from invoicebox.services.cache import get_redis
from invoicebox.services.ingestion_service import AttachmentIngestionPipeline

router = APIRouter(tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint (supports GET & HEAD)."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": "1.0.0"
    }


@router.get("/health/detailed")
async def detailed_health_check(
    db: AsyncSession = Depends(get_db_session),
    pipeline: AttachmentIngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Detailed health check with service status."""
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "services": {}
    }

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        health_status["services"]["database"] = "healthy"
    except SQLAlchemyError as e:
        health_status["services"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    # Check Redis (cache is optional)
    redis = await get_redis()
    if redis is None:
        health_status["services"]["cache"] = "disabled"
    else:
        try:
            await redis.ping()
            health_status["services"]["cache"] = "healthy"
        except (RedisError, OSError) as e:
            health_status["services"]["cache"] = f"unhealthy: {str(e)}"
            health_status["status"] = "degraded"

    # Check blob storage with a lookup of a name that never exists
    try:
        await pipeline.store.exists("healthcheck-probe")
        health_status["services"]["storage"] = "healthy"
    except StorageError as e:
        health_status["services"]["storage"] = f"unhealthy: {e.reason}"
        health_status["status"] = "degraded"

    return health_status
