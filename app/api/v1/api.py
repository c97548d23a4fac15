"""API v1 router configuration.

This module sets up the main API router and includes the sub-routers for
workflows and reports.
"""

from fastapi import (
    APIRouter,
    Depends,
    Request,
)

from app.api.v1.deps import get_database
from app.api.v1.reports import router as reports_router
from app.api.v1.workflows import router as workflows_router
from app.core.config import settings
from app.core.limiter import limiter
from app.core.logging import logger
from app.services.database import DatabaseService

api_router = APIRouter()

# Include routers
api_router.include_router(workflows_router, prefix="/workflows", tags=["workflows"])
api_router.include_router(reports_router, prefix="/reports", tags=["reports"])


@api_router.get("/health")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["health"][0])
async def health_check(request: Request, database: DatabaseService = Depends(get_database)):
    """Health check endpoint.

    Returns:
        dict: Health status information.
    """
    logger.info("health_check_called")
    database_ok = await database.health_check()
    return {
        "status": "healthy" if database_ok else "degraded",
        "version": settings.VERSION,
        "database": "healthy" if database_ok else "unhealthy",
    }
