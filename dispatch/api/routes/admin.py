"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- liveness plus database reachability
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.api.dependencies import get_db
from dispatch.api.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check could not reach the database")
        return HealthResponse(status="degraded")
    return HealthResponse()
