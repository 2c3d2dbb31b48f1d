"""
Health check endpoints
"""

import logging
from typing import Any
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from marketplace.api.v1.dependencies import get_gateway_registry
from marketplace.core.database import get_session
from marketplace.config import settings
from marketplace.services.gateway import GatewayRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/live")
async def liveness() -> Any:
    """
    Kubernetes liveness probe
    """
    return {"status": "alive", "service": "marketplace-payments"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> Any:
    """
    Kubernetes readiness probe - checks the database
    """
    checks = {"database": False, "api": True}

    try:
        result = await db.execute(text("SELECT 1"))
        checks["database"] = result.scalar() == 1
    except SQLAlchemyError as e:
        logger.error(f"Readiness database check failed: {e}")

    all_healthy = all(checks.values())
    body = {
        "status": "ready" if all_healthy else "not ready",
        "checks": checks,
        "providers": gateways.providers,
        "version": settings.APP_VERSION,
    }
    return JSONResponse(status_code=200 if all_healthy else 503, content=body)
