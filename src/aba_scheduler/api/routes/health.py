"""
Health check and system status routes
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Response

from ...core.services import SchedulingServices
from ..dependencies import get_services

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check(response: Response, services: SchedulingServices = Depends(get_services)):
    """Health check endpoint"""
    database_ok = await services.database.health_check()
    if not database_ok:
        response.status_code = 503
    return {
        "status": "healthy" if database_ok else "unhealthy",
        "service": services.settings.app_name,
        "version": services.settings.app_version,
        "database": "ok" if database_ok else "unavailable",
        "timestamp": services.clock.now().isoformat(),
    }


@router.get("/stats")
async def get_cache_stats(services: SchedulingServices = Depends(get_services)):
    """Get cache statistics"""
    return {
        "cache": await services.cache_manager.get_stats(),
        "checked_at": datetime.now().isoformat(),
    }
