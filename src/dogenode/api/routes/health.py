"""Health check endpoints."""

from fastapi import APIRouter, Depends

from dogenode import __version__
from dogenode.api.dependencies import get_app_settings, get_selector
from dogenode.config import Settings
from dogenode.rails.selector import RailSelector

router = APIRouter()


@router.get("/health")
async def health_check(selector: RailSelector = Depends(get_selector)):
    """Service status and per-rail availability."""
    return {
        "status": "healthy" if selector.any_available() else "degraded",
        "service": "dogenode",
        "version": __version__,
        "rails": selector.status(),
    }


@router.get("/health/detailed")
async def detailed_health(
    selector: RailSelector = Depends(get_selector),
    settings: Settings = Depends(get_app_settings),
):
    """Detailed health check with configuration info."""
    return {
        "status": "healthy" if selector.any_available() else "degraded",
        "service": "dogenode",
        "version": __version__,
        "rails": selector.status(),
        "config": settings.get_safe_dict(),
    }
