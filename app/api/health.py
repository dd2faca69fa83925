"""
Health check and status endpoints
"""
from fastapi import APIRouter

from app.config import get_settings
from app.connectors.channel_registry import known_channels
from app.utils.helpers import utcnow
from app import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "channels": list(known_channels()),
        "default_channels": settings.default_channels,
        "credentials_configured": bool(settings.google_service_account_json),
        "timestamp": utcnow().isoformat()
    }
