"""
Health and status endpoints for the framesmith API.
"""

from fastapi import APIRouter
from datetime import datetime

from ..configuration import get_settings

router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """Root endpoint - API info"""
    return {
        "message": "framesmith API is running!",
        "version": "0.1.0",
        "status": "healthy",
        "docs": "/docs"
    }


@router.get("/api/status")
async def get_status():
    """Health check endpoint"""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "framesmith-api",
        "environment": settings.env,
        "timestamp": datetime.now().isoformat()
    }
