"""
API Routers for the framesmith backend.

This package contains FastAPI routers organized by functionality:
- health.py: Health check and status endpoints
- capabilities.py: Backend capability probing, model status and downloads
- assembly.py: Video assembly, cancellation and progress endpoints
"""

from .health import router as health_router
from .capabilities import router as capabilities_router
from .assembly import router as assembly_router

__all__ = ['health_router', 'capabilities_router', 'assembly_router']
