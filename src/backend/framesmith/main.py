"""
framesmith Backend API - Main Application Entry Point

This is the FastAPI application that exposes the video assembly pipeline. It
configures logging, CORS and exception handling, and includes all routers.

Architecture:
- main.py: App initialization, middleware, startup (this file)
- models.py: Pydantic models for request/response validation
- websocket.py: WebSocket connection management for real-time progress
- routers/health.py: Health check and status endpoints
- routers/capabilities.py: Backend capability probing and model downloads
- routers/assembly.py: Assemble / cancel / progress endpoints
"""

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import traceback
import sys
import logging

# Configure logging with timestamps
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

from framesmith.configuration import get_settings
from framesmith.routers import health_router, capabilities_router, assembly_router
from framesmith.services.assembly_errors import AssemblyError, AssemblyErrorType
from framesmith.websocket import websocket_progress

settings = get_settings()

# HTTP status for each assembly error kind
STATUS_BY_ERROR_TYPE = {
    AssemblyErrorType.INVALID_INPUT: 400,
    AssemblyErrorType.ALREADY_EXISTS: 409,
    AssemblyErrorType.MODEL_NOT_READY: 412,
    AssemblyErrorType.CAPABILITY_UNAVAILABLE: 503,
    AssemblyErrorType.CANCELLED: 499,
    AssemblyErrorType.IO_FAILURE: 500,
    AssemblyErrorType.TRANSIENT_PROCESSING_FAILURE: 500,
}

# Create FastAPI app
app = FastAPI(
    title="framesmith API",
    version="0.1.0",
    description="Turns image sequences into video with optional AI upscaling and frame interpolation"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",  # Vite dev server
        "http://localhost:3000",  # Alternative port
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(capabilities_router)
app.include_router(assembly_router)


# WebSocket endpoint for assembly progress
@app.websocket("/ws/assembly/{assembly_id}")
async def ws_assembly_progress(websocket: WebSocket, assembly_id: str):
    """WebSocket endpoint for real-time assembly progress updates"""
    await websocket_progress(websocket, assembly_id)


# WebSocket endpoint for model download progress
@app.websocket("/ws/download/{kind}")
async def ws_download_progress(websocket: WebSocket, kind: str):
    """WebSocket endpoint for model download progress (channel download-{kind})"""
    await websocket_progress(websocket, f"download-{kind}")


@app.on_event("startup")
async def startup_event():
    """Log configuration on startup"""
    logger.info("=" * 80)
    logger.info("FRAMESMITH BACKEND STARTING")
    logger.info("=" * 80)
    logger.info(f"Environment: {settings.env}")
    logger.info(f"Python version: {sys.version.split()[0]}")
    logger.info(f"Weights directory: {settings.weights_dir}")
    logger.info(f"FFmpeg binary: {settings.ffmpeg_binary}")
    if settings.force_headless:
        logger.warning("Headless mode forced: accelerated backends disabled")
    if settings.device:
        logger.info(f"Device override: {settings.device}")
    logger.info("=" * 80)


@app.exception_handler(AssemblyError)
async def assembly_exception_handler(request, exc: AssemblyError):
    """Map pipeline errors to status codes; the body is the structured error"""
    status_code = STATUS_BY_ERROR_TYPE.get(exc.error_type, 500)
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """
    Global exception handler that provides detailed errors in dev mode
    and sanitized errors in production
    """
    if settings.is_dev:
        error_detail = {
            "error": type(exc).__name__,
            "message": str(exc),
            "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
            "request_url": str(request.url),
            "method": request.method
        }
        return JSONResponse(status_code=500, content=error_detail)
    else:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "message": "An error occurred while processing your request"
            }
        )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
