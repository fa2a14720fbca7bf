"""
Capability and model endpoints.

Probing is read-only. Downloads are explicit: POST /api/models/{kind}/download runs
the idempotent download on a worker thread and pushes progress to the
``download-{kind}`` WebSocket channel.
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from ..ai_upscaler.capabilities import CapabilityProbe
from ..configuration import BackendKind, InterpolationBackendKind, UpscaleBackendKind
from ..constants import AssemblyStatus
from ..models import ModelDownloadRequest, ModelStatusResponse
from ..websocket import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["capabilities"])

_probe: Optional[CapabilityProbe] = None


def get_capability_probe() -> CapabilityProbe:
    """Shared probe; platform facts are re-detected on every request."""
    global _probe
    if _probe is None:
        _probe = CapabilityProbe()
    return _probe


def parse_backend_kind(kind: str) -> BackendKind:
    for kind_enum in (UpscaleBackendKind, InterpolationBackendKind):
        try:
            return kind_enum(kind)
        except ValueError:
            continue
    raise HTTPException(status_code=404, detail=f"Unknown backend: {kind}")


@router.get("/capabilities")
async def get_capabilities(
    width: int = Query(1280, gt=0),
    height: int = Query(720, gt=0),
    factor: Optional[int] = Query(None, ge=1),
):
    """Probe every backend for frames of width x height."""
    probe = get_capability_probe().snapshot()
    return {
        "width": width,
        "height": height,
        "factor": factor,
        "platform": asdict(probe.platform),
        "backends": probe.describe(width, height, factor),
    }


@router.get("/models/{kind}/status", response_model=ModelStatusResponse)
async def get_model_status(kind: str):
    backend = parse_backend_kind(kind)
    status = get_capability_probe().model_status(backend)
    return ModelStatusResponse(backend=backend.value, state=status.state.value, progress=status.progress)


@router.post("/models/{kind}/download", response_model=ModelStatusResponse)
async def download_model(kind: str, request: Optional[ModelDownloadRequest] = None):
    """
    Fetch a backend's model weights.

    Returns immediately with state "ready" when the weights are already on disk.
    """
    backend = parse_backend_kind(kind)
    request = request or ModelDownloadRequest()
    channel = f"download-{backend.value}"
    loop = asyncio.get_running_loop()
    last_percent = [-1]

    def progress_callback(fraction: float):
        percent = int(fraction * 100)
        if percent == last_percent[0]:
            return
        last_percent[0] = percent
        try:
            asyncio.run_coroutine_threadsafe(
                manager.send_progress(channel, {
                    "progress": fraction,
                    "message": f"Downloading {backend.value} weights",
                    "status": AssemblyStatus.PROCESSING.value,
                }),
                loop
            )
        except RuntimeError as e:
            logger.warning(f"Failed to send download progress: {e}")

    logger.info(f"Model download requested: {backend.value}")
    try:
        await asyncio.to_thread(
            get_capability_probe().download_model,
            backend,
            request.width,
            request.height,
            request.factor,
            progress_callback,
        )
    except Exception as e:
        await manager.send_progress(channel, {
            "progress": max(last_percent[0], 0) / 100,
            "message": str(e),
            "status": AssemblyStatus.ERROR.value,
        })
        raise

    await manager.send_progress(channel, {
        "progress": 1.0,
        "message": f"{backend.value} weights ready",
        "status": AssemblyStatus.COMPLETE.value,
    })
    status = get_capability_probe().model_status(backend)
    return ModelStatusResponse(backend=backend.value, state=status.state.value, progress=status.progress)
