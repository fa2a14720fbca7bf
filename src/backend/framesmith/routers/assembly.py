"""
Assembly endpoints.

POST /api/assemble runs the pipeline on a worker thread and streams progress to
/ws/assembly/{assembly_id}. Errors propagate as AssemblyError and are mapped to
HTTP status codes by the handler registered in main.py.
"""

import asyncio
import logging
import uuid
from typing import Dict

from fastapi import APIRouter, HTTPException

from ..constants import AssemblyStatus
from ..frames import FrameSequence
from ..models import AssemblyRequest, AssemblyResponse
from ..services.assembly_errors import AssemblyError, AssemblyErrorType, InsufficientFramesError
from ..services.assembly_pipeline import AssemblyPipeline
from ..services.frame_archive import load_sequence
from ..websocket import assembly_progress, manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assemble", tags=["assembly"])

# Pipelines currently running, by assembly id (for cancellation)
active_assemblies: Dict[str, AssemblyPipeline] = {}


def create_pipeline(progress_callback) -> AssemblyPipeline:
    return AssemblyPipeline(progress_callback=progress_callback)


def _progress_message(progress: float, message: str, phase: str, status: AssemblyStatus, **extra) -> dict:
    data = {
        "progress": progress,
        "message": message,
        "phase": phase,
        "status": status.value,
    }
    data.update(extra)
    return data


@router.post("", response_model=AssemblyResponse)
async def assemble(request: AssemblyRequest):
    """Assemble frames into a video and return once the file is written."""
    assembly_id = request.assembly_id or uuid.uuid4().hex
    if assembly_id in active_assemblies:
        raise HTTPException(status_code=409, detail=f"Assembly {assembly_id} is already running")

    configuration = request.to_configuration()
    if request.archive_dir:
        frames = await asyncio.to_thread(load_sequence, request.archive_dir)
    else:
        frames = FrameSequence.from_paths(request.frame_paths)
    if frames.is_empty:
        raise InsufficientFramesError(0, 1)

    loop = asyncio.get_running_loop()

    def progress_callback(progress: float, message: str, phase: str):
        # Fire-and-forget WebSocket update from the worker thread
        try:
            asyncio.run_coroutine_threadsafe(
                manager.send_progress(
                    assembly_id,
                    _progress_message(progress, message, phase, AssemblyStatus.PROCESSING),
                ),
                loop
            )
        except RuntimeError as e:
            logger.warning(f"[Assembly] Failed to send progress: {e}")

    pipeline = create_pipeline(progress_callback)
    active_assemblies[assembly_id] = pipeline
    logger.info(f"[Assembly] Starting {assembly_id}: {len(frames)} frames -> {configuration.output_path}")
    await manager.send_progress(
        assembly_id, _progress_message(0.0, "Queued", "initializing", AssemblyStatus.PENDING)
    )

    try:
        result = await asyncio.to_thread(pipeline.run, frames, configuration)
    except AssemblyError as e:
        status = AssemblyStatus.CANCELLED if e.error_type == AssemblyErrorType.CANCELLED else AssemblyStatus.ERROR
        previous = assembly_progress.get(assembly_id, {}).get("progress", 0.0)
        await manager.send_progress(
            assembly_id,
            _progress_message(previous, str(e), e.stage or "error", status, error=e.to_dict()),
        )
        raise
    finally:
        active_assemblies.pop(assembly_id, None)

    await manager.send_progress(
        assembly_id,
        _progress_message(1.0, "Video ready", "complete", AssemblyStatus.COMPLETE, result=result.to_dict()),
    )
    return AssemblyResponse(assembly_id=assembly_id, **result.to_dict())


@router.post("/{assembly_id}/cancel")
async def cancel_assembly(assembly_id: str):
    pipeline = active_assemblies.get(assembly_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="Assembly ID not found")
    cancelled = pipeline.cancel()
    logger.info(f"[Assembly] Cancel requested for {assembly_id} (initiated={cancelled})")
    return {"assembly_id": assembly_id, "cancelled": cancelled}


@router.get("/progress/{assembly_id}")
async def get_assembly_progress(assembly_id: str):
    """
    Get the last progress snapshot of an assembly (polling alternative to the WebSocket)
    """
    if assembly_id not in assembly_progress:
        raise HTTPException(status_code=404, detail="Assembly ID not found")
    return assembly_progress[assembly_id]
