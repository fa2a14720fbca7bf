"""
WebSocket connection management for real-time assembly progress updates.

Channels are keyed by id: an assembly id for pipeline runs, ``download-{kind}`` for
model downloads. Each channel can have several listeners.
"""

from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, List
import logging

logger = logging.getLogger(__name__)

# Global progress tracking for assemblies and downloads
# Format: {channel_id: {"progress": 0.0-1.0, "message": "...", "phase": "...", "status": "pending|processing|complete|error|cancelled"}}
assembly_progress: Dict[str, dict] = {}


class ConnectionManager:
    """
    Manages WebSocket connections for progress updates.

    Stores active connections by channel id and provides methods for:
    - Connecting new WebSocket clients
    - Disconnecting clients
    - Broadcasting progress updates
    """

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, channel_id: str, websocket: WebSocket):
        """Accept a WebSocket connection and store it by channel id"""
        await websocket.accept()
        self.active_connections.setdefault(channel_id, []).append(websocket)
        logger.info(f"WebSocket connected for channel: {channel_id}")

        # Late joiners get the last known state immediately
        if channel_id in assembly_progress:
            await websocket.send_json(assembly_progress[channel_id])

    def disconnect(self, channel_id: str, websocket: WebSocket = None):
        """Remove one WebSocket connection, or every connection for the channel"""
        connections = self.active_connections.get(channel_id)
        if not connections:
            return
        if websocket is None:
            del self.active_connections[channel_id]
        elif websocket in connections:
            connections.remove(websocket)
            if not connections:
                del self.active_connections[channel_id]
        logger.info(f"WebSocket disconnected for channel: {channel_id}")

    async def send_progress(self, channel_id: str, data: dict):
        """Record the update and send it to every listener on the channel"""
        assembly_progress[channel_id] = data
        for websocket in list(self.active_connections.get(channel_id, [])):
            try:
                await websocket.send_json(data)
            except Exception as e:
                logger.error(f"Error sending progress to {channel_id}: {e}")
                self.disconnect(channel_id, websocket)


# Global instance of the connection manager
manager = ConnectionManager()


async def websocket_progress(websocket: WebSocket, channel_id: str):
    """
    WebSocket endpoint handler for real-time progress updates.

    Registered in main.py for both assembly and download channels.
    """
    await manager.connect(channel_id, websocket)
    try:
        # Keep connection alive and wait for messages
        while True:
            try:
                await websocket.receive_text()
            except WebSocketDisconnect:
                break
    except Exception as e:
        logger.error(f"WebSocket error for {channel_id}: {e}")
    finally:
        manager.disconnect(channel_id, websocket)
