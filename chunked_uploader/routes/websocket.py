"""
WebSocket routes for real-time upload progress.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict, Set
import logging
import json
from datetime import datetime
import uuid

logger = logging.getLogger(__name__)
router = APIRouter()


class ConnectionManager:
    """Manages WebSocket connections subscribed to upload updates."""

    def __init__(self):
        # Map upload_id to set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Map WebSocket to upload_id for cleanup
        self.connection_uploads: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, upload_id: str):
        """Accept a WebSocket connection for a specific upload."""
        await websocket.accept()
        self.active_connections.setdefault(upload_id, set()).add(websocket)
        self.connection_uploads[websocket] = upload_id
        logger.info(f"WebSocket connected for upload {upload_id}")

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        upload_id = self.connection_uploads.pop(websocket, None)
        if upload_id is None:
            return
        connections = self.active_connections.get(upload_id)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self.active_connections[upload_id]
        logger.info(f"WebSocket disconnected for upload {upload_id}")

    async def send_message(self, upload_id: str, message: dict):
        """Send a message to all connections for a specific upload."""
        if upload_id not in self.active_connections:
            return

        message_json = json.dumps(message, default=str)
        disconnected = set()

        for connection in list(self.active_connections[upload_id]):
            try:
                await connection.send_text(message_json)
            except Exception as e:
                logger.warning(f"Failed to send message to WebSocket: {e}")
                disconnected.add(connection)

        for connection in disconnected:
            self.disconnect(connection)

    async def broadcast_to_upload(self, upload_id: str, message_type: str, data: dict):
        """Broadcast a structured message to all connections for an upload."""
        message = {
            "type": message_type,
            "upload_id": upload_id,
            "timestamp": datetime.now().isoformat(),
            "data": data,
        }
        await self.send_message(upload_id, message)


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws/uploads/{upload_id}")
async def websocket_endpoint(websocket: WebSocket, upload_id: str):
    """
    WebSocket endpoint streaming status changes, chunk acknowledgements and
    progress samples for one upload.
    """
    try:
        try:
            uuid.UUID(upload_id)
        except ValueError:
            await websocket.close(code=4000, reason="Invalid upload_id format")
            return

        await manager.connect(websocket, upload_id)

        await websocket.send_text(json.dumps({
            "type": "connected",
            "upload_id": upload_id,
            "timestamp": datetime.now().isoformat(),
            "message": "Connected to upload updates"
        }))

        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)

                if message.get("type") == "ping":
                    await websocket.send_text(json.dumps({
                        "type": "pong",
                        "timestamp": datetime.now().isoformat()
                    }))

            except WebSocketDisconnect:
                break
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON received from WebSocket for upload {upload_id}")
                continue

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for upload {upload_id}: {e}")
    finally:
        manager.disconnect(websocket)


async def broadcast_upload_update(upload_id: str, message_type: str, data: dict):
    """Broadcast an upload update to all connected WebSocket clients."""
    await manager.broadcast_to_upload(upload_id, message_type, data)
