import logging
from typing import List

from fastapi import WebSocket


logger = logging.getLogger(__name__)


class ConnectionManager:

    def __init__(self) -> None:
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        try:
            self.active_connections.remove(websocket)
        except ValueError:
            pass

    async def broadcast(self, message: str) -> None:
        for conn in list(self.active_connections):
            try:
                await conn.send_text(message)
            except Exception:
                logger.debug("Dropping websocket that failed to receive", exc_info=True)
                self.disconnect(conn)
