# ws_manager.py
import asyncio
import logging
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger("courier-service.ws")


class ConnectionManager:
    """Open sockets per driver. A send failure drops that socket only."""

    def __init__(self):
        self.connections: Dict[str, Set[WebSocket]] = {}
        self.lock = asyncio.Lock()

    async def connect(self, driver_id: str, ws: WebSocket):
        await ws.accept()
        async with self.lock:
            self.connections.setdefault(driver_id, set()).add(ws)
        logger.info(f"[WS CONNECT] Driver {driver_id} connected. Total clients: {self.count()}")

    async def disconnect(self, driver_id: str, ws: WebSocket):
        async with self.lock:
            sockets = self.connections.get(driver_id)
            if sockets:
                sockets.discard(ws)
                if not sockets:
                    self.connections.pop(driver_id, None)
        logger.info(f"[WS DISCONNECT] Driver {driver_id} disconnected. Total clients: {self.count()}")

    def count(self) -> int:
        return sum(len(s) for s in self.connections.values())

    async def send(self, ws: WebSocket, message: dict) -> bool:
        try:
            await ws.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"[WS SEND ERROR] {e}")
            return False

    async def send_to_driver(self, driver_id: str, message: dict) -> int:
        sent = 0
        dead = []
        for ws in list(self.connections.get(driver_id, ())):
            if await self.send(ws, message):
                sent += 1
            else:
                dead.append(ws)
        for ws in dead:
            await self.disconnect(driver_id, ws)
        return sent
