"""WebSocket transport for chat events.

Clients join the group of a chat (the chat id) and receive every event the
core broadcasts for it as ``{"type": <event>, "payload": [...]}``.
"""

from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket
from fastapi.websockets import WebSocketDisconnect
from loguru import logger


class WebSocketGroupBroadcaster:
    """Tracks client connections per chat and relays broadcasts to them."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self._connection_groups: Dict[str, Set[str]] = {}  # chat_id -> client_ids

    async def connect(self, client_id: str, websocket: WebSocket) -> bool:
        """Accept a new client connection."""
        try:
            await websocket.accept()
            self.active_connections[client_id] = websocket
            logger.info(f"Client {client_id} connected. Total connections: {len(self.active_connections)}")
            return True
        except Exception as e:
            logger.error(f"Failed to accept connection for {client_id}: {e}")
            return False

    async def disconnect(self, client_id: str) -> None:
        websocket = self.active_connections.pop(client_id, None)
        for members in self._connection_groups.values():
            members.discard(client_id)
        if websocket:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(f"Connection for {client_id} already closed: {e}")
            logger.info(f"Client {client_id} disconnected. Total connections: {len(self.active_connections)}")

    def add_to_group(self, client_id: str, group_id: str) -> None:
        self._connection_groups.setdefault(group_id, set()).add(client_id)

    def remove_from_group(self, client_id: str, group_id: str) -> None:
        if group_id in self._connection_groups:
            self._connection_groups[group_id].discard(client_id)

    def group_members(self, group_id: str) -> Set[str]:
        return set(self._connection_groups.get(group_id, set()))

    async def send_json(self, client_id: str, data: dict) -> bool:
        websocket = self.active_connections.get(client_id)
        if not websocket:
            return False
        try:
            await websocket.send_json(data)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to {client_id}: {e}")
            return False

    async def broadcast_to_group(
        self, group_id: str, data: dict, exclude: Optional[Set[str]] = None
    ) -> int:
        exclude = exclude or set()
        sent_count = 0
        for client_id in self.group_members(group_id):
            if client_id in exclude:
                continue
            if await self.send_json(client_id, data):
                sent_count += 1
        return sent_count

    async def broadcast(self, group_id: str, event: str, *payload: Any) -> None:
        """Send a chat event to every client in ``group_id``."""
        sent = await self.broadcast_to_group(
            group_id, {"type": event, "payload": list(payload)}
        )
        logger.trace(f"{event} delivered to {sent} clients of {group_id}")


def init_chat_ws_route(broadcaster: WebSocketGroupBroadcaster) -> APIRouter:
    """
    Create the ``/chats/{chat_id}/ws`` WebSocket route.

    Clients may send ``{"type": "join", "chat_id": ...}`` or ``{"type":
    "leave", "chat_id": ...}`` to follow additional chats over the same
    connection.
    """
    router = APIRouter()

    @router.websocket("/chats/{chat_id}/ws")
    async def chat_events(websocket: WebSocket, chat_id: str, client_id: str):
        if not await broadcaster.connect(client_id, websocket):
            return
        broadcaster.add_to_group(client_id, chat_id)
        try:
            while True:
                data = await websocket.receive_json()
                action = data.get("type")
                target = data.get("chat_id")
                if not target:
                    continue
                if action == "join":
                    broadcaster.add_to_group(client_id, target)
                elif action == "leave":
                    broadcaster.remove_from_group(client_id, target)
        except WebSocketDisconnect:
            await broadcaster.disconnect(client_id)
        except Exception as e:
            logger.error(f"Error in chat WebSocket for {client_id}: {e}")
            await broadcaster.disconnect(client_id)

    return router
