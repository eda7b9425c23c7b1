"""
Support chat between shoppers and admins.

ChatStore keeps message history per conversation (one conversation per
shopper). ChatHub tracks the open websockets. Both are created by the app and
handed to the websocket handlers, so a different store can be plugged in.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, List, Set

from fastapi import WebSocket
from starlette.requests import HTTPConnection

from database import now_utc

logger = logging.getLogger(__name__)


class ChatStore:
    def __init__(self):
        self._conversations: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def history(self, conversation_id: str) -> List[Dict[str, Any]]:
        return list(self._conversations.get(conversation_id, []))

    def append(self, conversation_id: str, message: str, is_admin: bool) -> Dict[str, Any]:
        msg = {
            "user_id": conversation_id,
            "message": message,
            "timestamp": now_utc().isoformat(),
            "is_admin": is_admin,
        }
        self._conversations[conversation_id].append(msg)
        return msg


class ChatHub:
    def __init__(self):
        self.user_sockets: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.admin_sockets: Set[WebSocket] = set()

    def join(self, conversation_id: str, websocket: WebSocket) -> None:
        self.user_sockets[conversation_id].add(websocket)
        logger.info("User %s joined chat", conversation_id)

    def join_admin(self, websocket: WebSocket) -> None:
        self.admin_sockets.add(websocket)

    def leave(self, websocket: WebSocket) -> None:
        self.admin_sockets.discard(websocket)
        for conversation_id in list(self.user_sockets):
            sockets = self.user_sockets[conversation_id]
            sockets.discard(websocket)
            if not sockets:
                del self.user_sockets[conversation_id]

    async def _send(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
        try:
            await websocket.send_json(payload)
        except Exception as exc:
            # a peer that closed before its handler called leave()
            logger.warning("Dropping chat socket after failed send: %s", exc)
            self.leave(websocket)

    async def deliver(self, conversation_id: str, msg: Dict[str, Any]) -> None:
        for ws in list(self.user_sockets.get(conversation_id, ())):
            await self._send(ws, {"type": "receiveMessage", "message": msg})
        for ws in list(self.admin_sockets):
            await self._send(ws, {"type": "receiveMessageAdmin", "user_id": conversation_id, "message": msg})


def get_chat_store(conn: HTTPConnection) -> ChatStore:
    return conn.app.state.chat_store


def get_chat_hub(conn: HTTPConnection) -> ChatHub:
    return conn.app.state.chat_hub
