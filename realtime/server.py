from typing import Optional

from fastapi.websockets import WebSocketState

from constants import ALLOW_JOIN_BEFORE_IDENTIFY
from logging_config import get_logger
from realtime.lifecycle import ConnectionManager
from realtime.notifications import NotificationDispatcher
from realtime.presence import PresenceRegistry
from realtime.rooms import RoomRouter

logger = get_logger(__name__)


class ChatServer:
    """Everything the realtime layer shares, created once per application run."""

    def __init__(self, store, allow_join_before_identify: Optional[bool] = None):
        if allow_join_before_identify is None:
            allow_join_before_identify = ALLOW_JOIN_BEFORE_IDENTIFY
        self.store = store
        self.registry = PresenceRegistry()
        self.router = RoomRouter(store)
        self.manager = ConnectionManager(self.registry, self.router, store, allow_join_before_identify=allow_join_before_identify)
        logger.info(f"Chat server initialized (join before identify: {allow_join_before_identify})")

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self.manager.dispatcher

    async def shutdown(self):
        sessions = list(self.manager.sessions.values())
        logger.info(f"Shutting down chat server, closing {len(sessions)} connections")
        for session in sessions:
            await self.manager.disconnect(session)
            try:
                if getattr(session.websocket, "application_state", None) == WebSocketState.CONNECTED:
                    await session.websocket.close(code=1001, reason="Server shutting down")
            except Exception as e:
                logger.debug(f"Error closing WebSocket {session.connection_id}: {e}")
        self.registry.clear()
