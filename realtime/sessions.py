import uuid
from enum import Enum
from typing import Any, Optional, Set

from fastapi.websockets import WebSocketDisconnect, WebSocketState

from logging_config import get_logger
from schemas.chat import UserIdentity

logger = get_logger(__name__)


class SessionState(str, Enum):
    CONNECTED = "connected"
    IDENTIFIED = "identified"
    CLOSED = "closed"


class Session:
    """One live websocket connection and what it has bound to itself."""

    def __init__(self, websocket: Any, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self.identity: Optional[UserIdentity] = None
        self.generation: Optional[int] = None
        self.rooms: Set[str] = set()
        self.state = SessionState.CONNECTED

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    @property
    def is_identified(self) -> bool:
        return self.state == SessionState.IDENTIFIED

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    async def send(self, event: str, data: Any = None) -> bool:
        """Send one event frame. Returns False when the frame was not delivered.

        Sending to a closed session, or to a socket that went away, is a
        silent no-op.
        """
        if self.is_closed:
            return False
        state = getattr(self.websocket, "application_state", WebSocketState.CONNECTED)
        if state != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_json({"event": event, "data": data})
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Failed to send {event} to connection {self.connection_id}: {e}")
            return False

    def __repr__(self):
        return f"<Session {self.connection_id} user={self.user_id} state={self.state.value} rooms={len(self.rooms)}>"
