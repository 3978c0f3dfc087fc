import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from constants import NOTIFICATION_PREVIEW_LENGTH
from logging_config import get_logger
from realtime.presence import PresenceRegistry
from realtime.rooms import RoomRouter
from realtime.sessions import Session
from schemas.chat import ChatMessage

logger = get_logger(__name__)


@dataclass(frozen=True)
class Delivery:
    """Outcome of a single targeted notification."""

    recipient_id: str
    delivered: bool
    reason: str
    connection_id: Optional[str] = None


def truncate_preview(body: str, length: int = NOTIFICATION_PREVIEW_LENGTH) -> str:
    if length <= 0 or len(body) <= length:
        return body
    return body[:length].rstrip() + "..."


class NotificationDispatcher:
    """Out-of-room alerts and broadcasts.

    Delivery is best effort: an offline recipient is dropped, nothing is
    queued or retried.
    """

    def __init__(self, registry: PresenceRegistry, router: RoomRouter, sessions: Mapping[str, Session], preview_length: int = NOTIFICATION_PREVIEW_LENGTH):
        self.registry = registry
        self.router = router
        self.sessions = sessions
        self.preview_length = preview_length

    async def notify_new_message(self, message: ChatMessage, recipient_id: str, sender_connection_id: Optional[str] = None) -> Delivery:
        entry = self.registry.lookup_user(recipient_id)
        if entry is None:
            return Delivery(recipient_id, False, "offline")
        if entry.connection_id == sender_connection_id:
            return Delivery(recipient_id, False, "sender_connection", entry.connection_id)
        if self.router.is_member(message.room_id, entry.connection_id):
            # Already gets receive_message
            return Delivery(recipient_id, False, "in_room", entry.connection_id)

        session = self.sessions.get(entry.connection_id)
        if session is None:
            return Delivery(recipient_id, False, "no_session", entry.connection_id)

        sent = await session.send("new_message_notification", {
            "roomId": message.room_id,
            "messageId": message.id,
            "senderId": message.sender_id,
            "senderName": message.sender_name,
            "senderImage": message.sender_image,
            "preview": truncate_preview(message.message, self.preview_length),
            "createdAt": message.created_at.isoformat() if message.created_at else None,
        })
        if sent:
            logger.debug(f"Notified {recipient_id} on {entry.connection_id} about message {message.id}")
            return Delivery(recipient_id, True, "delivered", entry.connection_id)
        return Delivery(recipient_id, False, "send_failed", entry.connection_id)

    async def notify_broadcast(self, event: str, payload: Any, exclude_connection_id: Optional[str] = None, exclude_user_id: Optional[str] = None) -> int:
        """Send an event to every connected session. Returns how many got it."""
        targets = [
            session for session in list(self.sessions.values())
            if session.connection_id != exclude_connection_id
            and (exclude_user_id is None or session.user_id != exclude_user_id)
        ]
        if not targets:
            return 0
        results = await asyncio.gather(*(s.send(event, payload) for s in targets), return_exceptions=True)
        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Broadcast {event} reached {delivered}/{len(targets)} sessions")
        return delivered
