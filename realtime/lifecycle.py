from typing import Any, Dict, List, Tuple

from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from constants import ALLOW_JOIN_BEFORE_IDENTIFY
from logging_config import get_logger
from realtime.errors import ChatError, InvalidPayload, InvalidState, PersistenceFailure, PresenceFailure
from realtime.notifications import Delivery, NotificationDispatcher
from realtime.presence import PresenceEntry, PresenceRegistry
from realtime.rooms import RoomRouter
from realtime.sessions import Session, SessionState
from schemas.chat import (
    ChatMessage,
    MarkReadPayload,
    RoomPayload,
    SendMessagePayload,
    TypingPayload,
    UserIdentity,
)

logger = get_logger(__name__)

# camelCase names some clients use for the same events
EVENT_ALIASES = {
    "joinRoom": "join_room",
    "leaveRoom": "leave_room",
    "send": "send_message",
    "sendMessage": "send_message",
    "typingStart": "typing_start",
    "typingStop": "typing_stop",
    "markRead": "mark_read",
}


class ConnectionManager:
    """Drives each session through connect -> identify -> join* -> disconnect.

    Owns the table of live sessions. Every public coroutine takes the session
    it acts for; failures are reported to that session only.
    """

    def __init__(self, registry: PresenceRegistry, router: RoomRouter, store, allow_join_before_identify: bool = ALLOW_JOIN_BEFORE_IDENTIFY):
        self.registry = registry
        self.router = router
        self.store = store
        self.allow_join_before_identify = allow_join_before_identify
        self.sessions: Dict[str, Session] = {}
        self.dispatcher = NotificationDispatcher(registry, router, self.sessions)
        self._handlers = {
            "identify": self._on_identify,
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "send_message": self._on_send_message,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "mark_read": self._on_mark_read,
        }

    # Lifecycle operations

    async def connect(self, websocket: Any) -> Session:
        session = Session(websocket)
        self.sessions[session.connection_id] = session
        logger.info(f"Connection {session.connection_id} opened (live sessions: {len(self.sessions)})")
        await session.send("connected", {"connectionId": session.connection_id})
        return session

    async def identify(self, session: Session, identity: UserIdentity) -> PresenceEntry:
        self._require_open(session)

        previous = None
        if session.identity is not None and session.user_id != identity.user_id:
            logger.info(f"Connection {session.connection_id} re-identifying from {session.user_id} to {identity.user_id}")
            previous = session.identity
        was_current = previous is not None and self.registry.connection_for(previous.user_id) == session.connection_id

        try:
            entry = self.registry.register(session.connection_id, identity)
        except Exception as e:
            logger.error(f"Failed to register presence for {identity.user_id} on {session.connection_id}: {e}", exc_info=True)
            await self._reconcile_failed_identify(session, was_current)
            raise PresenceFailure("Could not register presence") from e

        session.identity = identity
        session.generation = entry.generation
        session.state = SessionState.IDENTIFIED
        # Rooms joined before identify now know who this session is
        for room_id in session.rooms:
            self.router.record_participant(room_id, identity.user_id)

        # The registry released the old user when the connection switched identity
        if was_current and not self.registry.is_online(previous.user_id):
            await self._broadcast_offline(session.connection_id, previous)

        logger.info(f"User {identity.user_id} ({identity.user_name}) identified on {session.connection_id}")
        await self.dispatcher.notify_broadcast("user_online", entry.to_online_user().to_wire(), exclude_connection_id=session.connection_id)
        active = self.registry.active_users(exclude_user_id=identity.user_id)
        await session.send("active_users", [user.to_wire() for user in active])

        await self._touch_user(identity)
        return entry

    async def join_room(self, session: Session, room_id: str) -> bool:
        self._require_open(session)
        if not session.is_identified and not self.allow_join_before_identify:
            raise InvalidState("identify before joining a room")
        joined = self.router.join(session, room_id)
        await session.send("room_joined", {"roomId": room_id})
        return joined

    async def leave_room(self, session: Session, room_id: str) -> bool:
        self._require_open(session)
        left = self.router.leave(session, room_id)
        await session.send("room_left", {"roomId": room_id})
        return left

    async def send_message(self, session: Session, payload: SendMessagePayload) -> Tuple[ChatMessage, List[Delivery]]:
        self._require_identified(session, "send a message")
        message, recipients = await self.router.send(session, payload)
        deliveries = []
        for recipient_id in sorted(recipients):
            deliveries.append(await self.dispatcher.notify_new_message(message, recipient_id, sender_connection_id=session.connection_id))
        return message, deliveries

    async def typing(self, session: Session, payload: TypingPayload, is_typing: bool) -> int:
        self._require_identified(session, "send typing updates")
        user_name = payload.user_name or session.identity.user_name or session.user_id
        return await self.router.typing(session, payload.room_id, user_name, is_typing)

    async def mark_read(self, session: Session, payload: MarkReadPayload) -> int:
        self._require_identified(session, "mark messages read")
        if payload.user_id and payload.user_id != session.user_id:
            raise InvalidPayload(f"userId {payload.user_id} does not match identified user {session.user_id}")
        count = await self.router.mark_read(payload.room_id, session.user_id, exclude_connection_id=session.connection_id)
        await session.send("messages_read", {"roomId": payload.room_id, "readerId": session.user_id, "count": count})
        return count

    async def disconnect(self, session: Session) -> bool:
        """Tear a session down. Returns True if its user went offline."""
        if session.is_closed:
            return False
        session.state = SessionState.CLOSED
        self.sessions.pop(session.connection_id, None)
        rooms = self.router.leave_all(session)

        went_offline = False
        if session.identity is not None:
            went_offline = await self._release_presence(session)
            await self._touch_user(session.identity)

        logger.info(f"Connection {session.connection_id} ({session.user_id}) closed, left {len(rooms)} rooms (live sessions: {len(self.sessions)})")
        return went_offline

    # Event dispatch

    async def handle(self, session: Session, frame: Any):
        """Run one client frame ``{"event": ..., "data": ...}``.

        Errors are isolated to this session and reported back as ``error``
        events; the connection stays open.
        """
        event = None
        try:
            event, data = self._parse_frame(frame)
            handler = self._handlers.get(event)
            if handler is None:
                raise InvalidPayload(f"unknown event {event}")
            await handler(session, data)
        except ValidationError as e:
            logger.info(f"Invalid {event} payload from {session.connection_id}: {e.error_count()} errors")
            await session.send("error", {"code": InvalidPayload.code, "message": _first_error(e), "event": event})
        except ChatError as e:
            log = logger.error if isinstance(e, (PersistenceFailure, PresenceFailure)) else logger.info
            log(f"{e.code} on {event} from {session.connection_id}: {e.message}")
            await session.send("error", {**e.to_wire(), "event": event})
        except Exception as e:
            logger.error(f"Unexpected error handling {event} from {session.connection_id}: {e}", exc_info=True)
            await session.send("error", {"code": "internal_error", "message": "Internal server error", "event": event})

    @staticmethod
    def _parse_frame(frame: Any) -> Tuple[str, Any]:
        if not isinstance(frame, dict):
            raise InvalidPayload("frame must be a JSON object")
        event = frame.get("event") or frame.get("type")
        if not isinstance(event, str) or not event:
            raise InvalidPayload("frame is missing an event name")
        return EVENT_ALIASES.get(event, event), frame.get("data")

    async def _on_identify(self, session: Session, data: Any):
        await self.identify(session, UserIdentity.model_validate(data or {}))

    async def _on_join_room(self, session: Session, data: Any):
        # Older clients send the bare room id
        if isinstance(data, str):
            data = {"roomId": data}
        await self.join_room(session, RoomPayload.model_validate(data or {}).room_id)

    async def _on_leave_room(self, session: Session, data: Any):
        if isinstance(data, str):
            data = {"roomId": data}
        await self.leave_room(session, RoomPayload.model_validate(data or {}).room_id)

    async def _on_send_message(self, session: Session, data: Any):
        await self.send_message(session, SendMessagePayload.model_validate(data or {}))

    async def _on_typing_start(self, session: Session, data: Any):
        await self.typing(session, TypingPayload.model_validate(data or {}), True)

    async def _on_typing_stop(self, session: Session, data: Any):
        await self.typing(session, TypingPayload.model_validate(data or {}), False)

    async def _on_mark_read(self, session: Session, data: Any):
        await self.mark_read(session, MarkReadPayload.model_validate(data or {}))

    # Helpers

    @staticmethod
    def _require_open(session: Session):
        if session.is_closed:
            raise InvalidState("connection is closed")

    def _require_identified(self, session: Session, action: str):
        self._require_open(session)
        if not session.is_identified:
            raise InvalidState(f"identify before you {action}")

    async def _release_presence(self, session: Session) -> bool:
        went_offline = self.registry.unregister(session.connection_id)
        if went_offline:
            await self._broadcast_offline(session.connection_id, session.identity)
        return went_offline

    async def _broadcast_offline(self, connection_id: str, identity: UserIdentity):
        await self.dispatcher.notify_broadcast("user_offline", {"userId": identity.user_id, "userName": identity.user_name}, exclude_connection_id=connection_id)

    async def _reconcile_failed_identify(self, session: Session, was_current: bool):
        """Bring the session back in line with the registry after register raised."""
        if session.identity is None:
            return
        entry = self.registry.get(session.connection_id)
        if entry is not None and entry.user_id == session.user_id and entry.generation == session.generation:
            logger.info(f"Connection {session.connection_id} stays identified as {session.user_id}")
            return
        if entry is not None:
            # Half-written entry for the new identity, never announced
            self.registry.unregister(session.connection_id)
        previous = session.identity
        session.identity = None
        session.generation = None
        session.state = SessionState.CONNECTED
        logger.warning(f"Connection {session.connection_id} lost presence for {previous.user_id}; identify again")
        if was_current and not self.registry.is_online(previous.user_id):
            await self._broadcast_offline(session.connection_id, previous)

    async def _touch_user(self, identity: UserIdentity):
        try:
            await run_in_threadpool(self.store.upsert_user, identity)
        except PersistenceFailure as e:
            logger.warning(f"Could not record user {identity.user_id}: {e}")


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "invalid payload"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", "invalid payload")
