import asyncio
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from starlette.concurrency import run_in_threadpool

from constants import ROOM_ID_SEPARATOR
from logging_config import get_logger
from realtime.errors import InvalidPayload
from realtime.sessions import Session
from schemas.chat import ChatMessage, SendMessagePayload

logger = get_logger(__name__)


class RoomRouter:
    """Room membership and per-room fan-out.

    A room is created implicitly on first join and forgotten once its last
    session leaves. While a room has members the router keeps the user ids
    that have taken part, so the other side of a two-party room can be found
    without parsing the room id. Rooms nobody is in fall back to the
    participants the store recorded.
    """

    def __init__(self, store, separator: str = ROOM_ID_SEPARATOR):
        self.store = store
        self.separator = separator
        self._members: Dict[str, Dict[str, Session]] = {}
        self._participants: Dict[str, Set[str]] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._send_lock_users: Dict[str, int] = {}
        self._lock = threading.RLock()

    # Membership

    def join(self, session: Session, room_id: str) -> bool:
        """Add a session to a room. Returns False if it was already joined."""
        with self._lock:
            members = self._members.setdefault(room_id, {})
            if session.user_id:
                self._participants.setdefault(room_id, set()).add(session.user_id)
            if session.connection_id in members:
                return False
            members[session.connection_id] = session
            session.rooms.add(room_id)
        logger.info(f"Connection {session.connection_id} ({session.user_id}) joined room {room_id} (members: {len(members)})")
        return True

    def leave(self, session: Session, room_id: str) -> bool:
        with self._lock:
            session.rooms.discard(room_id)
            members = self._members.get(room_id)
            if not members or session.connection_id not in members:
                return False
            del members[session.connection_id]
            if not members:
                del self._members[room_id]
                self._participants.pop(room_id, None)
        logger.info(f"Connection {session.connection_id} left room {room_id}")
        return True

    def leave_all(self, session: Session) -> List[str]:
        left = [room_id for room_id in list(session.rooms) if self.leave(session, room_id)]
        session.rooms.clear()
        return left

    def record_participant(self, room_id: str, user_id: str):
        with self._lock:
            if room_id not in self._members:
                return
            self._participants.setdefault(room_id, set()).add(user_id)

    def members(self, room_id: str) -> List[Session]:
        with self._lock:
            return list(self._members.get(room_id, {}).values())

    def is_member(self, room_id: str, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._members.get(room_id, {})

    def participants(self, room_id: str) -> Set[str]:
        with self._lock:
            return set(self._participants.get(room_id, set()))

    def room_count(self) -> int:
        with self._lock:
            return len(self._members)

    def other_participants(self, room_id: str, sender_id: str, recipient_id: Optional[str] = None, stored: Iterable[str] = ()) -> Set[str]:
        """Who a message from sender_id in room_id is addressed to.

        An explicit recipient wins; then the participants recorded in memory;
        then the ``stored`` participants; then the ``<idA><sep><idB>`` room id
        convention.
        """
        if recipient_id:
            return {recipient_id} - {sender_id}
        others = self.participants(room_id) - {sender_id}
        if others:
            return others
        others = set(stored) - {sender_id}
        if others:
            return others
        tokens = room_id.split(self.separator)
        if len(tokens) == 2 and sender_id in tokens:
            return {token for token in tokens if token and token != sender_id}
        return set()

    # Fan-out

    @asynccontextmanager
    async def _serialized(self, room_id: str):
        """Hold the send lock of a room. The lock is dropped once nobody uses it."""
        with self._lock:
            lock = self._send_locks.get(room_id)
            if lock is None:
                lock = self._send_locks[room_id] = asyncio.Lock()
            self._send_lock_users[room_id] = self._send_lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._lock:
                self._send_lock_users[room_id] -= 1
                if not self._send_lock_users[room_id]:
                    del self._send_lock_users[room_id]
                    del self._send_locks[room_id]

    async def deliver(self, room_id: str, event: str, data: Any, exclude_connection_id: Optional[str] = None) -> int:
        """Send an event to every session in a room. Returns how many got it."""
        targets = [s for s in self.members(room_id) if s.connection_id != exclude_connection_id]
        if not targets:
            return 0
        results = await asyncio.gather(*(s.send(event, data) for s in targets), return_exceptions=True)
        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Delivered {event} to {delivered}/{len(targets)} sessions in room {room_id}")
        return delivered

    async def send(self, session: Session, payload: SendMessagePayload) -> Tuple[ChatMessage, Set[str]]:
        """Persist a message, then fan it out to the room.

        Sends into the same room are serialized so members see messages in
        the order they were accepted. Raises PersistenceFailure without
        fanning out when the store rejects the write.
        """
        identity = session.identity
        if payload.sender_id and payload.sender_id != identity.user_id:
            raise InvalidPayload(f"senderId {payload.sender_id} does not match identified user {identity.user_id}")

        sender_id = identity.user_id
        self.record_participant(payload.room_id, sender_id)
        stored_participants = set()
        if not payload.recipient_id and not self.participants(payload.room_id) - {sender_id}:
            stored_participants = await run_in_threadpool(self.store.room_participants, payload.room_id)
        recipients = self.other_participants(payload.room_id, sender_id, payload.recipient_id, stored_participants)

        message = ChatMessage(
            room_id=payload.room_id,
            sender_id=sender_id,
            sender_name=payload.sender_name or identity.user_name,
            sender_image=payload.sender_image or identity.user_image,
            message=payload.message,
        )

        async with self._serialized(payload.room_id):
            stored = await run_in_threadpool(self.store.append, message, recipients)
            delivered = await self.deliver(payload.room_id, "receive_message", stored.to_wire())

        logger.info(f"Message {stored.id} from {sender_id} in room {payload.room_id} delivered to {delivered} sessions")
        return stored, recipients

    async def typing(self, session: Session, room_id: str, user_name: Optional[str], is_typing: bool) -> int:
        data = {"roomId": room_id, "userName": user_name, "isTyping": is_typing}
        return await self.deliver(room_id, "user_typing", data, exclude_connection_id=session.connection_id)

    async def mark_read(self, room_id: str, reader_id: str, exclude_connection_id: Optional[str] = None) -> int:
        """Bulk mark a room read for reader_id and tell the room about it."""
        count = await run_in_threadpool(self.store.mark_read, room_id, reader_id)
        if count:
            data = {"roomId": room_id, "readerId": reader_id, "count": count}
            await self.deliver(room_id, "messages_read", data, exclude_connection_id=exclude_connection_id)
        logger.debug(f"Reader {reader_id} marked {count} messages read in room {room_id}")
        return count
