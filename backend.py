import uuid
from datetime import datetime, timezone
from functools import wraps
from typing import Iterable, List, Optional, Set

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB
from redis_keys import (
    REDIS_MESSAGE_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_ROOM_SEQ_KEY,
    REDIS_ROOM_LAST_TS_KEY,
    REDIS_ROOM_UNREAD_KEY,
    REDIS_ROOM_PARTICIPANTS_KEY,
    REDIS_USER_ROOMS_KEY,
    REDIS_USER_KEY,
)
from logging_config import get_logger
from realtime.errors import PersistenceFailure
from schemas.chat import ChatMessage, ChatRoomSummary, UserIdentity

logger = get_logger(__name__)


def create_redis_client(host: str = REDIS_HOST, port: int = REDIS_PORT, password: Optional[str] = REDIS_PASSWORD, db: int = REDIS_DB) -> redis.Redis:
    try:
        client = redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {host}:{port}/{db}")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {host}:{port}: {e}", exc_info=True)
        raise


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def store_operation(func):
    """Translate redis errors into PersistenceFailure at the store boundary."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except redis.RedisError as e:
            logger.error(f"Redis error in {func.__name__}: {e}", exc_info=True)
            raise PersistenceFailure(f"{func.__name__} failed: {e}") from e

    return wrapper


class RedisBackend:
    """Message log and user records kept in Redis.

    Messages of a room live in a sorted set scored by a per-room sequence
    number, so listing is in insertion order even when two messages share
    the same createdAt.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client
        logger.info("Initializing RedisBackend")

    @staticmethod
    def _message_to_hash(message: ChatMessage, seq: int) -> dict:
        return {
            "id": message.id,
            "room_id": message.room_id,
            "sender_id": message.sender_id,
            "sender_name": message.sender_name or "",
            "sender_image": message.sender_image or "",
            "message": message.message,
            "created_at": message.created_at.isoformat(),
            "seq": str(seq),
            "read": "1" if message.read else "0",
            "read_at": message.read_at.isoformat() if message.read_at else "",
        }

    @staticmethod
    def _hash_to_message(data: dict) -> Optional[ChatMessage]:
        if not data or "id" not in data:
            return None
        return ChatMessage(
            id=data["id"],
            room_id=data["room_id"],
            sender_id=data["sender_id"],
            sender_name=data.get("sender_name") or None,
            sender_image=data.get("sender_image") or None,
            message=data.get("message", ""),
            created_at=_parse_ts(data.get("created_at")),
            read=data.get("read") == "1",
            read_at=_parse_ts(data.get("read_at")),
        )

    def _load_messages(self, message_ids: List[str]) -> List[ChatMessage]:
        if not message_ids:
            return []
        pipe = self.redis_client.pipeline(transaction=False)
        for message_id in message_ids:
            pipe.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
        messages = []
        for data in pipe.execute():
            message = self._hash_to_message(data)
            if message is not None:
                messages.append(message)
        return messages

    def _unread_for(self, room_id: str, reader_id: str) -> List[str]:
        """Unread message ids in a room that were not written by reader_id."""
        unread_ids = list(self.redis_client.smembers(REDIS_ROOM_UNREAD_KEY.format(slug=room_id)))
        if not unread_ids:
            return []
        pipe = self.redis_client.pipeline(transaction=False)
        for message_id in unread_ids:
            pipe.hget(REDIS_MESSAGE_KEY.format(message_id=message_id), "sender_id")
        senders = pipe.execute()
        return [message_id for message_id, sender_id in zip(unread_ids, senders) if sender_id is not None and sender_id != reader_id]

    @store_operation
    def append(self, message: ChatMessage, participant_ids: Iterable[str] = ()) -> ChatMessage:
        """Persist a new message and return it with id and createdAt assigned."""
        room_id = message.room_id
        seq = self.redis_client.incr(REDIS_ROOM_SEQ_KEY.format(slug=room_id))

        # createdAt never goes backwards within a room, even if the clock does
        created_at = _now()
        last_ts = _parse_ts(self.redis_client.get(REDIS_ROOM_LAST_TS_KEY.format(slug=room_id)))
        if last_ts and last_ts > created_at:
            created_at = last_ts

        stored = message.model_copy(update={
            "id": uuid.uuid4().hex,
            "created_at": created_at,
            "read": False,
            "read_at": None,
        })
        participants = {message.sender_id, *[p for p in participant_ids if p]}

        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(REDIS_MESSAGE_KEY.format(message_id=stored.id), mapping=self._message_to_hash(stored, seq))
        pipe.zadd(REDIS_ROOM_MESSAGES_KEY.format(slug=room_id), {stored.id: seq})
        pipe.set(REDIS_ROOM_LAST_TS_KEY.format(slug=room_id), created_at.isoformat())
        pipe.sadd(REDIS_ROOM_UNREAD_KEY.format(slug=room_id), stored.id)
        pipe.sadd(REDIS_ROOM_PARTICIPANTS_KEY.format(slug=room_id), *participants)
        for participant_id in participants:
            pipe.sadd(REDIS_USER_ROOMS_KEY.format(user_id=participant_id), room_id)
        pipe.execute()

        logger.debug(f"Appended message {stored.id} to room {room_id} (seq={seq})")
        return stored

    @store_operation
    def list_by_room(self, room_id: str, limit: Optional[int] = None, offset: int = 0, descending: bool = False) -> List[ChatMessage]:
        key = REDIS_ROOM_MESSAGES_KEY.format(slug=room_id)
        end = -1 if limit is None else offset + limit - 1
        if descending:
            message_ids = self.redis_client.zrevrange(key, offset, end)
        else:
            message_ids = self.redis_client.zrange(key, offset, end)
        messages = self._load_messages(message_ids)
        logger.debug(f"Listed {len(messages)} messages from room {room_id} (limit={limit}, offset={offset})")
        return messages

    @store_operation
    def room_participants(self, room_id: str) -> Set[str]:
        return set(self.redis_client.smembers(REDIS_ROOM_PARTICIPANTS_KEY.format(slug=room_id)))

    @store_operation
    def mark_read(self, room_id: str, exclude_sender_id: str) -> int:
        """Mark every unread message in the room not sent by exclude_sender_id as read."""
        candidates = self._unread_for(room_id, exclude_sender_id)
        if not candidates:
            return 0

        unread_key = REDIS_ROOM_UNREAD_KEY.format(slug=room_id)
        pipe = self.redis_client.pipeline(transaction=True)
        for message_id in candidates:
            pipe.srem(unread_key, message_id)
        # Only ids this call removed from the unread set count as modified
        removed = [message_id for message_id, result in zip(candidates, pipe.execute()) if result]

        if removed:
            read_at = _now().isoformat()
            pipe = self.redis_client.pipeline(transaction=True)
            for message_id in removed:
                pipe.hset(REDIS_MESSAGE_KEY.format(message_id=message_id), mapping={"read": "1", "read_at": read_at})
            pipe.execute()

        logger.debug(f"Marked {len(removed)} messages read in room {room_id} for reader {exclude_sender_id}")
        return len(removed)

    @store_operation
    def count_unread(self, user_id: str) -> int:
        rooms = self.redis_client.smembers(REDIS_USER_ROOMS_KEY.format(user_id=user_id))
        return sum(len(self._unread_for(room_id, user_id)) for room_id in rooms)

    @store_operation
    def chat_rooms(self, user_id: str) -> List[ChatRoomSummary]:
        """Summaries of every room the user takes part in, newest activity first."""
        summaries = []
        for room_id in self.redis_client.smembers(REDIS_USER_ROOMS_KEY.format(user_id=user_id)):
            last_ids = self.redis_client.zrevrange(REDIS_ROOM_MESSAGES_KEY.format(slug=room_id), 0, 0)
            last_messages = self._load_messages(last_ids)
            last_message = last_messages[0] if last_messages else None
            others = sorted(self.redis_client.smembers(REDIS_ROOM_PARTICIPANTS_KEY.format(slug=room_id)) - {user_id})
            summaries.append(ChatRoomSummary(
                room_id=room_id,
                other_participant_id=others[0] if others else None,
                last_message=last_message,
                unread_count=len(self._unread_for(room_id, user_id)),
                last_activity=last_message.created_at if last_message else None,
            ))

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        summaries.sort(key=lambda s: s.last_activity or epoch, reverse=True)
        logger.debug(f"Built {len(summaries)} chat room summaries for user {user_id}")
        return summaries

    @store_operation
    def upsert_user(self, identity: UserIdentity) -> dict:
        key = REDIS_USER_KEY.format(user_id=identity.user_id)
        # Skip None values so a partial identify does not erase stored fields
        user_data = {k: v for k, v in identity.model_dump().items() if v is not None}
        user_data["last_seen"] = _now().isoformat()
        self.redis_client.hset(key, mapping=user_data)
        logger.debug(f"Upserted user {identity.user_id}")
        return user_data

    @store_operation
    def get_user(self, user_id: str) -> Optional[dict]:
        data = self.redis_client.hgetall(REDIS_USER_KEY.format(user_id=user_id))
        return data or None

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
