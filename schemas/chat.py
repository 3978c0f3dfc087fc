from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from constants import MAX_ROOM_ID_LENGTH


class CamelModel(BaseModel):
    """Base model speaking camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def validate_room_id(value: str) -> str:
    value = value.strip() if isinstance(value, str) else value
    if not value:
        raise ValueError("roomId must not be empty")
    if len(value) > MAX_ROOM_ID_LENGTH:
        raise ValueError(f"roomId must be at most {MAX_ROOM_ID_LENGTH} characters")
    if any(ch.isspace() for ch in value):
        raise ValueError("roomId must not contain whitespace")
    return value


class UserIdentity(CamelModel):
    user_id: str = Field(min_length=1)
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_image: Optional[str] = None


class ChatMessage(CamelModel):
    id: Optional[str] = None
    room_id: str
    sender_id: str
    sender_name: Optional[str] = None
    sender_image: Optional[str] = None
    message: str
    created_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None


class ChatRoomSummary(CamelModel):
    room_id: str
    other_participant_id: Optional[str] = None
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0
    last_activity: Optional[datetime] = None


class OnlineUser(UserIdentity):
    connection_id: str
    joined_at: datetime


# Realtime event payloads (client -> server)

class RoomPayload(CamelModel):
    room_id: str

    @field_validator("room_id")
    @classmethod
    def _check_room_id(cls, value: str) -> str:
        return validate_room_id(value)


class SendMessagePayload(RoomPayload):
    message: str = Field(min_length=1)
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_image: Optional[str] = None
    recipient_id: Optional[str] = None


class TypingPayload(RoomPayload):
    user_name: Optional[str] = None


class MarkReadPayload(RoomPayload):
    user_id: Optional[str] = None


# REST bodies and responses

class MarkReadRequest(CamelModel):
    user_id: str = Field(min_length=1)


class MarkReadResponse(CamelModel):
    room_id: str
    modified_count: int


class UnreadCountResponse(CamelModel):
    user_id: str
    unread_count: int


class BroadcastRequest(CamelModel):
    event: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    payload: dict[str, Any] = Field(default_factory=dict)
    exclude_user_id: Optional[str] = None


class BroadcastResponse(CamelModel):
    event: str
    delivered: int


class HealthResponse(CamelModel):
    status: str
    store: str
    online_users: int
    connections: int
