from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool

from constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from logging_config import get_logger
from realtime.errors import PersistenceFailure
from realtime.server import ChatServer
from routers.dependencies import get_chat_server
from schemas.chat import ChatMessage, ChatRoomSummary, MarkReadRequest, MarkReadResponse, UnreadCountResponse, validate_room_id

logger = get_logger(__name__)

messages_router = APIRouter(tags=["messages"])


def _room_id_or_422(room_id: str) -> str:
    try:
        return validate_room_id(room_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@messages_router.get("/messages/unread/{user_id}", response_model=UnreadCountResponse)
async def get_unread_count(user_id: str, chat: ChatServer = Depends(get_chat_server)):
    try:
        count = await run_in_threadpool(chat.store.count_unread, user_id)
    except PersistenceFailure as e:
        logger.error(f"Error counting unread messages for {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to count unread messages")
    return UnreadCountResponse(user_id=user_id, unread_count=count)


@messages_router.get("/messages/{room_id}", response_model=list[ChatMessage])
async def get_messages(
    room_id: str,
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    skip: int = Query(0, ge=0),
    chat: ChatServer = Depends(get_chat_server),
):
    """Messages of a room, oldest first."""
    room_id = _room_id_or_422(room_id)
    logger.info(f"Message history request for room {room_id}, limit={limit}, skip={skip}")
    try:
        return await run_in_threadpool(chat.store.list_by_room, room_id, limit, skip)
    except PersistenceFailure as e:
        logger.error(f"Error fetching messages for room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to fetch messages")


@messages_router.patch("/messages/{room_id}/read", response_model=MarkReadResponse)
async def mark_messages_read(room_id: str, body: MarkReadRequest, chat: ChatServer = Depends(get_chat_server)):
    """Same bulk mark-read as the realtime ``mark_read`` event."""
    room_id = _room_id_or_422(room_id)
    try:
        count = await chat.router.mark_read(room_id, body.user_id)
    except PersistenceFailure as e:
        logger.error(f"Error marking room {room_id} read for {body.user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to mark messages read")
    logger.info(f"User {body.user_id} marked {count} messages read in room {room_id}")
    return MarkReadResponse(room_id=room_id, modified_count=count)


@messages_router.get("/chat-rooms/{user_id}", response_model=list[ChatRoomSummary])
async def get_chat_rooms(user_id: str, chat: ChatServer = Depends(get_chat_server)):
    try:
        return await run_in_threadpool(chat.store.chat_rooms, user_id)
    except PersistenceFailure as e:
        logger.error(f"Error fetching chat rooms for {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to fetch chat rooms")
