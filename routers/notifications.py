from fastapi import APIRouter, Depends

from logging_config import get_logger
from realtime.server import ChatServer
from routers.dependencies import get_chat_server
from schemas.chat import BroadcastRequest, BroadcastResponse, OnlineUser

logger = get_logger(__name__)

notifications_router = APIRouter(tags=["notifications"])


@notifications_router.post("/notifications/broadcast", response_model=BroadcastResponse)
async def broadcast(body: BroadcastRequest, chat: ChatServer = Depends(get_chat_server)):
    # Called by the foods/requests service, e.g. food_notification or request_status_updated
    delivered = await chat.dispatcher.notify_broadcast(body.event, body.payload, exclude_user_id=body.exclude_user_id)
    logger.info(f"Broadcast {body.event} delivered to {delivered} sessions")
    return BroadcastResponse(event=body.event, delivered=delivered)


@notifications_router.get("/users/online", response_model=list[OnlineUser])
async def online_users(chat: ChatServer = Depends(get_chat_server)):
    return chat.registry.active_users()
