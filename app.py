import json
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from backend import RedisBackend, create_redis_client
from constants import CORS_ORIGINS, LOG_LEVEL, LOG_FILE
from logging_config import get_logger, setup_logging
from realtime.errors import InvalidPayload
from realtime.server import ChatServer
from routers.messages import messages_router
from routers.notifications import notifications_router
from schemas.chat import HealthResponse

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def serve_websocket(chat: ChatServer, websocket: WebSocket):
    """Run one realtime socket until the client goes away.

    Frames in both directions are JSON objects ``{"event": ..., "data": ...}``.
    """
    await websocket.accept()
    session = await chat.manager.connect(websocket)
    logger.info(f"WebSocket connection accepted: {session.connection_id}")

    try:
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Non-JSON frame from connection {session.connection_id}")
                await session.send("error", {"code": InvalidPayload.code, "message": "frame must be JSON", "event": None})
                continue
            await chat.manager.handle(session, frame)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {session.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {session.connection_id}: {e}", exc_info=True)
    finally:
        # Cleanup has to finish even when the task is being cancelled
        with anyio.CancelScope(shield=True):
            await chat.manager.disconnect(session)
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")


def create_app(store=None, allow_join_before_identify=None) -> FastAPI:
    """Build the application. ``store`` defaults to a RedisBackend created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = store if store is not None else RedisBackend(create_redis_client())
        app.state.chat = ChatServer(backend, allow_join_before_identify=allow_join_before_identify)
        logger.info("Chat server started")
        try:
            yield
        finally:
            await app.state.chat.shutdown()
            logger.info("Chat server stopped")

    app = FastAPI(title="FoodCircle Chat", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(messages_router)
    app.include_router(notifications_router)

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Food-Circle with Live Chat is Cooking!"

    @app.get("/health", response_model=HealthResponse)
    async def health():
        chat: ChatServer = app.state.chat
        store_ok = await run_in_threadpool(chat.store.ping)
        return HealthResponse(
            status="ok" if store_ok else "degraded",
            store="connected" if store_ok else "unavailable",
            online_users=len(chat.registry),
            connections=len(chat.manager.sessions),
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await serve_websocket(websocket.app.state.chat, websocket)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
