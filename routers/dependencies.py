from fastapi import Request

from realtime.server import ChatServer


def get_chat_server(request: Request) -> ChatServer:
    return request.app.state.chat
