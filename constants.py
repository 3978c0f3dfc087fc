import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = _env_bool("RELOAD", False)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# Realtime chat
ROOM_ID_SEPARATOR = os.getenv("ROOM_ID_SEPARATOR", "_")
MAX_ROOM_ID_LENGTH = int(os.getenv("MAX_ROOM_ID_LENGTH", 128))
NOTIFICATION_PREVIEW_LENGTH = int(os.getenv("NOTIFICATION_PREVIEW_LENGTH", 50))
ALLOW_JOIN_BEFORE_IDENTIFY = _env_bool("ALLOW_JOIN_BEFORE_IDENTIFY", False)

# Message history paging
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", 50))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", 200))
