"""Core module for ChatMimic Vector Store."""

from core.database import get_session, init_db, close_db
from core.security import create_access_token, decode_token

__all__ = [
    "get_session",
    "init_db",
    "close_db",
    "create_access_token",
    "decode_token",
]
