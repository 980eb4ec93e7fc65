"""Database package: models and async session management."""
from .connection import close_db, get_db, get_engine, get_session_factory, init_db, session_scope
from .models import Base

__all__ = [
    "Base",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "session_scope",
]
