"""PostgreSQL database module."""

from .client import init_db, close_db, get_db_session, get_async_engine, get_db_pool, close_db_pool

__all__ = [
    "init_db",
    "close_db",
    "get_db_session",
    "get_async_engine",
    "get_db_pool",
    "close_db_pool",
]
