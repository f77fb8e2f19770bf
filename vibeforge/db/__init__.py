"""Database package: terminal job archive (Postgres) and the Redis pool."""

from vibeforge.db.base import Base, archive_enabled, archive_session, close_db, init_db
from vibeforge.db.redis import close_redis, get_redis, init_redis

__all__ = [
    "Base",
    "archive_enabled",
    "archive_session",
    "close_db",
    "close_redis",
    "get_redis",
    "init_db",
    "init_redis",
]
