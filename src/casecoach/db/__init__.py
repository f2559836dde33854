"""
Storage Module

Session and vector-record persistence. The backend is chosen by
``settings.storage_backend``.
"""

from typing import Any

import structlog

from casecoach.config import Settings, settings as default_settings
from .stores import (
    InMemorySessionStore,
    InMemoryVectorStore,
    SessionNotFoundError,
    SessionStore,
    VectorStore,
)

logger = structlog.get_logger()


async def create_stores(
    config: Settings | None = None,
) -> tuple[SessionStore, VectorStore, Any]:
    """
    Build the session and vector stores for the configured backend.

    Returns (session_store, vector_store, redis_client); the client is
    None for the memory backend and must be closed by the caller otherwise.
    """
    config = config or default_settings

    if config.storage_backend == "redis":
        from .redis import RedisSessionStore, RedisVectorStore, connect_redis

        client = await connect_redis(str(config.redis_url))
        return (
            RedisSessionStore(client, config.redis_key_prefix),
            RedisVectorStore(client, config.redis_key_prefix),
            client,
        )

    logger.info("Using in-memory stores")
    return InMemorySessionStore(), InMemoryVectorStore(), None


__all__ = [
    "create_stores",
    "InMemorySessionStore",
    "InMemoryVectorStore",
    "SessionNotFoundError",
    "SessionStore",
    "VectorStore",
]
