"""
Redis Module

Redis-backed session and vector stores, sharing one connection.
"""

import redis.asyncio as redis
import structlog

from casecoach.config import settings
from casecoach.core.models import QuestionVectorRecord, Session
from .stores import SessionNotFoundError

logger = structlog.get_logger()


async def connect_redis(url: str | None = None) -> redis.Redis:
    """Open a Redis connection and verify it with a ping."""
    client = redis.from_url(
        url or str(settings.redis_url),
        encoding="utf-8",
        decode_responses=True,
    )

    # Test connection
    await client.ping()
    logger.info("Redis connection initialized")
    return client


class RedisSessionStore:
    """Sessions stored as JSON strings under ``{prefix}:session:{id}``."""

    def __init__(self, client: redis.Redis, prefix: str | None = None):
        self._client = client
        self._prefix = prefix or settings.redis_key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:session:{session_id}"

    async def create_session(self, session: Session) -> Session:
        await self._client.set(self._key(session.id), session.model_dump_json())
        logger.info("Session created", session_id=session.id, questions=len(session.questions))
        return session

    async def get_session(self, session_id: str) -> Session | None:
        raw = await self._client.get(self._key(session_id))
        if raw is None:
            return None
        return Session.model_validate_json(raw)

    async def update_session(self, session: Session) -> Session:
        # xx: only overwrite an existing key
        stored = await self._client.set(self._key(session.id), session.model_dump_json(), xx=True)
        if not stored:
            raise SessionNotFoundError(session.id)
        return session


class RedisVectorStore:
    """
    Vector records stored as JSON strings, indexed per session.

    ``{prefix}:vector:{id}`` holds the record and the sorted set
    ``{prefix}:session-vectors:{session_id}`` orders ids by question index.
    """

    def __init__(self, client: redis.Redis, prefix: str | None = None):
        self._client = client
        self._prefix = prefix or settings.redis_key_prefix

    def _key(self, record_id: str) -> str:
        return f"{self._prefix}:vector:{record_id}"

    def _index_key(self, session_id: str) -> str:
        return f"{self._prefix}:session-vectors:{session_id}"

    async def save_vector_record(self, record: QuestionVectorRecord) -> QuestionVectorRecord:
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.set(self._key(record.id), record.model_dump_json())
            pipe.zadd(self._index_key(record.session_id), {record.id: record.question_index})
            await pipe.execute()
        logger.debug(
            "Vector record saved",
            record_id=record.id,
            session_id=record.session_id,
            question_index=record.question_index,
        )
        return record

    async def get_vector_by_id(self, record_id: str) -> QuestionVectorRecord | None:
        raw = await self._client.get(self._key(record_id))
        if raw is None:
            return None
        return QuestionVectorRecord.model_validate_json(raw)

    async def get_vectors_by_session(self, session_id: str) -> list[QuestionVectorRecord]:
        ids = await self._client.zrange(self._index_key(session_id), 0, -1)
        if not ids:
            return []
        raws = await self._client.mget([self._key(i) for i in ids])
        return [QuestionVectorRecord.model_validate_json(raw) for raw in raws if raw is not None]
