"""
Unit tests for in-memory stores and the store factory.
"""

from unittest.mock import AsyncMock, patch

import pytest

from casecoach.config import Settings
from casecoach.core.models import BodyLanguageFeatures, Question, QuestionVectorRecord, Session
from casecoach.db import create_stores
from casecoach.db.stores import InMemorySessionStore, InMemoryVectorStore, SessionNotFoundError


FEATURES = BodyLanguageFeatures(
    warmth=0.5, competence=0.5, affect=0.5,
    eye_contact_ratio=0.5, gesture_intensity=0.5, posture_stability=0.5,
)


def record(question_index: int, session_id: str = "s1") -> QuestionVectorRecord:
    return QuestionVectorRecord(
        session_id=session_id,
        question_index=question_index,
        vector=[0.1] * 4,
        body_language=FEATURES,
        transcript=f"answer {question_index}",
    )


class TestInMemorySessionStore:
    """Test session persistence."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, session_store):
        session = Session(id="s1")
        await session_store.create_session(session)

        assert await session_store.get_session("s1") == session
        assert await session_store.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, session_store):
        """Test callers must update explicitly to persist changes."""
        session = Session(id="s1")
        session.questions = [Question(session_id="s1", index=0, start_ts=0, end_ts=10)]
        await session_store.create_session(session)

        fetched = await session_store.get_session("s1")
        fetched.questions[0].transcript = "changed"

        assert (await session_store.get_session("s1")).questions[0].transcript is None

        await session_store.update_session(fetched)
        assert (await session_store.get_session("s1")).questions[0].transcript == "changed"

    @pytest.mark.asyncio
    async def test_update_unknown_raises(self, session_store):
        with pytest.raises(SessionNotFoundError):
            await session_store.update_session(Session(id="nope"))


class TestInMemoryVectorStore:
    """Test vector record persistence."""

    @pytest.mark.asyncio
    async def test_save_and_lookup(self, vector_store):
        saved = await vector_store.save_vector_record(record(0))

        assert await vector_store.get_vector_by_id(saved.id) == saved
        assert await vector_store.get_vector_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_by_session_ordered(self, vector_store):
        await vector_store.save_vector_record(record(2))
        await vector_store.save_vector_record(record(0))
        await vector_store.save_vector_record(record(1, session_id="other"))

        records = await vector_store.get_vectors_by_session("s1")

        assert [r.question_index for r in records] == [0, 2]


class TestCreateStores:
    """Test backend selection."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, test_settings):
        session_store, vector_store, client = await create_stores(test_settings)

        assert isinstance(session_store, InMemorySessionStore)
        assert isinstance(vector_store, InMemoryVectorStore)
        assert client is None

    @pytest.mark.asyncio
    async def test_redis_backend(self):
        from casecoach.db.redis import RedisSessionStore, RedisVectorStore

        config = Settings(storage_backend="redis", redis_url="redis://cache:6379/2", redis_key_prefix="cc")
        mock_client = AsyncMock()

        with patch("casecoach.db.redis.connect_redis", AsyncMock(return_value=mock_client)) as connect:
            session_store, vector_store, client = await create_stores(config)

        connect.assert_awaited_once_with("redis://cache:6379/2")
        assert isinstance(session_store, RedisSessionStore)
        assert isinstance(vector_store, RedisVectorStore)
        assert client is mock_client
