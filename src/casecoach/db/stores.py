"""
Session and Vector Stores

Key-based persistence for practice sessions and per-question vector
records. No transactional guarantees: callers only save, get and update.
"""

import asyncio
from typing import Protocol

import structlog

from casecoach.core.models import QuestionVectorRecord, Session

logger = structlog.get_logger()


class SessionNotFoundError(Exception):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionStore(Protocol):
    async def create_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Session | None: ...

    async def update_session(self, session: Session) -> Session: ...


class VectorStore(Protocol):
    async def save_vector_record(self, record: QuestionVectorRecord) -> QuestionVectorRecord: ...

    async def get_vectors_by_session(self, session_id: str) -> list[QuestionVectorRecord]: ...


# ══════════════════════════════════════════════════════════════
# In-memory Stores
# ══════════════════════════════════════════════════════════════


class InMemorySessionStore:
    """Process-local session store; one instance per application."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)
        logger.info("Session created", session_id=session.id, questions=len(session.questions))
        return session

    async def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def update_session(self, session: Session) -> Session:
        async with self._lock:
            if session.id not in self._sessions:
                raise SessionNotFoundError(session.id)
            self._sessions[session.id] = session.model_copy(deep=True)
        return session


class InMemoryVectorStore:
    """Process-local vector record store."""

    def __init__(self) -> None:
        self._records: dict[str, QuestionVectorRecord] = {}

    async def save_vector_record(self, record: QuestionVectorRecord) -> QuestionVectorRecord:
        self._records[record.id] = record
        logger.debug(
            "Vector record saved",
            record_id=record.id,
            session_id=record.session_id,
            question_index=record.question_index,
        )
        return record

    async def get_vectors_by_session(self, session_id: str) -> list[QuestionVectorRecord]:
        return sorted(
            (r for r in self._records.values() if r.session_id == session_id),
            key=lambda r: (r.question_index, r.created_at),
        )

    async def get_vector_by_id(self, record_id: str) -> QuestionVectorRecord | None:
        return self._records.get(record_id)
