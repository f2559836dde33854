"""
Realtime Session Registry

Single source of truth for in-flight streaming state. Tracks the chunks
received for every (session, question) pair and guarantees at most one
processing run per pair at a time.

Per-question lifecycle:

    Absent -> Accumulating -> Processing -> (Completed | Errored) -> Absent

A chunk arriving while a take is processing is rejected, and one arriving
after eviction starts a new take with a fresh state.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Protocol
from uuid import UUID, uuid4

import structlog

from casecoach.core.models import ProcessedResult, ProcessingStatus
from .protocol import MediaKind

logger = structlog.get_logger()

QuestionKey = tuple[str, int]


class QuestionPhase(str, Enum):
    """Phase of a question's live state."""

    ACCUMULATING = "accumulating"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERRORED = "errored"


class ChunkNotifier(Protocol):
    """Receives chunk acceptance notifications from the registry."""

    async def chunk_received(
        self,
        session_id: str,
        question_index: int,
        chunk_index: int,
        kinds: list[MediaKind],
        timestamp: float,
    ) -> int: ...


@dataclass
class RealtimeQuestionState:
    """Live accumulation state for one take of one question."""

    session_id: str
    question_index: int
    take_id: UUID = field(default_factory=uuid4)

    # chunk_index -> staged file
    audio_chunk_paths: dict[int, Path] = field(default_factory=dict)
    video_chunk_paths: dict[int, Path] = field(default_factory=dict)

    # Handles displaced by a resent chunk index, still owed a discard
    replaced_paths: list[Path] = field(default_factory=list)

    is_processing: bool = False
    phase: QuestionPhase = QuestionPhase.ACCUMULATING
    last_result: ProcessedResult | None = None

    chunks_received: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def key(self) -> QuestionKey:
        return (self.session_id, self.question_index)

    def paths_for(self, kind: MediaKind) -> dict[int, Path]:
        if kind == MediaKind.AUDIO:
            return self.audio_chunk_paths
        return self.video_chunk_paths

    def all_paths(self) -> list[Path]:
        return [
            *self.audio_chunk_paths.values(),
            *self.video_chunk_paths.values(),
            *self.replaced_paths,
        ]


@dataclass(frozen=True)
class ChunkSnapshot:
    """Staged chunk handles ordered by chunk index."""

    audio: list[Path] = field(default_factory=list)
    video: list[Path] = field(default_factory=list)

    @property
    def all_paths(self) -> list[Path]:
        return [*self.audio, *self.video]

    @property
    def is_empty(self) -> bool:
        return not self.audio and not self.video


class ProcessingPermit:
    """
    Scoped single-flight permit for one processing run.

    Use as an async context manager. Leaving the block without calling
    ``complete`` still releases the permit, recording an error result
    built from the escaping exception.
    """

    def __init__(
        self,
        registry: "RealtimeSessionRegistry",
        state: RealtimeQuestionState,
    ) -> None:
        self._registry = registry
        self.state = state
        self._released = False

        # State handed back by the registry on release
        self.evicted: RealtimeQuestionState | None = None

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def question_index(self) -> int:
        return self.state.question_index

    @property
    def released(self) -> bool:
        return self._released

    async def complete(self, result: ProcessedResult) -> RealtimeQuestionState | None:
        """Store the result, clear the in-flight flag and evict the state."""
        if self._released:
            raise RuntimeError("Processing permit already released")
        self._released = True
        self.evicted = await self._registry.complete_processing(
            self.session_id,
            self.question_index,
            result,
        )
        return self.evicted

    async def __aenter__(self) -> "ProcessingPermit":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if not self._released:
            result = ProcessedResult(question_index=self.question_index)
            if exc is not None:
                result.mark_error(str(exc) or exc_type.__name__)
            else:
                result.mark_error("Processing ended without a result")
            await self.complete(result)
        return False


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RealtimeSessionRegistry:
    """
    Owns every live ``RealtimeQuestionState``.

    All mutation goes through ``get_or_create``, ``record_chunk``,
    ``try_begin_processing`` and ``complete_processing``. Each runs under a
    lock scoped to its (session, question) key, so a check-and-set is never
    interleaved with another task touching the same key.
    """

    def __init__(self, notifier: ChunkNotifier | None = None) -> None:
        self._states: dict[QuestionKey, RealtimeQuestionState] = {}
        self._key_locks: dict[QuestionKey, _KeyLock] = {}
        self._notifier = notifier

        # Lifetime counters
        self._takes_started = 0
        self._runs_started = 0
        self._runs_rejected = 0
        self._chunks_rejected = 0

        logger.info("RealtimeSessionRegistry initialized")

    @asynccontextmanager
    async def _locked(self, key: QuestionKey) -> AsyncIterator[None]:
        entry = self._key_locks.setdefault(key, _KeyLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._key_locks.pop(key, None)

    def _get_or_create_locked(self, key: QuestionKey) -> RealtimeQuestionState:
        state = self._states.get(key)
        if state is None:
            state = RealtimeQuestionState(session_id=key[0], question_index=key[1])
            self._states[key] = state
            self._takes_started += 1
            logger.debug(
                "Question take started",
                session_id=key[0],
                question_index=key[1],
                take_id=str(state.take_id),
            )
        return state

    # ──────────────────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────────────────

    async def get_or_create(
        self,
        session_id: str,
        question_index: int,
    ) -> RealtimeQuestionState:
        """Return the live state for a question, creating it if absent."""
        key = (session_id, question_index)
        async with self._locked(key):
            return self._get_or_create_locked(key)

    async def record_chunk(
        self,
        session_id: str,
        question_index: int,
        chunk_index: int,
        handles: Mapping[MediaKind, Path],
        captured_at: float | None = None,
    ) -> RealtimeQuestionState | None:
        """
        Record staged handles for a chunk and announce its receipt.

        Resending a chunk index overwrites that slot (last writer wins).
        The chunk-received notification is emitted while the key is held,
        so notifications follow acceptance order.

        Returns None without recording or notifying when the question's
        take is already processing: its chunk set was fixed when the run
        began. The handles stay owned by the caller.
        """
        key = (session_id, question_index)
        async with self._locked(key):
            state = self._get_or_create_locked(key)

            if state.is_processing:
                self._chunks_rejected += 1
                logger.warning(
                    "Chunk rejected, take already processing",
                    session_id=session_id,
                    question_index=question_index,
                    chunk_index=chunk_index,
                )
                return None

            for kind, handle in handles.items():
                slots = state.paths_for(kind)
                previous = slots.get(chunk_index)
                if previous is not None and previous != handle:
                    state.replaced_paths.append(previous)
                    logger.debug(
                        "Chunk slot overwritten",
                        session_id=session_id,
                        question_index=question_index,
                        chunk_index=chunk_index,
                        kind=kind.value,
                    )
                slots[chunk_index] = handle

            state.chunks_received += 1
            state.updated_at = datetime.utcnow()

            if self._notifier is not None:
                await self._notifier.chunk_received(
                    session_id,
                    question_index,
                    chunk_index,
                    list(handles.keys()),
                    captured_at if captured_at is not None else state.updated_at.timestamp(),
                )

            return state

    async def try_begin_processing(
        self,
        session_id: str,
        question_index: int,
    ) -> ProcessingPermit | None:
        """
        Atomically claim the processing slot for a question.

        Returns a permit, or None when a run is already in flight (or no
        chunks were ever recorded). None is not an error; the caller simply
        must not start another run.
        """
        key = (session_id, question_index)
        async with self._locked(key):
            state = self._states.get(key)
            if state is None:
                logger.warning(
                    "Processing requested for unknown question",
                    session_id=session_id,
                    question_index=question_index,
                )
                return None

            if state.is_processing:
                self._runs_rejected += 1
                logger.info(
                    "Processing already in flight",
                    session_id=session_id,
                    question_index=question_index,
                )
                return None

            state.is_processing = True
            state.phase = QuestionPhase.PROCESSING
            state.updated_at = datetime.utcnow()
            self._runs_started += 1

            return ProcessingPermit(self, state)

    async def complete_processing(
        self,
        session_id: str,
        question_index: int,
        result: ProcessedResult,
    ) -> RealtimeQuestionState | None:
        """
        Finish a run: keep the result, clear the flag and evict the state.

        Returns the evicted state so the caller can release its chunk files.
        """
        key = (session_id, question_index)
        async with self._locked(key):
            state = self._states.pop(key, None)
            if state is None:
                logger.warning(
                    "Completion for unknown question",
                    session_id=session_id,
                    question_index=question_index,
                )
                return None

            state.last_result = result
            state.is_processing = False
            state.phase = (
                QuestionPhase.ERRORED
                if result.status == ProcessingStatus.ERROR
                else QuestionPhase.COMPLETED
            )
            state.updated_at = datetime.utcnow()

            logger.debug(
                "Question take evicted",
                session_id=session_id,
                question_index=question_index,
                phase=state.phase.value,
            )
            return state

    async def snapshot_chunk_paths(
        self,
        session_id: str,
        question_index: int,
    ) -> ChunkSnapshot:
        """Return the staged handles so far, ordered by chunk index."""
        key = (session_id, question_index)
        async with self._locked(key):
            state = self._states.get(key)
            if state is None:
                return ChunkSnapshot()
            return ChunkSnapshot(
                audio=[state.audio_chunk_paths[i] for i in sorted(state.audio_chunk_paths)],
                video=[state.video_chunk_paths[i] for i in sorted(state.video_chunk_paths)],
            )

    # ──────────────────────────────────────────────────────────
    # Read-only views
    # ──────────────────────────────────────────────────────────

    def get(self, session_id: str, question_index: int) -> RealtimeQuestionState | None:
        """Peek at live state without creating it."""
        return self._states.get((session_id, question_index))

    def __contains__(self, key: QuestionKey) -> bool:
        return key in self._states

    def active_questions(self, session_id: str) -> dict[int, QuestionPhase]:
        """Phase of every live question in a session."""
        return {
            question_index: state.phase
            for (sid, question_index), state in self._states.items()
            if sid == session_id
        }

    def get_stats(self) -> dict[str, Any]:
        """Get registry statistics."""
        return {
            "live_questions": len(self._states),
            "processing": sum(1 for s in self._states.values() if s.is_processing),
            "takes_started": self._takes_started,
            "runs_started": self._runs_started,
            "runs_rejected": self._runs_rejected,
            "chunks_rejected": self._chunks_rejected,
        }
