"""
Pytest Configuration and Fixtures

Shared fixtures for unit tests.
"""

from pathlib import Path
from uuid import uuid4
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest
import soundfile as sf

from casecoach.config import Settings
from casecoach.db.stores import InMemorySessionStore, InMemoryVectorStore
from casecoach.pipeline import EmbeddingStage, FeedbackStage, QuestionProcessor
from casecoach.realtime import (
    ChunkCombiner,
    ChunkStore,
    EventBroadcaster,
    RealtimeSessionRegistry,
    RealtimeStreamingService,
)


# ══════════════════════════════════════════════════════════════
# Settings Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Test settings with in-memory storage and no hosted models."""
    return Settings(
        app_env="development",
        debug=True,
        storage_backend="memory",
        llm_provider="none",
        chunk_temp_dir=tmp_path / "chunks",
        redis_url="redis://localhost:6379/15",
    )


@pytest.fixture
def chunk_dir(tmp_path) -> Path:
    """Temporary directory for staged chunks."""
    path = tmp_path / "chunks"
    path.mkdir()
    return path


# ══════════════════════════════════════════════════════════════
# Audio Fixtures
# ══════════════════════════════════════════════════════════════


def _tone(frequency: float, duration: float = 0.5, sample_rate: int = 16000) -> np.ndarray:
    t = np.linspace(0, duration, int(sample_rate * duration), endpoint=False, dtype=np.float32)
    return (0.5 * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


@pytest.fixture
def tone():
    """Factory generating a mono sine tone."""
    return _tone


@pytest.fixture
def write_wav(tmp_path):
    """Factory writing a PCM WAV file and returning its path."""

    def _write(name: str, audio: np.ndarray, sample_rate: int = 16000) -> Path:
        path = tmp_path / name
        sf.write(str(path), audio, sample_rate, subtype="PCM_16")
        return path

    return _write


@pytest.fixture
def fake_ffmpeg():
    """
    Replace ffmpeg with a stub that writes placeholder bytes to the output.

    Yields the AsyncMock so tests can inspect the argument lists.
    """

    async def _run(binary: str, *args: str) -> None:
        Path(args[-1]).write_bytes(b"converted")

    mock = AsyncMock(side_effect=_run)
    with patch("casecoach.realtime.chunk_store.run_ffmpeg", mock), \
            patch("casecoach.realtime.combiner.run_ffmpeg", mock):
        yield mock


# ══════════════════════════════════════════════════════════════
# Pipeline Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def mock_transcriber():
    """Transcription stage double returning a fixed transcript."""
    transcriber = MagicMock()
    transcriber.name = "transcribe"
    transcriber.initialize = AsyncMock()
    transcriber.transcribe = AsyncMock(return_value="transcribed answer")
    return transcriber


@pytest.fixture
def processor(mock_transcriber) -> QuestionProcessor:
    """Processor with no hosted models: hash embeddings and heuristic feedback."""
    return QuestionProcessor(
        transcriber=mock_transcriber,
        embedder=EmbeddingStage(dimensions=16, llm_provider="none"),
        feedback=FeedbackStage(llm_provider="none"),
    )


# ══════════════════════════════════════════════════════════════
# Realtime Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def registry(broadcaster) -> RealtimeSessionRegistry:
    return RealtimeSessionRegistry(notifier=broadcaster)


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def service(
    chunk_dir,
    fake_ffmpeg,
    processor,
    broadcaster,
    registry,
    session_store,
    vector_store,
) -> RealtimeStreamingService:
    """Fully wired streaming service staging into a temp directory."""
    return RealtimeStreamingService(
        registry=registry,
        store=ChunkStore(temp_dir=chunk_dir),
        combiner=ChunkCombiner(temp_dir=chunk_dir, strategy="concat"),
        processor=processor,
        broadcaster=broadcaster,
        session_store=session_store,
        vector_store=vector_store,
        timeout=5.0,
    )


@pytest.fixture
def record_events(broadcaster):
    """Factory subscribing a recorder to a session; returns the event list."""
    events = []

    async def record(event):
        events.append(event)

    async def _subscribe(session_id: str = "s1"):
        await broadcaster.subscribe(uuid4(), session_id, record)
        return events

    return _subscribe
