"""
CaseCoach Realtime Module

Chunked audio/video streaming: per-question accumulation, single-flight
processing and session-scoped lifecycle events.
"""

from .broadcaster import EventBroadcaster
from .chunk_store import ChunkStorageError, ChunkStore, FFmpegError
from .combiner import ChunkCombineError, ChunkCombiner, CombinedMedia, CombineStrategy
from .protocol import ChunkEnvelope, MediaKind, RealtimeEvent, RealtimeEventType
from .registry import (
    ChunkSnapshot,
    ProcessingPermit,
    QuestionPhase,
    RealtimeQuestionState,
    RealtimeSessionRegistry,
)
from .service import ALREADY_IN_FLIGHT, ChunkAck, RealtimeStreamingService

__all__ = [
    # State
    "RealtimeSessionRegistry",
    "RealtimeQuestionState",
    "QuestionPhase",
    "ProcessingPermit",
    "ChunkSnapshot",
    # Media
    "ChunkStore",
    "ChunkStorageError",
    "FFmpegError",
    "ChunkCombiner",
    "ChunkCombineError",
    "CombinedMedia",
    "CombineStrategy",
    # Broadcasting
    "EventBroadcaster",
    # Protocol
    "ChunkEnvelope",
    "MediaKind",
    "RealtimeEvent",
    "RealtimeEventType",
    # Orchestration
    "RealtimeStreamingService",
    "ChunkAck",
    "ALREADY_IN_FLIGHT",
]
