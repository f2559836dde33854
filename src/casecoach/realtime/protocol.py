"""
Realtime Streaming Protocol

Defines the inbound chunk envelope and the lifecycle events published
to session subscribers.
"""

import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from casecoach.core.models import CoachModel, ProcessedResult


class MediaKind(str, Enum):
    """Kind of media carried by a chunk."""

    AUDIO = "audio"
    VIDEO = "video"


class RealtimeEventType(str, Enum):
    """Event names published on a session channel."""

    # Chunk lifecycle
    CHUNK_RECEIVED = "chunk-received"
    PROCESSING_STARTED = "processing-started"
    QUESTION_PROCESSED = "question-processed"
    PROCESSING_ERROR = "processing-error"

    # Recording relay (Zoom webhook)
    RECORDING_STARTED = "recording-started"
    RECORDING_STOPPED = "recording-stopped"
    RECORDING_COMPLETED = "recording-completed"

    # Subscription control
    SUBSCRIPTION_CONFIRMED = "subscription-confirmed"
    PONG = "pong"
    ERROR = "error"


class ChunkEnvelope(BaseModel):
    """One inbound chunk of captured media for a question."""

    session_id: str = Field(min_length=1)
    question_index: int = Field(ge=0)
    chunk_index: int = Field(ge=0)
    audio_payload: bytes | None = Field(default=None, repr=False)
    video_payload: bytes | None = Field(default=None, repr=False)
    captured_at: float = Field(default_factory=time.time)
    is_final: bool = False
    transcript_hint: str | None = None

    @field_validator("audio_payload", "video_payload")
    @classmethod
    def empty_payload_is_absent(cls, v: bytes | None) -> bytes | None:
        return v or None

    @model_validator(mode="after")
    def require_payload(self) -> "ChunkEnvelope":
        if self.audio_payload is None and self.video_payload is None:
            raise ValueError("At least one of audio or video payload is required")
        return self


class RealtimeEvent(BaseModel):
    """Event envelope delivered to subscribers."""

    model_config = ConfigDict(use_enum_values=True)

    type: RealtimeEventType
    session_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    sequence: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


# ══════════════════════════════════════════════════════════════
# Event Payloads
# ══════════════════════════════════════════════════════════════


class ChunkReceivedPayload(CoachModel):
    """Payload for chunk-received."""

    session_id: str
    question_index: int
    chunk_index: int
    kinds: list[MediaKind]
    timestamp: float


class ProcessingStartedPayload(CoachModel):
    """Payload for processing-started."""

    session_id: str
    question_index: int


class QuestionProcessedPayload(CoachModel):
    """Payload for question-processed."""

    session_id: str
    question_index: int
    result: ProcessedResult


class ProcessingErrorPayload(CoachModel):
    """Payload for processing-error."""

    session_id: str
    question_index: int
    error: str


class RecordingPayload(CoachModel):
    """Payload for recording-* relay events."""

    session_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    download_url: str | None = None
