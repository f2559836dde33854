"""
CaseCoach Core Domain Models

Pydantic models representing the core domain entities.
Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ══════════════════════════════════════════════════════════════
# Enums
# ══════════════════════════════════════════════════════════════


class ProcessingStatus(str, Enum):
    """Status of a per-question processing run."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# ══════════════════════════════════════════════════════════════
# Base Models
# ══════════════════════════════════════════════════════════════


class CoachModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict:
        """Serialize for JSON transport using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ══════════════════════════════════════════════════════════════
# Analysis Models
# ══════════════════════════════════════════════════════════════


class BodyLanguageFeatures(CoachModel):
    """Six-dimension body-language feature record, each value in [0, 1]."""

    warmth: float = Field(ge=0.0, le=1.0)
    competence: float = Field(ge=0.0, le=1.0)
    affect: float = Field(ge=0.0, le=1.0)
    eye_contact_ratio: float = Field(ge=0.0, le=1.0)
    gesture_intensity: float = Field(ge=0.0, le=1.0)
    posture_stability: float = Field(ge=0.0, le=1.0)

    def as_vector(self) -> list[float]:
        """Return the features in their canonical order."""
        return [
            self.warmth,
            self.competence,
            self.affect,
            self.eye_contact_ratio,
            self.gesture_intensity,
            self.posture_stability,
        ]

    @property
    def average(self) -> float:
        return sum(self.as_vector()) / 6


class QualitativeFeedback(CoachModel):
    """Coaching feedback rendered by the frontend."""

    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    overall_score: int = Field(default=75, ge=0, le=100)
    narrative: str = ""
    suggestions: list[str] = Field(default_factory=list)


class ProcessedResult(CoachModel):
    """Outcome of one processing run for a single question."""

    question_index: int
    transcript: str | None = None
    body_language_features: BodyLanguageFeatures | None = None
    embedding_vector: list[float] | None = None
    qualitative_feedback: QualitativeFeedback | None = None
    status: ProcessingStatus = ProcessingStatus.PROCESSING
    error_message: str | None = None

    def mark_completed(self) -> None:
        self.status = ProcessingStatus.COMPLETED
        self.error_message = None

    def mark_error(self, message: str) -> None:
        self.status = ProcessingStatus.ERROR
        self.error_message = message

    @property
    def is_complete_record(self) -> bool:
        """Whether the result carries everything a vector record needs."""
        return (
            self.status == ProcessingStatus.COMPLETED
            and bool(self.transcript)
            and self.body_language_features is not None
            and self.embedding_vector is not None
        )


# ══════════════════════════════════════════════════════════════
# Session Models
# ══════════════════════════════════════════════════════════════


class Question(CoachModel):
    """A question slot within a practice session."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    index: int
    start_ts: float = Field(ge=0.0)
    end_ts: float = Field(ge=0.0)

    # Filled in once processed
    transcript: str | None = None
    body_language: BodyLanguageFeatures | None = None
    vector: list[float] | None = None


class Session(CoachModel):
    """A practice session with an ordered list of questions."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    media_path: str = "streaming://realtime"
    questions: list[Question] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def get_question(self, index: int) -> Question | None:
        for question in self.questions:
            if question.index == index:
                return question
        return None


class QuestionVectorRecord(CoachModel):
    """Stored feature vector for one processed question."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    question_index: int
    vector: list[float]
    body_language: BodyLanguageFeatures
    transcript: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
