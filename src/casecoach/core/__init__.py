"""Core domain models."""

from .models import (
    BodyLanguageFeatures,
    ProcessedResult,
    ProcessingStatus,
    QualitativeFeedback,
    Question,
    QuestionVectorRecord,
    Session,
)

__all__ = [
    "BodyLanguageFeatures",
    "ProcessedResult",
    "ProcessingStatus",
    "QualitativeFeedback",
    "Question",
    "QuestionVectorRecord",
    "Session",
]
