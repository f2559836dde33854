"""
CaseCoach Question Pipeline

One-shot analysis of a completed question: speech-to-text, body-language
features, question vector and coaching feedback.
"""

from .processor import QuestionProcessor, StageResult
from .stages import (
    BodyLanguageStage,
    EmbeddingStage,
    FeedbackError,
    FeedbackStage,
    SeededBodyLanguageStage,
    TranscribeStage,
    TranscriptionError,
    fallback_feedback,
    hash_embedding,
)

__all__ = [
    "QuestionProcessor",
    "StageResult",
    # Pipeline stages
    "BodyLanguageStage",
    "SeededBodyLanguageStage",
    "TranscribeStage",
    "EmbeddingStage",
    "FeedbackStage",
    # Errors
    "TranscriptionError",
    "FeedbackError",
    # Fallbacks
    "fallback_feedback",
    "hash_embedding",
]
