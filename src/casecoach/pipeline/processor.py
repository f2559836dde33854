"""
Question Processor

Runs the one-shot pipeline for a completed question:
transcript -> body language -> vector -> feedback.
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

from casecoach.core.models import ProcessedResult
from .stages import (
    BodyLanguageStage,
    EmbeddingStage,
    FeedbackStage,
    SeededBodyLanguageStage,
    TranscribeStage,
    fallback_feedback,
)

logger = structlog.get_logger()


@dataclass
class StageResult:
    """Result from a pipeline stage."""

    success: bool
    data: Any
    duration_ms: float
    error: str | None = None


class QuestionProcessor:
    """
    Turns combined media (or a supplied transcript) into a ProcessedResult.

    Transcription and feedback failures are downgraded per stage. Body
    language and vector construction must succeed; if they cannot, the
    result is finalized as ``error`` while keeping whatever was already
    resolved.

    Usage:
        processor = QuestionProcessor()
        result = await processor.process(3, audio=Path("q3.wav"))
    """

    def __init__(
        self,
        transcriber: TranscribeStage | None = None,
        body_language: BodyLanguageStage | None = None,
        embedder: EmbeddingStage | None = None,
        feedback: FeedbackStage | None = None,
        generate_feedback: bool = True,
    ):
        self.transcriber = transcriber or TranscribeStage()
        self.body_language = body_language or SeededBodyLanguageStage()
        self.embedder = embedder or EmbeddingStage()
        self.feedback = feedback or FeedbackStage()
        self.generate_feedback = generate_feedback
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize all stages."""
        if self._initialized:
            return

        await asyncio.gather(
            self.transcriber.initialize(),
            self.body_language.initialize(),
            self.embedder.initialize(),
            self.feedback.initialize(),
        )
        self._initialized = True

    async def process(
        self,
        question_index: int,
        audio: Path | None = None,
        video: Path | None = None,
        transcript_hint: str | None = None,
        session_id: str | None = None,
        result: ProcessedResult | None = None,
    ) -> ProcessedResult:
        """
        Process one question.

        Args:
            question_index: Index of the question being answered
            audio: Combined audio input, if any
            video: Representative video input, if any
            transcript_hint: Client-side transcript; used verbatim (trimmed)
            session_id: For log context only
            result: Record to fill in place. A caller that abandons the run
                (e.g. on timeout) keeps every field resolved so far.

        Returns:
            ProcessedResult with status ``completed`` or ``error``
        """
        log = logger.bind(session_id=session_id, question_index=question_index)
        start = time.perf_counter()
        if result is None:
            result = ProcessedResult(question_index=question_index)

        try:
            # ──────────────────────────────────────────────────────
            # Transcript
            # ──────────────────────────────────────────────────────
            hint = (transcript_hint or "").strip()
            if hint:
                result.transcript = hint
                log.debug("Using supplied transcript", chars=len(hint))
            elif audio is not None:
                stage = await self._run_stage(
                    self.transcriber.name,
                    self.transcriber.transcribe,
                    audio,
                )
                if stage.success and stage.data:
                    result.transcript = stage.data
                else:
                    log.warning("Continuing without transcript", error=stage.error)

            # ──────────────────────────────────────────────────────
            # Body language (always produced)
            # ──────────────────────────────────────────────────────
            seed = video or audio or f"question-{question_index}"
            result.body_language_features = await self.body_language.analyze(str(seed))

            # ──────────────────────────────────────────────────────
            # Vector
            # ──────────────────────────────────────────────────────
            text = result.transcript or f"[Question {question_index} response]"
            result.embedding_vector = await self.embedder.build_vector(
                text,
                result.body_language_features,
            )

            # ──────────────────────────────────────────────────────
            # Feedback
            # ──────────────────────────────────────────────────────
            if self.generate_feedback and result.transcript:
                stage = await self._run_stage(
                    self.feedback.name,
                    self.feedback.generate,
                    result.transcript,
                    result.body_language_features,
                    question_index,
                )
                if stage.success:
                    result.qualitative_feedback = stage.data
                else:
                    log.warning("Using fallback feedback", error=stage.error)
                    result.qualitative_feedback = fallback_feedback(
                        result.transcript,
                        result.body_language_features,
                    )

            result.mark_completed()

        except Exception as e:
            log.error("Question processing failed", error=str(e))
            result.mark_error(str(e) or type(e).__name__)

        log.info(
            "Question processed",
            status=result.status.value,
            has_transcript=result.transcript is not None,
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result

    async def _run_stage(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> StageResult:
        """Execute a stage call with timing and error handling."""
        log = logger.bind(stage=name)
        start = time.perf_counter()

        try:
            log.debug("Stage starting")
            data = await func(*args)
            duration = (time.perf_counter() - start) * 1000
            log.debug("Stage completed", duration_ms=duration)
            return StageResult(success=True, data=data, duration_ms=duration)

        except Exception as e:
            duration = (time.perf_counter() - start) * 1000
            log.error("Stage failed", error=str(e), duration_ms=duration)
            return StageResult(success=False, data=None, duration_ms=duration, error=str(e))
