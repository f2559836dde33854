"""
Question Pipeline Stages

Adapters for the external collaborators a processing run depends on:
speech-to-text, body-language analysis, embedding and coaching feedback.
Each stage can be swapped for another implementation of the same
interface without touching the streaming core.
"""

import asyncio
import hashlib
import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from casecoach.config import settings
from casecoach.core.models import BodyLanguageFeatures, QualitativeFeedback

logger = structlog.get_logger()


class TranscriptionError(Exception):
    """Raised when speech-to-text fails."""


class FeedbackError(Exception):
    """Raised when the feedback model cannot produce feedback."""


# ══════════════════════════════════════════════════════════════
# Base Stages
# ══════════════════════════════════════════════════════════════


class PipelineStage(ABC):
    """Base class for pipeline stages."""

    name: str = "base"

    async def initialize(self) -> None:
        """Initialize stage resources (models, clients)."""
        pass

    async def cleanup(self) -> None:
        """Clean up stage resources."""
        pass


class LLMStage(PipelineStage):
    """Stage backed by a hosted text model (Anthropic or OpenAI)."""

    def __init__(
        self,
        llm_provider: str | None = None,
        llm_model: str | None = None,
        max_tokens: int | None = None,
        client: Any = None,
    ):
        self.llm_provider = llm_provider or settings.llm_provider
        self.llm_model = llm_model or (
            settings.openai_model if self.llm_provider == "openai" else settings.llm_model
        )
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self._client = client
        self._initialized = client is not None

    async def initialize(self) -> None:
        """Initialize LLM client."""
        if self._initialized:
            return

        try:
            if self.llm_provider == "anthropic" and settings.anthropic_api_key:
                from anthropic import AsyncAnthropic

                self._client = AsyncAnthropic(api_key=settings.anthropic_api_key)
            elif self.llm_provider == "openai" and settings.openai_api_key:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=settings.openai_api_key)
            else:
                logger.warning(
                    "LLM client not configured",
                    stage=self.name,
                    provider=self.llm_provider,
                )
                self._client = None

            logger.info("LLM stage initialized", stage=self.name, provider=self.llm_provider)

        except Exception as e:
            logger.warning("LLM client not available", stage=self.name, error=str(e))
            self._client = None

        self._initialized = True

    @property
    def available(self) -> bool:
        return self._client is not None

    async def _complete(self, prompt: str, max_tokens: int | None = None) -> str:
        """Send a single-turn prompt and return the text response."""
        if self._client is None:
            raise RuntimeError(f"No LLM client for stage {self.name}")

        if self.llm_provider == "openai":
            response = await self._client.chat.completions.create(
                model=self.llm_model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens or self.max_tokens,
            )
            return (response.choices[0].message.content or "").strip()

        message = await self._client.messages.create(
            model=self.llm_model,
            max_tokens=max_tokens or self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        return " ".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        ).strip()


# ══════════════════════════════════════════════════════════════
# Transcribe Stage (Speech-to-Text)
# ══════════════════════════════════════════════════════════════


class TranscribeStage(PipelineStage):
    """
    Speech transcription with WhisperX.

    Accepts either the canonical WAV or an untranscoded WebM chunk;
    WhisperX decodes both through ffmpeg.
    """

    name = "transcribe"

    def __init__(
        self,
        model_name: str | None = None,
        language: str | None = None,
        compute_type: str = "int8",
        batch_size: int = 16,
    ):
        self.model_name = model_name or settings.whisper_model
        self.language = language or settings.asr_language
        self.compute_type = compute_type
        self.batch_size = batch_size
        self._model = None
        self._initialized = False

    async def initialize(self) -> None:
        """Load the WhisperX model."""
        if self._initialized:
            return

        try:
            import whisperx

            self._model = await asyncio.to_thread(
                whisperx.load_model,
                self.model_name,
                device="cpu",
                compute_type=self.compute_type,
            )
            self._whisperx = whisperx
            logger.info("WhisperX initialized", model=self.model_name)

        except Exception as e:
            logger.warning("WhisperX not available", error=str(e))

        self._initialized = True

    async def transcribe(self, media: Path) -> str:
        """Transcribe an audio file to text."""
        await self.initialize()

        if self._model is None:
            raise TranscriptionError("No speech-to-text backend available")

        try:
            audio = await asyncio.to_thread(self._whisperx.load_audio, str(media))
            result = await asyncio.to_thread(
                self._model.transcribe,
                audio,
                batch_size=self.batch_size,
                language=self.language,
            )
        except Exception as e:
            raise TranscriptionError(f"Speech-to-text failed: {e}") from e

        transcript = " ".join(
            seg.get("text", "").strip() for seg in result.get("segments", [])
        ).strip()

        logger.info("Transcription complete", media=Path(media).name, chars=len(transcript))
        return transcript


# ══════════════════════════════════════════════════════════════
# Body Language Stage
# ══════════════════════════════════════════════════════════════


class BodyLanguageStage(PipelineStage):
    """Interface for body-language feature extraction."""

    name = "body_language"

    @abstractmethod
    async def analyze(self, source: str) -> BodyLanguageFeatures:
        """Extract features from a media handle or a deterministic seed."""


class SeededBodyLanguageStage(BodyLanguageStage):
    """
    Deterministic stand-in for a computer-vision pipeline.

    Values are derived from a hash of the source string and bounded to the
    ranges observed in practice sessions, so the same media handle always
    yields the same features.
    """

    # (low, high) per feature
    BOUNDS = {
        "warmth": (0.4, 0.9),
        "competence": (0.5, 0.95),
        "affect": (0.3, 0.8),
        "eye_contact_ratio": (0.4, 0.85),
        "gesture_intensity": (0.2, 0.7),
        "posture_stability": (0.6, 0.95),
    }

    async def analyze(self, source: str) -> BodyLanguageFeatures:
        digest = hashlib.sha256(source.encode("utf-8")).digest()

        values = {}
        for i, (feature, (low, high)) in enumerate(self.BOUNDS.items()):
            fraction = int.from_bytes(digest[i * 4:(i + 1) * 4], "big") / 0xFFFFFFFF
            values[feature] = round(low + fraction * (high - low), 4)

        return BodyLanguageFeatures(**values)


# ══════════════════════════════════════════════════════════════
# Embedding Stage
# ══════════════════════════════════════════════════════════════


def hash_embedding(text: str, dimensions: int = 384) -> list[float]:
    """Deterministic embedding in [-1, 1] derived from a SHA-256 digest."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    embedding = []
    for i in range(dimensions):
        high = digest[i % len(digest)]
        low = digest[(i + 1) % len(digest)]
        embedding.append(((high * 256 + low) / 65535) * 2 - 1)
    return embedding


class EmbeddingStage(LLMStage):
    """
    Builds question vectors: a text embedding followed by the six
    body-language values.

    The text embedding comes from the configured provider and falls back
    to ``hash_embedding`` whenever the provider fails or returns something
    unusable.
    """

    name = "embedding"

    _ARRAY_PATTERN = re.compile(r"\[[\d\s.,\-eE+]+\]")

    def __init__(self, dimensions: int | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.dimensions = dimensions or settings.embedding_dimensions

    async def embed_text(self, text: str) -> list[float]:
        """Embed text, never failing."""
        await self.initialize()

        if self.available:
            try:
                embedding = await self._provider_embedding(text)
                if embedding is not None:
                    return embedding
                logger.warning("Embedding response unusable, using hash fallback")
            except Exception as e:
                logger.warning("Embedding provider failed, using hash fallback", error=str(e))

        return hash_embedding(text, self.dimensions)

    async def _provider_embedding(self, text: str) -> list[float] | None:
        if self.llm_provider == "openai":
            response = await self._client.embeddings.create(
                model=settings.openai_embedding_model,
                input=text,
                dimensions=self.dimensions,
            )
            embedding = list(response.data[0].embedding)
        else:
            response_text = await self._complete(
                "Analyze this interview response and provide a structured representation "
                f"as a JSON array of {self.dimensions} numbers (floats between -1 and 1) "
                "that capture semantic meaning, key topics, sentiment, and important "
                "concepts. Return ONLY a valid JSON array, nothing else.\n\n"
                f'Text: "{text[:2000]}"',
                max_tokens=4096,
            )
            match = self._ARRAY_PATTERN.search(response_text)
            if not match:
                return None
            embedding = json.loads(match.group(0))

        if len(embedding) != self.dimensions:
            return None
        return [float(v) for v in embedding]

    async def build_vector(
        self,
        text: str,
        features: BodyLanguageFeatures,
    ) -> list[float]:
        """Concatenate the text embedding with the body-language features."""
        embedding = await self.embed_text(text)
        return [*embedding, *features.as_vector()]


# ══════════════════════════════════════════════════════════════
# Feedback Stage
# ══════════════════════════════════════════════════════════════


MINIMAL_FEEDBACK = QualitativeFeedback(
    strengths=["Clear communication"],
    improvements=["Could add more specific examples"],
    overall_score=75,
    narrative="Good response. Continue practicing to refine your delivery.",
    suggestions=["Practice more examples", "Work on pacing"],
)


def fallback_feedback(
    transcript: str,
    features: BodyLanguageFeatures,
) -> QualitativeFeedback:
    """Rule-based feedback used when the feedback model is unavailable."""
    length = len(transcript.strip())
    lowered = transcript.lower()

    score = 50
    if length > 100:
        score += 15
    elif length > 50:
        score += 10
    elif length > 20:
        score += 5
    score += round(features.average * 25)
    score = min(100, max(40, score))

    strengths: list[str] = []
    improvements: list[str] = []
    suggestions: list[str] = []

    if length > 50:
        strengths.append("Provided a substantial response")
    else:
        improvements.append("Response was too brief - try to elaborate more")

    if "i think" in lowered or "i believe" in lowered:
        strengths.append("Used personal perspective effectively")

    if length < 30:
        improvements.append("Add more detail and examples to your answer")
        suggestions.append("Practice expanding on your points with specific examples")

    if features.warmth > 0.7:
        strengths.append("Demonstrated good warmth and approachability")
    elif features.warmth < 0.5:
        improvements.append("Work on showing more warmth and engagement")
        suggestions.append("Practice maintaining eye contact and using friendly gestures")

    if features.competence > 0.7:
        strengths.append("Conveyed confidence and competence")
    elif features.competence < 0.5:
        improvements.append("Build more confidence in your delivery")
        suggestions.append("Practice speaking with more authority and clarity")

    if features.eye_contact_ratio < 0.5:
        improvements.append("Improve eye contact during responses")
        suggestions.append("Practice looking at the camera/interviewer more consistently")

    if not suggestions:
        suggestions = [
            "Continue practicing to refine your delivery",
            "Record yourself to identify areas for improvement",
        ]
    if not strengths:
        strengths = ["Completed the response"]
    if not improvements:
        improvements = ["Keep practicing to improve"]

    if score >= 75:
        narrative = (
            "Good response overall. You demonstrated solid communication skills and "
            "maintained good body language. Continue practicing to refine your delivery."
        )
    elif score >= 60:
        narrative = (
            "Decent response. You covered the main points, but there's room for "
            "improvement in both content depth and delivery. Focus on adding more "
            "specific examples and maintaining better body language."
        )
    else:
        narrative = (
            "Your response needs improvement. Try to provide more detailed answers with "
            "specific examples, and work on your body language to convey more "
            "confidence and engagement."
        )

    return QualitativeFeedback(
        strengths=strengths,
        improvements=improvements,
        overall_score=score,
        narrative=narrative,
        suggestions=suggestions,
    )


class FeedbackStage(LLMStage):
    """Coaching feedback from a hosted text model."""

    name = "feedback"

    _OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

    def _build_prompt(
        self,
        transcript: str,
        features: BodyLanguageFeatures,
        question_index: int,
    ) -> str:
        def pct(value: float) -> int:
            return round(value * 100)

        return f"""You are an expert interview coach analyzing a practice interview response.

**Question {question_index} Response:**
"{transcript}"

**Body Language Metrics:**
- Warmth: {pct(features.warmth)}%
- Competence: {pct(features.competence)}%
- Affect: {pct(features.affect)}%
- Eye Contact: {pct(features.eye_contact_ratio)}%
- Gesture Intensity: {pct(features.gesture_intensity)}%
- Posture Stability: {pct(features.posture_stability)}%

Please provide detailed, actionable feedback in the following JSON format:
{{
  "strengths": ["strength1", "strength2", "strength3"],
  "areasForImprovement": ["area1", "area2", "area3"],
  "overallScore": 85,
  "detailedFeedback": "2-3 sentences of overall feedback",
  "suggestions": ["suggestion1", "suggestion2", "suggestion3"]
}}

Focus on content quality and clarity, communication effectiveness, body
language alignment with message, and areas to improve for next practice.

Return ONLY valid JSON, no other text."""

    async def generate(
        self,
        transcript: str,
        features: BodyLanguageFeatures,
        question_index: int,
    ) -> QualitativeFeedback:
        """
        Generate feedback for one answer.

        Raises FeedbackError when no model is configured or the call fails.
        A response without JSON yields ``MINIMAL_FEEDBACK``.
        """
        await self.initialize()

        if not self.available:
            raise FeedbackError("LLM client not configured")

        try:
            response_text = await self._complete(
                self._build_prompt(transcript, features, question_index)
            )
        except Exception as e:
            raise FeedbackError(f"Feedback request failed: {e}") from e

        match = self._OBJECT_PATTERN.search(response_text)
        if not match:
            logger.warning("No JSON in feedback response, using minimal feedback")
            return MINIMAL_FEEDBACK.model_copy(deep=True)

        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise FeedbackError(f"Unparsable feedback response: {e}") from e

        score = data.get("overallScore") or 75
        strengths = data.get("strengths") or []
        improvements = data.get("areasForImprovement") or []
        suggestions = data.get("suggestions") or []

        # Empty lists are filled from the rule-based feedback
        if not (strengths and improvements and suggestions):
            fallback = fallback_feedback(transcript, features)
            strengths = strengths or fallback.strengths
            improvements = improvements or fallback.improvements
            suggestions = suggestions or fallback.suggestions

        return QualitativeFeedback(
            strengths=strengths,
            improvements=improvements,
            overall_score=min(100, max(0, int(score))),
            narrative=data.get("detailedFeedback") or "Good response overall.",
            suggestions=suggestions,
        )
