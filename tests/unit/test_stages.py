"""
Unit tests for pipeline stage adapters.
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from casecoach.core.models import BodyLanguageFeatures
from casecoach.pipeline.stages import (
    MINIMAL_FEEDBACK,
    EmbeddingStage,
    FeedbackError,
    FeedbackStage,
    SeededBodyLanguageStage,
    TranscribeStage,
    TranscriptionError,
    fallback_feedback,
    hash_embedding,
)


def features(**overrides) -> BodyLanguageFeatures:
    values = dict(
        warmth=0.6, competence=0.6, affect=0.6,
        eye_contact_ratio=0.6, gesture_intensity=0.6, posture_stability=0.6,
    )
    values.update(overrides)
    return BodyLanguageFeatures(**values)


def anthropic_client(text: str) -> MagicMock:
    """Anthropic client double whose messages.create returns one text block."""
    client = MagicMock()
    client.messages.create = AsyncMock(
        return_value=MagicMock(content=[MagicMock(type="text", text=text)])
    )
    return client


# ══════════════════════════════════════════════════════════════
# Body Language Tests
# ══════════════════════════════════════════════════════════════


class TestSeededBodyLanguageStage:
    """Test the deterministic body-language analyzer."""

    @pytest.mark.asyncio
    async def test_deterministic(self):
        """Test the same source always yields the same features."""
        stage = SeededBodyLanguageStage()

        assert await stage.analyze("q1.mp4") == await stage.analyze("q1.mp4")

    @pytest.mark.asyncio
    async def test_sources_differ(self):
        stage = SeededBodyLanguageStage()

        assert await stage.analyze("q1.mp4") != await stage.analyze("q2.mp4")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source", ["a.wav", "question-0", "x" * 500, ""])
    async def test_values_within_bounds(self, source):
        """Test every feature stays inside its configured range."""
        stage = SeededBodyLanguageStage()
        result = await stage.analyze(source)

        for feature, (low, high) in stage.BOUNDS.items():
            assert low <= getattr(result, feature) <= high


# ══════════════════════════════════════════════════════════════
# Embedding Tests
# ══════════════════════════════════════════════════════════════


class TestHashEmbedding:
    """Test the deterministic embedding fallback."""

    def test_dimensions_and_range(self):
        embedding = hash_embedding("market sizing", 384)

        assert len(embedding) == 384
        assert all(-1.0 <= v <= 1.0 for v in embedding)

    def test_deterministic(self):
        assert hash_embedding("abc") == hash_embedding("abc")
        assert hash_embedding("abc") != hash_embedding("abd")


class TestEmbeddingStage:
    """Test vector construction."""

    @pytest.mark.asyncio
    async def test_no_provider_uses_hash(self):
        """Test the hash embedding is used without a provider."""
        stage = EmbeddingStage(dimensions=32, llm_provider="none")

        assert await stage.embed_text("profit tree") == hash_embedding("profit tree", 32)

    @pytest.mark.asyncio
    async def test_build_vector_appends_features(self):
        """Test the vector is the embedding followed by six feature values."""
        stage = EmbeddingStage(dimensions=32, llm_provider="none")
        record = features(warmth=0.9)

        vector = await stage.build_vector("answer", record)

        assert len(vector) == 38
        assert vector[-6:] == record.as_vector()

    @pytest.mark.asyncio
    async def test_openai_embedding(self):
        """Test the OpenAI embeddings API result is used when well-formed."""
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=MagicMock(data=[MagicMock(embedding=[0.1, 0.2, 0.3, 0.4])])
        )
        stage = EmbeddingStage(dimensions=4, llm_provider="openai", client=client)

        assert await stage.embed_text("hi") == [0.1, 0.2, 0.3, 0.4]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        """Test a provider exception never escapes."""
        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=RuntimeError("quota"))
        stage = EmbeddingStage(dimensions=4, llm_provider="openai", client=client)

        assert await stage.embed_text("hi") == hash_embedding("hi", 4)

    @pytest.mark.asyncio
    async def test_wrong_length_falls_back(self):
        """Test an embedding of the wrong size is rejected."""
        stage = EmbeddingStage(
            dimensions=4,
            llm_provider="anthropic",
            client=anthropic_client("[0.1, 0.2]"),
        )

        assert await stage.embed_text("hi") == hash_embedding("hi", 4)

    @pytest.mark.asyncio
    async def test_anthropic_array_parsed(self):
        """Test a JSON array in free text is extracted."""
        stage = EmbeddingStage(
            dimensions=3,
            llm_provider="anthropic",
            client=anthropic_client("Here you go: [0.5, -0.25, 1e-1]"),
        )

        assert await stage.embed_text("hi") == [0.5, -0.25, 0.1]


# ══════════════════════════════════════════════════════════════
# Feedback Tests
# ══════════════════════════════════════════════════════════════


class TestFallbackFeedback:
    """Test heuristic feedback."""

    def test_short_answer(self):
        """Test a brief answer is flagged for elaboration."""
        feedback = fallback_feedback("Too short.", features())

        assert "Response was too brief - try to elaborate more" in feedback.improvements
        assert "Practice expanding on your points with specific examples" in feedback.suggestions

    def test_long_confident_answer(self):
        """Test a long answer with strong features scores well."""
        transcript = "I think we should start by sizing the market. " * 5
        feedback = fallback_feedback(transcript, features(warmth=0.9, competence=0.9))

        assert "Provided a substantial response" in feedback.strengths
        assert "Used personal perspective effectively" in feedback.strengths
        assert feedback.overall_score >= 75

    def test_score_clamped(self):
        """Test the score stays within 40..100."""
        low = fallback_feedback("", features(**{k: 0.0 for k in BodyLanguageFeatures.model_fields}))
        high = fallback_feedback("x" * 500, features(**{k: 1.0 for k in BodyLanguageFeatures.model_fields}))

        assert low.overall_score == 50
        assert high.overall_score == 90
        assert 40 <= low.overall_score <= 100

    def test_never_empty(self):
        """Test every list is populated."""
        feedback = fallback_feedback("A medium length answer about costs and revenue.", features())

        assert feedback.strengths
        assert feedback.improvements
        assert feedback.suggestions
        assert feedback.narrative


class TestFeedbackStage:
    """Test model-backed feedback."""

    @pytest.mark.asyncio
    async def test_no_client_raises(self):
        stage = FeedbackStage(llm_provider="none")

        with pytest.raises(FeedbackError):
            await stage.generate("answer", features(), 0)

    @pytest.mark.asyncio
    async def test_parses_response(self):
        """Test the model's JSON keys are mapped onto the feedback record."""
        stage = FeedbackStage(
            llm_provider="anthropic",
            client=anthropic_client(
                '```json\n{"strengths": ["Structured"], "areasForImprovement": ["Quantify"],'
                ' "overallScore": 82, "detailedFeedback": "Solid.", "suggestions": ["Use numbers"]}\n```'
            ),
        )

        feedback = await stage.generate("answer", features(), 2)

        assert feedback.strengths == ["Structured"]
        assert feedback.improvements == ["Quantify"]
        assert feedback.overall_score == 82
        assert feedback.narrative == "Solid."
        assert feedback.suggestions == ["Use numbers"]

    @pytest.mark.asyncio
    async def test_score_bounded(self):
        stage = FeedbackStage(
            llm_provider="anthropic",
            client=anthropic_client('{"overallScore": 140}'),
        )

        feedback = await stage.generate("answer", features(), 0)

        assert feedback.overall_score == 100

    @pytest.mark.asyncio
    async def test_empty_lists_filled_from_rules(self):
        """Test empty lists in the model reply never reach the client."""
        stage = FeedbackStage(
            llm_provider="anthropic",
            client=anthropic_client(
                '{"strengths": ["Structured"], "areasForImprovement": [],'
                ' "overallScore": 70, "suggestions": []}'
            ),
        )

        feedback = await stage.generate("answer", features(), 0)
        rules = fallback_feedback("answer", features())

        assert feedback.strengths == ["Structured"]
        assert feedback.improvements == rules.improvements
        assert feedback.suggestions == rules.suggestions
        assert feedback.improvements
        assert feedback.suggestions
        assert feedback.overall_score == 70

    @pytest.mark.asyncio
    async def test_no_json_returns_minimal(self):
        """Test a response without JSON yields the minimal record."""
        stage = FeedbackStage(llm_provider="anthropic", client=anthropic_client("I cannot help."))

        feedback = await stage.generate("answer", features(), 0)

        assert feedback == MINIMAL_FEEDBACK
        assert feedback is not MINIMAL_FEEDBACK

    @pytest.mark.asyncio
    async def test_request_failure_raises(self):
        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))
        stage = FeedbackStage(llm_provider="anthropic", client=client)

        with pytest.raises(FeedbackError, match="overloaded"):
            await stage.generate("answer", features(), 0)

    @pytest.mark.asyncio
    async def test_openai_chat(self):
        """Test the OpenAI chat completions path."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=MagicMock(
            choices=[MagicMock(message=MagicMock(content='{"strengths": ["Clear"]}'))]
        ))
        stage = FeedbackStage(llm_provider="openai", client=client)

        feedback = await stage.generate("answer", features(), 0)

        assert feedback.strengths == ["Clear"]
        assert feedback.overall_score == 75


# ══════════════════════════════════════════════════════════════
# Transcription Tests
# ══════════════════════════════════════════════════════════════


class TestTranscribeStage:
    """Test the speech-to-text adapter."""

    @pytest.mark.asyncio
    async def test_no_model_raises(self):
        stage = TranscribeStage()
        stage._initialized = True

        with pytest.raises(TranscriptionError):
            await stage.transcribe(Path("a.wav"))

    @pytest.mark.asyncio
    async def test_joins_segments(self):
        """Test segment texts are joined into one transcript."""
        stage = TranscribeStage()
        stage._initialized = True
        stage._whisperx = MagicMock()
        stage._whisperx.load_audio.return_value = "samples"
        stage._model = MagicMock()
        stage._model.transcribe.return_value = {
            "segments": [{"text": " We should "}, {"text": "size the market. "}],
        }

        assert await stage.transcribe(Path("a.wav")) == "We should size the market."

    @pytest.mark.asyncio
    async def test_backend_failure_wrapped(self):
        stage = TranscribeStage()
        stage._initialized = True
        stage._whisperx = MagicMock()
        stage._whisperx.load_audio.side_effect = RuntimeError("decode failed")
        stage._model = MagicMock()

        with pytest.raises(TranscriptionError, match="decode failed"):
            await stage.transcribe(Path("a.wav"))
