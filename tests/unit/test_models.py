"""
Unit tests for core domain models.
"""

import pytest
from pydantic import ValidationError

from casecoach.core.models import (
    BodyLanguageFeatures,
    ProcessedResult,
    ProcessingStatus,
    QualitativeFeedback,
    Question,
    QuestionVectorRecord,
    Session,
)


@pytest.fixture
def features() -> BodyLanguageFeatures:
    return BodyLanguageFeatures(
        warmth=0.7,
        competence=0.8,
        affect=0.5,
        eye_contact_ratio=0.6,
        gesture_intensity=0.3,
        posture_stability=0.9,
    )


class TestBodyLanguageFeatures:
    """Test the six-dimension feature record."""

    def test_vector_order(self, features):
        assert features.as_vector() == [0.7, 0.8, 0.5, 0.6, 0.3, 0.9]

    def test_average(self, features):
        assert features.average == pytest.approx(3.8 / 6)

    def test_bounds(self):
        with pytest.raises(ValidationError):
            BodyLanguageFeatures(
                warmth=1.2, competence=0.5, affect=0.5,
                eye_contact_ratio=0.5, gesture_intensity=0.5, posture_stability=0.5,
            )

    def test_wire_names(self, features):
        wire = features.to_wire()

        assert wire["eyeContactRatio"] == 0.6
        assert wire["gestureIntensity"] == 0.3
        assert wire["postureStability"] == 0.9


class TestProcessedResult:
    """Test result lifecycle."""

    def test_starts_processing(self):
        result = ProcessedResult(question_index=0)

        assert result.status == ProcessingStatus.PROCESSING
        assert result.transcript is None

    def test_mark_completed_clears_error(self):
        result = ProcessedResult(question_index=0, error_message="stale")
        result.mark_completed()

        assert result.status == ProcessingStatus.COMPLETED
        assert result.error_message is None

    def test_mark_error_keeps_partial_fields(self):
        result = ProcessedResult(question_index=0, transcript="partial")
        result.mark_error("analysis failed")

        assert result.status == ProcessingStatus.ERROR
        assert result.error_message == "analysis failed"
        assert result.transcript == "partial"

    def test_complete_record(self, features):
        result = ProcessedResult(
            question_index=0,
            transcript="answer",
            body_language_features=features,
            embedding_vector=[0.1, 0.2],
        )
        assert result.is_complete_record is False

        result.mark_completed()
        assert result.is_complete_record is True

        result.transcript = None
        assert result.is_complete_record is False

    def test_wire_format(self, features):
        result = ProcessedResult(
            question_index=2,
            body_language_features=features,
            qualitative_feedback=QualitativeFeedback(strengths=["Clear"]),
        )
        result.mark_completed()

        wire = result.to_wire()

        assert wire["questionIndex"] == 2
        assert wire["status"] == "completed"
        assert wire["bodyLanguageFeatures"]["eyeContactRatio"] == 0.6
        assert wire["qualitativeFeedback"]["overallScore"] == 75

    def test_accepts_camel_case_input(self):
        result = ProcessedResult.model_validate({"questionIndex": 1, "errorMessage": "x"})

        assert result.question_index == 1
        assert result.error_message == "x"


class TestQualitativeFeedback:
    def test_score_range(self):
        with pytest.raises(ValidationError):
            QualitativeFeedback(overall_score=101)


class TestSession:
    """Test session and question slots."""

    def test_defaults(self):
        session = Session()

        assert session.media_path == "streaming://realtime"
        assert session.questions == []

    def test_get_question(self):
        session = Session(id="s1")
        session.questions = [
            Question(session_id="s1", index=0, start_ts=0, end_ts=30),
            Question(session_id="s1", index=3, start_ts=30, end_ts=90),
        ]

        assert session.get_question(3).start_ts == 30
        assert session.get_question(1) is None

    def test_json_round_trip(self, features):
        session = Session(id="s1")
        session.questions = [Question(session_id="s1", index=0, start_ts=0, end_ts=1, body_language=features)]

        restored = Session.model_validate_json(session.model_dump_json())

        assert restored == session


class TestQuestionVectorRecord:
    def test_generated_id(self, features):
        a = QuestionVectorRecord(session_id="s1", question_index=0, vector=[1.0], body_language=features, transcript="t")
        b = QuestionVectorRecord(session_id="s1", question_index=0, vector=[1.0], body_language=features, transcript="t")

        assert a.id != b.id
