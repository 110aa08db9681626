"""Unit tests for the plagiarism gate."""

from pathlib import Path

import pytest

from thesisflow.errors import ConflictError, NotFoundError, PrecheckFailedError, ValidationError
from thesisflow.plagiarism import PlagiarismProvider, PlagiarismResult
from thesisflow.rules import PLAGIARISM_MAX_ATTEMPTS


class FakeProvider(PlagiarismProvider):
    """Returns a fixed score and remembers what it was asked to check."""

    def __init__(self, score: float, approved: bool):
        self.score = score
        self.approved = approved
        self.checked = []

    def check(self, document: Path, thesis_id: str) -> PlagiarismResult:
        self.checked.append(document)
        return PlagiarismResult(self.approved, self.score, f"checked/{thesis_id}.pdf",
                                report_url=f"reports/{thesis_id}.html")


@pytest.fixture
def thesis_id(flow):
    return flow.submit()["id"]


class TestRecordResult:
    """Test storing results delivered by the external checker."""

    def test_new_submission_is_unchecked(self, engine, thesis_id):
        assert engine.plagiarism.check_latest(thesis_id) == {
            "is_checked": False, "is_approved": False,
            "similarity_score": None, "checked_file_url": None,
        }

    def test_result_is_stored_and_announced(self, engine, thesis_id):
        # Act
        engine.plagiarism.record_result(thesis_id, PlagiarismResult(True, 12.5, "checked/x.pdf"), actor="checker")

        # Assert
        latest = engine.plagiarism.check_latest(thesis_id)
        assert latest["is_approved"] is True
        assert latest["similarity_score"] == 12.5
        notes = engine.notifier.list_recent(event="plagiarism_checked")
        assert notes[-1]["payload"] == {"thesis": thesis_id, "score": 12.5, "approved": True}

    def test_stored_flag_is_authoritative(self, engine, thesis_id):
        """A high score flagged approved by the checker still clears the gate."""
        engine.plagiarism.record_result(thesis_id, PlagiarismResult(True, 60.0, "checked/x.pdf"))

        engine.plagiarism.require_cleared(engine.store.theses.get(thesis_id))

    def test_checked_file_reference_required(self, engine, thesis_id):
        with pytest.raises(ValidationError):
            engine.plagiarism.record_result(thesis_id, PlagiarismResult(True, 1.0, ""))

    def test_unknown_thesis(self, engine):
        with pytest.raises(NotFoundError):
            engine.plagiarism.check_latest("missing")


class TestRequireCleared:
    def test_rejected_result_names_threshold(self, engine, thesis_id):
        engine.plagiarism.record_result(thesis_id, PlagiarismResult(False, 30.0, "checked/x.pdf"))

        with pytest.raises(PrecheckFailedError, match="exceeds") as ei:
            engine.plagiarism.require_cleared(engine.store.theses.get(thesis_id))
        assert ei.value.details["is_checked"] is True
        assert ei.value.details["is_approved"] is False


class TestRunCheck:
    """Test sending the current submission to a provider."""

    def test_provider_sees_current_submission(self, engine, thesis_id):
        # Arrange
        provider = FakeProvider(4.0, True)

        # Act
        pc = engine.plagiarism.run_check(thesis_id, provider)

        # Assert
        thesis = engine.store.theses.get(thesis_id)
        assert provider.checked == [engine.artifacts.path(thesis["thesis_file"])]
        assert pc["attempts"] == 1
        assert pc["report_url"] == f"reports/{thesis_id}.html"

    def test_attempts_are_bounded(self, engine, thesis_id):
        provider = FakeProvider(40.0, False)
        for _ in range(PLAGIARISM_MAX_ATTEMPTS):
            engine.plagiarism.run_check(thesis_id, provider)

        with pytest.raises(ConflictError, match="Maximum"):
            engine.plagiarism.run_check(thesis_id, provider)
        assert len(provider.checked) == PLAGIARISM_MAX_ATTEMPTS

    def test_resubmission_resets_attempts(self, engine, people, flow, thesis_id):
        engine.plagiarism.run_check(thesis_id, FakeProvider(40.0, False))

        flow.submit()

        assert engine.store.theses.get(thesis_id)["plagiarism_check"]["attempts"] == 0

    def test_provider_must_implement_check(self):
        class Silent(PlagiarismProvider):
            pass

        with pytest.raises(TypeError):
            Silent()
