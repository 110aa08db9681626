"""Unit tests for role reviews, iterations and retraction."""

import pytest

from thesisflow.errors import (
    AuthorizationError, ConflictError, PrecheckFailedError, PreconditionError, ValidationError,
)
from thesisflow.plagiarism import PlagiarismResult
from thesisflow.rules import PLAGIARISM_THRESHOLD


@pytest.fixture
def supervised(flow):
    """Supervisor + reviewer team, submitted, signed and cleared. Returns the thesis id."""
    flow.assign(supervisor="supervisor", reviewer="reviewer")
    tid = flow.submit()["id"]
    flow.clear_gates(tid)
    return tid


class TestRevisionRequest:
    """Test comment-only submissions."""

    def test_supervisor_requests_revisions(self, engine, people, supervised):
        """Comments without an assessment send the thesis back to the student."""
        # Act
        result = engine.state_machine.submit_role_review(people["supervisor"], "supervisor", supervised,
                                                         comments="fix intro")

        # Assert
        thesis = engine.store.theses.get(supervised)
        entry = thesis["review_iterations"][0]
        assert entry["supervisor_review"]["status"] == "revisions_requested"
        assert entry["supervisor_review"]["is_final_approval"] is False
        assert thesis["status"] == "revisions_requested"
        assert thesis["current_iteration"] == 1
        assert result["outcome"] == "revisions_requested"

        student = engine.store.users.get(people["student"].id)
        assert student["thesis_status"] == "revisions_requested"
        assert student["supervisor_feedback"]["comments"] == "fix intro"
        assert student["total_review_attempts"] == 1
        assert engine.store.users.get(people["supervisor"].id)["review_stats"]["revision_requests"] == 1

    def test_reviewer_waits_while_revisions_are_pending(self, engine, people, supervised):
        engine.state_machine.submit_role_review(people["supervisor"], "supervisor", supervised, comments="redo")

        with pytest.raises(PrecheckFailedError) as ei:
            engine.state_machine.submit_role_review(people["reviewer"], "reviewer", supervised, comments="ok")
        assert ei.value.required_action == "await_resubmission"


class TestSupervisorGates:
    """Test the plagiarism and counter-signature gates in front of supervisor reviews."""

    def test_failed_plagiarism_leaves_thesis_untouched(self, engine, people, flow):
        # Arrange
        flow.assign(supervisor="supervisor")
        tid = flow.submit()["id"]
        engine.theses.sign_submission(people["student"])
        engine.plagiarism.record_result(tid, PlagiarismResult(False, 41.0, f"checked/{tid}.pdf"))
        before = engine.store.theses.get(tid)

        # Act
        with pytest.raises(PrecheckFailedError) as ei:
            engine.state_machine.submit_role_review(people["supervisor"], "supervisor", tid,
                                                    assessment={"grade": "A"})

        # Assert
        assert engine.store.theses.get(tid) == before
        assert ei.value.details["similarity_score"] == 41.0
        assert ei.value.details["threshold"] == PLAGIARISM_THRESHOLD
        assert ei.value.details["required_action"].startswith("reduce_similarity_to_")

    def test_unchecked_submission(self, engine, people, flow):
        flow.assign(supervisor="supervisor")
        tid = flow.submit()["id"]

        with pytest.raises(PrecheckFailedError) as ei:
            engine.state_machine.submit_role_review(people["supervisor"], "supervisor", tid, comments="x")
        assert ei.value.required_action == "run_plagiarism_check"

    def test_unsigned_submission(self, engine, people, flow):
        flow.assign(supervisor="supervisor")
        tid = flow.submit()["id"]
        engine.plagiarism.record_result(tid, PlagiarismResult(True, 3.0, "checked.pdf"))

        with pytest.raises(PreconditionError) as ei:
            engine.state_machine.submit_role_review(people["supervisor"], "supervisor", tid, comments="x")
        assert ei.value.details == {"has_submission": True, "student_signed": False,
                                    "required_action": "await_student_signature"}


class TestSubmitRoleReview:
    """Test final approvals and input checks."""

    def test_needs_comments_or_assessment(self, engine, people, supervised):
        with pytest.raises(ValidationError):
            engine.state_machine.submit_role_review(people["supervisor"], "supervisor", supervised, comments="  ")

    def test_only_the_assigned_member(self, engine, people, supervised):
        with pytest.raises(AuthorizationError):
            engine.state_machine.submit_role_review(people["supervisor2"], "supervisor", supervised, comments="x")

    def test_final_approval_issues_unsigned_document(self, engine, people, flow, supervised):
        # Act
        result = flow.approve("supervisor", supervised)

        # Assert
        thesis = engine.store.theses.get(supervised)
        assert result["outcome"] == "approved"
        assert result["signing_only"] is False
        assert thesis["status"] == "under_review"
        assert thesis["assessments"] == {"supervisor": {"grade": "A"}}
        assert engine.artifacts.exists(thesis["review_pdf_supervisor"])
        assert engine.signing.get_unsigned_artifact("supervisor", supervised).read_bytes().startswith(b"%PDF")

        staff = engine.store.users.get(people["supervisor"].id)
        assert supervised in staff["reviewed_theses"]
        assert supervised not in staff["assigned_theses"]
        assert staff["review_stats"]["approvals"] == 1

    def test_second_review_in_same_iteration(self, flow, supervised):
        flow.approve("supervisor", supervised)

        with pytest.raises(ConflictError) as ei:
            flow.approve("supervisor", supervised)
        assert ei.value.details["required_action"] == "re_review"


class TestConsultantPath:
    """Test consultant approval followed by the supervisor's signing-only step."""

    @pytest.fixture
    def with_consultant(self, flow):
        flow.assign(supervisor="supervisor", consultant="consultant", reviewer="reviewer")
        tid = flow.submit()["id"]
        flow.clear_gates(tid)
        return tid

    def test_consultant_hands_over_to_supervisor(self, engine, flow, with_consultant):
        assert engine.store.theses.get(with_consultant)["status"] == "with_consultant"

        flow.approve("consultant", with_consultant)

        assert engine.store.theses.get(with_consultant)["status"] == "with_supervisor"

    def test_supervisor_waits_for_consultant_signature(self, engine, people, flow, with_consultant):
        flow.approve("consultant", with_consultant)

        with pytest.raises(PrecheckFailedError) as ei:
            engine.state_machine.submit_role_review(people["supervisor"], "supervisor", with_consultant,
                                                    comments="agreed")
        assert ei.value.required_action == "await_consultant_signature"

    def test_signing_only_reuses_consultant_document(self, engine, people, flow, with_consultant):
        # Arrange
        flow.approve("consultant", with_consultant)
        flow.sign("consultant", with_consultant)

        # Act
        result = engine.state_machine.submit_role_review(people["supervisor"], "supervisor", with_consultant)

        # Assert
        thesis = engine.store.theses.get(with_consultant)
        assert result["signing_only"] is True
        assert thesis["status"] == "under_review"
        assert (engine.artifacts.read_bytes(thesis["review_pdf_supervisor"])
                == engine.artifacts.read_bytes(thesis["consultant_signed_review_path"]))
        review = thesis["review_iterations"][0]["supervisor_review"]
        assert review["comments"] == "Thesis approved by supervisor after consultant review"
        assert engine.store.users.get(people["student"].id)["supervisor_feedback"]["is_signed"] is True

    def test_consultant_retraction_takes_signing_only_approval_with_it(self, engine, people, flow,
                                                                       with_consultant):
        """The supervisor's signing-only approval stands on the consultant's document."""
        # Arrange
        flow.approve("consultant", with_consultant)
        flow.sign("consultant", with_consultant)
        engine.state_machine.submit_role_review(people["supervisor"], "supervisor", with_consultant)
        flow.sign("supervisor", with_consultant)
        before = engine.store.theses.get(with_consultant)
        handles = [before[f] for f in ("review_pdf_consultant", "consultant_signed_review_path",
                                       "review_pdf_supervisor", "supervisor_signed_review_path")]

        # Act
        engine.state_machine.re_review(people["consultant"], "consultant", with_consultant)

        # Assert
        thesis = engine.store.theses.get(with_consultant)
        assert thesis["status"] == "with_consultant"
        assert thesis["review_iterations"][0] == {"iteration": 1, "status": "under_review"}
        for field in ("review_pdf_supervisor", "supervisor_signed_review_path", "consultant_signed_review_path"):
            assert field not in thesis
        assert not any(engine.artifacts.exists(h) for h in handles)
        supervisor = engine.store.users.get(people["supervisor"].id)
        assert with_consultant in supervisor["assigned_theses"]
        assert with_consultant not in supervisor["reviewed_theses"]
        student = engine.store.users.get(people["student"].id)
        assert student["supervisor_feedback"]["status"] == "pending"
        assert engine.reconciler.scan() == []
        with pytest.raises(PrecheckFailedError) as ei:
            flow.sign("supervisor", with_consultant)
        assert ei.value.required_action == "submit_final_approval"

    def test_consultant_retraction_before_supervisor_review(self, engine, people, flow, with_consultant):
        flow.approve("consultant", with_consultant)

        result = engine.state_machine.re_review(people["consultant"], "consultant", with_consultant)

        assert result["status"] == "with_consultant"
        assert engine.store.theses.get(with_consultant)["review_iterations"][0] == {"iteration": 1,
                                                                                  "status": "under_review"}


class TestResubmission:
    """Test iteration bookkeeping when the student re-submits."""

    def test_resubmission_opens_next_iteration(self, engine, people, flow, supervised):
        # Arrange
        engine.state_machine.submit_role_review(people["supervisor"], "supervisor", supervised, comments="redo")

        # Act
        thesis = flow.submit(title="Consistency repair, second draft")

        # Assert
        assert thesis["id"] == supervised
        assert thesis["current_iteration"] == 2
        assert thesis["total_review_count"] == 2
        assert [it["iteration"] for it in thesis["review_iterations"]] == [1, 2]
        assert thesis["review_iterations"][0]["status"] == "revisions_requested"
        assert thesis["review_iterations"][1] == {"iteration": 2, "status": "under_review"}
        assert thesis["status"] == "with_supervisor"
        assert thesis["student_signed"] is False
        assert thesis["plagiarism_check"]["is_checked"] is False

    def test_iterations_never_decrease(self, engine, people, flow, supervised):
        seen = [engine.store.theses.get(supervised)["current_iteration"]]
        for _ in range(2):
            engine.state_machine.submit_role_review(people["supervisor"], "supervisor", supervised, comments="redo")
            flow.submit()
            flow.clear_gates(supervised)
            seen.append(engine.store.theses.get(supervised)["current_iteration"])

        assert seen == [1, 2, 3]
        assert engine.reconciler.scan() == []

    def test_staff_copies_return_to_assigned(self, engine, people, flow, supervised):
        flow.approve("supervisor", supervised)
        engine.state_machine.submit_role_review(people["reviewer"], "reviewer", supervised, comments="weak results")
        handle = engine.store.theses.get(supervised)["review_pdf_supervisor"]

        flow.submit()

        staff = engine.store.users.get(people["supervisor"].id)
        assert supervised in staff["assigned_theses"]
        assert supervised not in staff["reviewed_theses"]
        assert "review_pdf_supervisor" not in engine.store.theses.get(supervised)
        assert not engine.artifacts.exists(handle)


class TestReReview:
    """Test retracting a review in the current iteration."""

    def test_retract_supervisor_approval(self, engine, people, flow, supervised):
        # Arrange
        flow.approve("supervisor", supervised)
        handle = engine.store.theses.get(supervised)["review_pdf_supervisor"]

        # Act
        result = engine.state_machine.re_review(people["supervisor"], "supervisor", supervised)

        # Assert
        thesis = engine.store.theses.get(supervised)
        assert result["outcome"] == "retracted"
        assert thesis["status"] == "with_supervisor"
        assert "supervisor_review" not in thesis["review_iterations"][0]
        assert thesis["total_review_count"] == 1
        assert not engine.artifacts.exists(handle)
        staff = engine.store.users.get(people["supervisor"].id)
        assert supervised in staff["assigned_theses"] and supervised not in staff["reviewed_theses"]
        assert engine.store.users.get(people["student"].id)["supervisor_feedback"]["status"] == "pending"

        # a fresh review is accepted again
        assert flow.approve("supervisor", supervised)["outcome"] == "approved"

    def test_retract_signed_reviewer_review(self, engine, people, flow, supervised):
        flow.approve("supervisor", supervised)
        flow.approve("reviewer", supervised)
        signed = flow.sign("reviewer", supervised)["handle"]

        engine.state_machine.re_review(people["reviewer"], "reviewer", supervised)

        thesis = engine.store.theses.get(supervised)
        assert "reviewer_signed_review_path" not in thesis
        assert not engine.artifacts.exists(signed)
        assert thesis["status"] == "under_review"

    def test_nothing_to_retract(self, engine, people, supervised):
        with pytest.raises(ConflictError, match="No supervisor review"):
            engine.state_machine.re_review(people["supervisor"], "supervisor", supervised)

    def test_not_after_countersignature(self, engine, people, flow):
        tid = flow.ready_for_hod()
        flow.hod_sign(tid)

        with pytest.raises(ConflictError, match="countersigned"):
            engine.state_machine.re_review(people["reviewer"], "reviewer", tid)

    def test_admin_may_retract(self, engine, people, flow, supervised):
        flow.approve("supervisor", supervised)

        result = engine.state_machine.re_review(people["admin"], "supervisor", supervised)

        assert result["status"] == "with_supervisor"
