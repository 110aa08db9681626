"""Unit tests for student-side thesis submission and deletion."""

import pytest

from thesisflow.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError


class TestSubmit:
    """Test first submission and replacement."""

    def test_first_submission(self, engine, people, flow):
        # Act
        thesis = flow.submit()

        # Assert
        assert thesis["status"] == "submitted"
        assert thesis["current_iteration"] == 0
        assert thesis["student_signed"] is False
        assert engine.artifacts.exists(thesis["thesis_file"])
        assert thesis["thesis_file"].startswith(f"submission/student/{thesis['id']}/")
        student = engine.store.users.get("student-demo")
        assert student["thesis_status"] == "submitted"
        assert student["thesis_file"] == thesis["thesis_file"]
        assert student["thesis_topic"] == "Consistency repair for document stores"

    def test_submission_with_team_enters_review(self, engine, flow):
        flow.assign(supervisor="supervisor", reviewer="reviewer")

        thesis = flow.submit()

        assert thesis["status"] == "with_supervisor"
        assert thesis["current_iteration"] == 1
        assert thesis["id"] in engine.store.users.get("reviewer-demo")["assigned_theses"]

    @pytest.mark.parametrize("title", ["", "ab"])
    def test_title_required(self, engine, people, make_pdf, title):
        with pytest.raises(ValidationError, match="title"):
            engine.theses.submit_thesis(people["student"], title, make_pdf())

    def test_file_required(self, engine, people):
        with pytest.raises(ValidationError) as ei:
            engine.theses.submit_thesis(people["student"], "A fine title", None)
        assert ei.value.details == {"missing": ["file"]}

    def test_only_students(self, engine, people, make_pdf):
        with pytest.raises(AuthorizationError):
            engine.theses.submit_thesis(people["supervisor"], "A fine title", make_pdf())

    def test_replace_before_review(self, engine, flow):
        # Arrange
        first = flow.submit()

        # Act
        second = flow.submit(title="A better title")

        # Assert
        assert second["id"] == first["id"]
        assert second["title"] == "A better title"
        assert second["thesis_file"] != first["thesis_file"]
        assert not engine.artifacts.exists(first["thesis_file"])
        assert second["current_iteration"] == 0

    def test_no_replacement_during_review(self, flow):
        flow.assign(supervisor="supervisor")
        flow.submit()

        with pytest.raises(ConflictError, match="under review"):
            flow.submit()


class TestSignSubmission:
    def test_sign_once(self, engine, people, flow):
        flow.submit()

        thesis = engine.theses.sign_submission(people["student"])

        assert thesis["student_signed"] is True
        with pytest.raises(ConflictError):
            engine.theses.sign_submission(people["student"])

    def test_nothing_to_sign(self, engine, people):
        with pytest.raises(NotFoundError):
            engine.theses.sign_submission(people["student"])


class TestDelete:
    """Test the cascading delete."""

    def test_delete_removes_links_and_documents(self, engine, people, flow):
        # Arrange
        flow.assign(supervisor="supervisor", reviewer="reviewer")
        tid = flow.submit()["id"]
        flow.clear_gates(tid)
        flow.approve("supervisor", tid)
        handles = [engine.store.theses.get(tid)[f] for f in ("thesis_file", "review_pdf_supervisor")]

        # Act
        result = engine.theses.delete_thesis(people["student"])

        # Assert
        assert result == {"thesis_id": tid, "deleted": True, "artifacts_removed": 2}
        assert engine.store.theses.get(tid) is None
        assert all(not engine.artifacts.exists(h) for h in handles)
        for staff_id in ("supervisor-demo", "reviewer-demo"):
            staff = engine.store.users.get(staff_id)
            assert tid not in staff["assigned_theses"] and tid not in staff["reviewed_theses"]
            assert "student-demo" in staff["assigned_students"]
        student = engine.store.users.get("student-demo")
        assert student["thesis_status"] == "not_submitted"
        assert "thesis_file" not in student
        assert engine.reconciler.scan() == []

    def test_evaluated_thesis_is_kept(self, engine, people, flow):
        tid = flow.ready_for_hod()
        flow.hod_sign(tid)

        with pytest.raises(ConflictError, match="evaluated"):
            engine.theses.delete_thesis(people["student"])
        assert engine.store.theses.get(tid) is not None

    def test_nothing_to_delete(self, engine, people):
        with pytest.raises(NotFoundError):
            engine.theses.delete_thesis(people["student"])


class TestStatus:
    def test_status_view(self, engine, flow):
        flow.assign(supervisor="supervisor")
        tid = flow.submit()["id"]

        view = engine.theses.status("student-demo")

        assert view["thesis_status"] == "with_supervisor"
        assert view["team"] == {"consultant": None, "supervisor": "supervisor-demo", "reviewer": None}
        assert view["thesis"]["id"] == tid
