"""Unit tests for student-initiated supervisor requests."""

import pytest

from thesisflow.errors import AuthorizationError, ConflictError, ValidationError


class TestRequestSupervisor:
    """Test creating requests."""

    def test_request_is_pending(self, engine, people):
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo", "  I like your lab ")

        assert req["status"] == "pending"
        assert req["student_message"] == "I like your lab"
        assert req["faculty"] == "Engineering"

    def test_only_students(self, engine, people):
        with pytest.raises(AuthorizationError):
            engine.assignment.request_supervisor(people["reviewer"], "supervisor-demo")

    def test_same_faculty_only(self, engine, people):
        with pytest.raises(ValidationError, match="own faculty"):
            engine.assignment.request_supervisor(people["student"], "supervisor_science")

    def test_duplicate_pending_request(self, engine, people):
        engine.assignment.request_supervisor(people["student"], "supervisor-demo")

        with pytest.raises(ConflictError, match="pending request"):
            engine.assignment.request_supervisor(people["student"], "supervisor-demo")

    def test_student_with_supervisor(self, engine, people, flow):
        flow.assign(supervisor="supervisor")

        with pytest.raises(ConflictError, match="already have"):
            engine.assignment.request_supervisor(people["student"], "supervisor2")


class TestAcceptRequest:
    """Test acceptance linking the student and cancelling competing requests."""

    def test_accept_links_and_cancels_others(self, engine, people):
        # Arrange
        first = engine.assignment.request_supervisor(people["student"], "supervisor-demo")
        other = engine.assignment.request_supervisor(people["student"], "supervisor2")

        # Act
        result = engine.assignment.accept_supervisor_request(people["supervisor"], first["id"], "Welcome")

        # Assert
        assert result["request"]["status"] == "accepted"
        assert result["request"]["response_message"] == "Welcome"
        assert result["cancelled_requests"] == [other["id"]]
        assert engine.store.requests.get(other["id"])["status"] == "cancelled"
        assert engine.store.users.get("student-demo")["supervisor"] == "supervisor-demo"
        assert "student-demo" in engine.store.users.get("supervisor-demo")["assigned_students"]

    def test_accept_starts_review_of_existing_thesis(self, engine, people, flow):
        tid = flow.submit()["id"]
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo")

        result = engine.assignment.accept_supervisor_request(people["supervisor"], req["id"])

        assert result["thesis"]["status"] == "with_supervisor"
        assert tid in engine.store.users.get("supervisor-demo")["assigned_theses"]
        assert engine.reconciler.scan() == []

    def test_only_the_addressed_supervisor(self, engine, people):
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo")

        with pytest.raises(AuthorizationError):
            engine.assignment.accept_supervisor_request(people["supervisor2"], req["id"])

    def test_lost_race_cancels_request(self, engine, people, flow):
        """A direct assignment between request and acceptance wins."""
        # Arrange
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo")
        flow.assign(supervisor="supervisor2")

        # Act
        with pytest.raises(ConflictError):
            engine.assignment.accept_supervisor_request(people["supervisor"], req["id"])

        # Assert
        assert engine.store.requests.get(req["id"])["status"] == "cancelled"
        assert engine.store.users.get("student-demo")["supervisor"] == "supervisor2"

    def test_lost_race_cancels_every_pending_request(self, engine, people, flow):
        # Arrange
        first = engine.assignment.request_supervisor(people["student"], "supervisor-demo")
        second = engine.assignment.request_supervisor(people["student"], "supervisor2")
        flow.assign(by="admin", supervisor="supervisor_electrical")

        # Act
        with pytest.raises(ConflictError) as ei:
            engine.assignment.accept_supervisor_request(people["supervisor"], first["id"])

        # Assert
        assert ei.value.details["cancelled_requests"] == [first["id"], second["id"]]
        assert engine.store.requests.find(student_id="student-demo", status="pending") == []
        with pytest.raises(ConflictError, match="already been processed"):
            engine.assignment.accept_supervisor_request(people["supervisor2"], second["id"])
        stale = [r for r in engine.audit.records(level="WARN") if r["action"] == "SUPERVISOR_REQUEST_STALE"]
        assert len(stale) == 1


class TestDeclineAndCancel:
    def test_decline_requires_reason(self, engine, people):
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo")

        with pytest.raises(ValidationError):
            engine.assignment.decline_supervisor_request(people["supervisor"], req["id"], " ")

    def test_decline_once(self, engine, people):
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo")
        engine.assignment.decline_supervisor_request(people["supervisor"], req["id"], "Full this term")

        with pytest.raises(ConflictError, match="already been processed"):
            engine.assignment.decline_supervisor_request(people["supervisor"], req["id"], "again")
        assert engine.store.requests.get(req["id"])["decline_reason"] == "Full this term"

    def test_cancel_own_request_only(self, engine, people):
        req = engine.assignment.request_supervisor(people["student"], "supervisor-demo")

        with pytest.raises(AuthorizationError):
            engine.assignment.cancel_supervisor_request(people["student2"], req["id"])
        assert engine.assignment.cancel_supervisor_request(people["student"], req["id"])["request"]["status"] == "cancelled"


class TestListing:
    def test_list_with_stats(self, engine, people):
        # Arrange
        a = engine.assignment.request_supervisor(people["student"], "supervisor-demo")
        engine.assignment.request_supervisor(people["student2"], "supervisor-demo")
        engine.assignment.decline_supervisor_request(people["supervisor"], a["id"], "No capacity")

        # Act
        result = engine.assignment.list_requests(supervisor_id="supervisor-demo", status="pending")

        # Assert
        assert [r["student_id"] for r in result["requests"]] == ["student2"]
        assert result["stats"]["declined"] == 1
        assert result["stats"]["total"] == 2

    def test_available_supervisors_in_faculty(self, engine, people):
        ids = [s["id"] for s in engine.assignment.available_supervisors("student-demo")]

        assert set(ids) == {"supervisor-demo", "supervisor2", "supervisor_electrical"}
