"""
Integration tests for the HTTP API.

Runs the FastAPI app in-process against a per-test engine, authenticating
with real bearer tokens.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_engine
from thesisflow.plagiarism import PlagiarismResult
from thesisflow.security import issue_token


@pytest.fixture
def client(engine, people, monkeypatch):
    monkeypatch.setenv("THESIS_JWT_SECRET", "api-test-secret-with-enough-length!!")
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth(engine, client):
    """auth("supervisor-demo") -> Authorization header for that user."""
    def _auth(user_id):
        return {"Authorization": f"Bearer {issue_token(engine.store.users.get(user_id))}"}
    return _auth


def _pdf_part(path, field="file"):
    return {field: (path.name, path.read_bytes(), "application/pdf")}


def _multipart_names(response):
    return [line.split('name="')[1].split('"')[0]
            for line in response.text.splitlines() if line.startswith("Content-Disposition")]


class TestAuth:
    def test_health_is_public(self, client):
        body = client.get("/health").json()

        assert body["ok"] is True
        assert body["users"]["student"] == 2
        assert body["incomplete_operations"] == 0

    def test_missing_token(self, client):
        assert client.post("/thesis/sign").status_code == 401

    def test_bad_token(self, client):
        r = client.post("/thesis/sign", headers={"Authorization": "Bearer not-a-jwt"})

        assert r.status_code == 403
        assert r.json()["code"] == "forbidden"

    def test_admin_only_routes(self, client, auth):
        assert client.get("/admin/reconcile", headers=auth("student-demo")).status_code == 403
        assert client.get("/admin/reconcile", headers=auth("admin-demo")).json() == {"count": 0, "issues": []}


class TestWorkflowOverHttp:
    """Walk one thesis from team assignment to the Dean's signature."""

    def test_full_chain(self, engine, client, auth, make_pdf):
        # team + submission
        r = client.post("/students/student-demo/team", headers=auth("head_of_department-demo"),
                        json={"supervisor_id": "supervisor-demo", "reviewer_id": "reviewer-demo"})
        assert r.status_code == 200, r.text
        assert r.json()["assignments"]["supervisor"] == "assigned"

        r = client.post("/thesis", headers=auth("student-demo"), data={"title": "Consistency repair"},
                        files=_pdf_part(make_pdf("thesis")))
        assert r.status_code == 200, r.text
        tid = r.json()["id"]
        assert r.json()["status"] == "with_supervisor"

        assert client.post("/thesis/sign", headers=auth("student-demo")).status_code == 200
        r = client.post(f"/theses/{tid}/plagiarism", headers=auth("admin-demo"),
                        json={"is_approved": True, "similarity_score": 7.5, "checked_file_url": "checked/x.pdf"})
        assert r.status_code == 200, r.text

        # supervisor
        r = client.post(f"/theses/{tid}/reviews/supervisor", headers=auth("supervisor-demo"),
                        json={"assessment": {"grade": "A"}})
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "under_review"
        r = client.get(f"/theses/{tid}/reviews/supervisor/unsigned", headers=auth("supervisor-demo"))
        assert r.status_code == 200
        assert r.headers["content-type"] == "application/pdf"
        assert r.content.startswith(b"%PDF")
        r = client.post(f"/theses/{tid}/signatures/party/supervisor", headers=auth("supervisor-demo"),
                        files=_pdf_part(make_pdf("sup_signed")))
        assert r.status_code == 200, r.text

        # reviewer
        client.post(f"/theses/{tid}/reviews/reviewer", headers=auth("reviewer-demo"),
                    json={"comments": "Ready", "assessment": {"score": 18}})
        r = client.post(f"/theses/{tid}/signatures/party/reviewer", headers=auth("reviewer-demo"),
                        files=_pdf_part(make_pdf("rev_signed")))
        assert r.status_code == 200, r.text

        # HOD
        r = client.get(f"/theses/{tid}/signatures/hod/readiness", headers=auth("head_of_department-demo"))
        assert r.json()["ready"] is True
        r = client.get(f"/theses/{tid}/signatures/hod/pending", headers=auth("head_of_department-demo"))
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("multipart/mixed; boundary=thesisflow-")
        assert _multipart_names(r) == ["supervisor", "reviewer"]
        r = client.post(f"/theses/{tid}/signatures/hod", headers=auth("head_of_department-demo"),
                        files={**_pdf_part(make_pdf("hod_sup"), "supervisor_file"),
                               **_pdf_part(make_pdf("hod_rev"), "reviewer_file")})
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "evaluated"

        # Dean
        r = client.post(f"/theses/{tid}/signatures/dean", headers=auth("dean-demo"),
                        files={**_pdf_part(make_pdf("dean_sup"), "supervisor_file"),
                               **_pdf_part(make_pdf("dean_rev"), "reviewer_file")})
        assert r.status_code == 200, r.text
        assert r.json()["superseded_removed"] == 6

        r = client.get(f"/theses/{tid}/final", headers=auth("student-demo"))
        assert r.status_code == 200
        assert _multipart_names(r) == ["supervisor", "reviewer"]
        assert engine.reconciler.scan() == []


class TestErrorMapping:
    """Workflow errors come back as JSON with a stable code and details."""

    @pytest.fixture
    def tid(self, engine, people, flow):
        flow.assign(supervisor="supervisor", reviewer="reviewer")
        return flow.submit()["id"]

    def test_precheck_failed(self, client, auth, tid):
        r = client.post(f"/theses/{tid}/reviews/supervisor", headers=auth("supervisor-demo"),
                        json={"comments": "fix intro"})

        assert r.status_code == 400
        assert r.json()["code"] == "precheck_failed"
        assert r.json()["details"]["required_action"] == "run_plagiarism_check"

    def test_partial_pair(self, client, auth, tid, make_pdf):
        r = client.post(f"/theses/{tid}/signatures/hod", headers=auth("head_of_department-demo"),
                        files=_pdf_part(make_pdf("sup"), "supervisor_file"))

        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"
        assert r.json()["details"]["missing"] == ["reviewer_file"]

    def test_forbidden_scope(self, client, auth):
        r = client.post("/students/student-demo/team", headers=auth("hod_science"),
                        json={"supervisor_id": "supervisor-demo"})

        assert r.status_code == 403

    def test_conflict(self, engine, people, client, auth, tid):
        engine.theses.sign_submission(people["student"])

        r = client.post("/thesis/sign", headers=auth("student-demo"))

        assert r.status_code == 409
        assert r.json()["code"] == "conflict"

    def test_not_found(self, client, auth):
        r = client.get("/theses/nope/plagiarism", headers=auth("student-demo"))

        assert r.status_code == 404

    def test_unknown_role_in_path(self, client, auth, tid):
        r = client.post(f"/theses/{tid}/reviews/dean", headers=auth("dean-demo"), json={"comments": "x"})

        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"

    def test_plagiarism_gate_over_http(self, engine, client, auth, tid):
        engine.plagiarism.record_result(tid, PlagiarismResult(False, 33.0, "checked/x.pdf"))

        body = client.get(f"/theses/{tid}/plagiarism", headers=auth("supervisor-demo")).json()

        assert body["is_approved"] is False
        assert body["similarity_score"] == 33.0


class TestRequestsOverHttp:
    def test_request_accept_roundtrip(self, client, auth):
        r = client.post("/requests", headers=auth("student-demo"), json={"supervisor_id": "supervisor-demo"})
        assert r.status_code == 201
        rid = r.json()["id"]

        listed = client.get("/requests", headers=auth("supervisor-demo")).json()
        assert [x["id"] for x in listed["requests"]] == [rid]

        r = client.post(f"/requests/{rid}/accept", headers=auth("supervisor-demo"))
        assert r.status_code == 200, r.text
        assert r.json()["request"]["status"] == "accepted"

    def test_decline_reason_validated(self, client, auth):
        rid = client.post("/requests", headers=auth("student-demo"),
                          json={"supervisor_id": "supervisor-demo"}).json()["id"]

        r = client.post(f"/requests/{rid}/decline", headers=auth("supervisor-demo"), json={"reason": "  "})

        assert r.status_code == 422

