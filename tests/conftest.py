"""
Shared fixtures for thesisflow tests.

Every test gets its own engine over a throw-away data directory and artifact
root, one seeded user per role, and a handful of extra staff in other
faculties/departments for scope checks.
"""

import itertools
from pathlib import Path
from typing import Dict

import pytest

from thesisflow.context import Actor
from thesisflow.engine import Engine, build_engine, seed_demo
from thesisflow.plagiarism import PlagiarismResult
from thesisflow.rules import Role

PDF_BODY = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"

EXTRA_USERS = (
    ("student2", Role.STUDENT, "Engineering", "Computer"),
    ("supervisor2", Role.SUPERVISOR, "Engineering", "Computer"),
    ("supervisor_electrical", Role.SUPERVISOR, "Engineering", "Electrical"),
    ("supervisor_science", Role.SUPERVISOR, "Science", "Physics"),
    ("reviewer_science", Role.REVIEWER, "Science", "Physics"),
    ("hod_electrical", Role.HEAD_OF_DEPARTMENT, "Engineering", "Electrical"),
    ("hod_science", Role.HEAD_OF_DEPARTMENT, "Science", "Physics"),
)


def write_min_pdf(path: Path, marker: str = "") -> Path:
    """Minimal valid PDF (header + EOF). `marker` keeps contents (and handles) distinct."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(PDF_BODY + b"% " + marker.encode("utf-8") + b"\n%%EOF\n")
    return path


@pytest.fixture
def make_pdf(tmp_path):
    """Factory: make_pdf("name") -> path of a fresh, uniquely-content PDF."""
    counter = itertools.count()

    def _make(name: str = "doc") -> Path:
        n = next(counter)
        return write_min_pdf(tmp_path / "uploads" / f"{name}_{n}.pdf", f"{name}-{n}")

    return _make


@pytest.fixture
def engine(tmp_path) -> Engine:
    return build_engine(tmp_path / "data", tmp_path / "files")


@pytest.fixture
def people(engine) -> Dict[str, Actor]:
    """Role name (or EXTRA_USERS key) -> Actor. `hod` aliases the seeded head of department."""
    ids = seed_demo(engine)
    for uid, role, faculty, department in EXTRA_USERS:
        engine.create_user(role, uid.replace("_", " ").title(), faculty=faculty,
                           department=department, user_id=uid)
        ids[uid] = uid
    ids["hod"] = ids["head_of_department"]
    return {key: Actor.from_user(engine.store.users.get(uid)) for key, uid in ids.items()}


class WorkflowDriver:
    """Short-hands for walking a thesis through the workflow in tests."""

    def __init__(self, engine: Engine, people: Dict[str, Actor], make_pdf):
        self.engine = engine
        self.people = people
        self.make_pdf = make_pdf

    def assign(self, student: str = "student", *, by: str = "hod", **team: str):
        """assign(supervisor="supervisor", reviewer="reviewer") with people keys."""
        return self.engine.assignment.assign_team(
            self.people[by], self.people[student].id,
            **{f"{role}_id": self.people[key].id for role, key in team.items()})

    def submit(self, student: str = "student", title: str = "Consistency repair for document stores"):
        return self.engine.theses.submit_thesis(self.people[student], title, self.make_pdf("thesis"))

    def clear_gates(self, thesis_id: str, student: str = "student") -> None:
        """Student counter-signature plus a passing plagiarism result."""
        self.engine.theses.sign_submission(self.people[student])
        self.engine.plagiarism.record_result(thesis_id, PlagiarismResult(True, 8.0, f"checked/{thesis_id}.pdf"))

    def approve(self, role: str, thesis_id: str, who: str = None, comments: str = None):
        return self.engine.state_machine.submit_role_review(
            self.people[who or role], role, thesis_id, comments=comments, assessment={"grade": "A"})

    def sign(self, role: str, thesis_id: str, who: str = None):
        return self.engine.signing.upload_party_signed(self.people[who or role], role, thesis_id,
                                                       self.make_pdf(f"{role}_signed"))

    def ready_for_hod(self) -> str:
        """Supervisor + reviewer approved and party-signed. Returns the thesis id."""
        self.assign(supervisor="supervisor", reviewer="reviewer")
        tid = self.submit()["id"]
        self.clear_gates(tid)
        self.approve("supervisor", tid)
        self.sign("supervisor", tid)
        self.approve("reviewer", tid)
        self.sign("reviewer", tid)
        return tid

    def hod_sign(self, thesis_id: str, who: str = "hod"):
        return self.engine.signing.upload_hod_signed(self.people[who], thesis_id,
                                                     self.make_pdf("hod_sup"), self.make_pdf("hod_rev"))

    def dean_sign(self, thesis_id: str, who: str = "dean"):
        return self.engine.signing.upload_dean_signed(self.people[who], thesis_id,
                                                      self.make_pdf("dean_sup"), self.make_pdf("dean_rev"))


@pytest.fixture
def flow(engine, people, make_pdf) -> WorkflowDriver:
    return WorkflowDriver(engine, people, make_pdf)
