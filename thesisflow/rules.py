from __future__ import annotations
from enum import Enum
from typing import Dict, Optional, Tuple
import os

# =========================
# Constants / Defaults
# =========================

# Similarity threshold used by the external checker. Display only: the engine
# trusts the stored is_approved flag and never re-derives it from the score.
PLAGIARISM_THRESHOLD = float(os.getenv("THESIS_PLAGIARISM_THRESHOLD", "15"))
PLAGIARISM_MAX_ATTEMPTS = int(os.getenv("THESIS_PLAGIARISM_MAX_ATTEMPTS", "3"))


# =========================
# Enumerations
# =========================
class Role(str, Enum):
    STUDENT = "student"
    CONSULTANT = "consultant"
    SUPERVISOR = "supervisor"
    REVIEWER = "reviewer"
    HEAD_OF_DEPARTMENT = "head_of_department"
    DEAN = "dean"
    ADMIN = "admin"


class ThesisStatus(str, Enum):
    NOT_SUBMITTED = "not_submitted"   # student mirror only
    SUBMITTED = "submitted"
    WITH_CONSULTANT = "with_consultant"
    WITH_SUPERVISOR = "with_supervisor"
    UNDER_REVIEW = "under_review"
    REVISIONS_REQUESTED = "revisions_requested"
    EVALUATED = "evaluated"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REVISIONS_REQUESTED = "revisions_requested"
    SIGNED = "signed"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class Tier(str, Enum):
    SUBMISSION = "submission"
    UNSIGNED = "unsigned"
    SIGNED = "signed"
    HOD = "hod"
    DEAN = "dean"


# Lowest to highest. Consulted by every authorization check.
ROLE_PRECEDENCE: Tuple[Role, ...] = (
    Role.STUDENT,
    Role.CONSULTANT,
    Role.SUPERVISOR,
    Role.REVIEWER,
    Role.HEAD_OF_DEPARTMENT,
    Role.DEAN,
    Role.ADMIN,
)

REVIEWING_ROLES: Tuple[Role, ...] = (Role.CONSULTANT, Role.SUPERVISOR, Role.REVIEWER)

ACTIVE_REVIEW_STATUSES = frozenset({
    ThesisStatus.WITH_CONSULTANT,
    ThesisStatus.WITH_SUPERVISOR,
    ThesisStatus.UNDER_REVIEW,
})
REVIEW_ENTRY_STATUSES = frozenset({ThesisStatus.SUBMITTED, ThesisStatus.REVISIONS_REQUESTED})


# =========================
# Role helpers
# =========================
def as_role(value) -> Role:
    """Coerce a stored string into a Role. Raises ValueError on unknown roles."""
    if isinstance(value, Role):
        return value
    return Role(str(value or "").strip().lower())


def role_rank(role) -> int:
    return ROLE_PRECEDENCE.index(as_role(role))


def outranks_or_equal(actor_role, required_role) -> bool:
    """True when actor_role sits at or above required_role in ROLE_PRECEDENCE."""
    return role_rank(actor_role) >= role_rank(required_role)


def as_reviewing_role(value) -> Role:
    role = as_role(value)
    if role not in REVIEWING_ROLES:
        raise ValueError(f"{role.value} is not a reviewing role")
    return role


# Field names per reviewing role
STUDENT_ROLE_FIELD: Dict[Role, str] = {
    Role.SUPERVISOR: "supervisor",
    Role.CONSULTANT: "consultant",
    Role.REVIEWER: "reviewer",
}
THESIS_ROLE_FIELD: Dict[Role, str] = {
    Role.SUPERVISOR: "assigned_supervisor",
    Role.CONSULTANT: "assigned_consultant",
    Role.REVIEWER: "assigned_reviewer",
}
REVIEW_FIELD: Dict[Role, str] = {
    Role.SUPERVISOR: "supervisor_review",
    Role.CONSULTANT: "consultant_review",
    Role.REVIEWER: "reviewer_review",
}
FEEDBACK_FIELD: Dict[Role, str] = {
    Role.SUPERVISOR: "supervisor_feedback",
    Role.CONSULTANT: "consultant_feedback",
    Role.REVIEWER: "reviewer_feedback",
}
UNSIGNED_PATH_FIELD: Dict[Role, str] = {
    Role.SUPERVISOR: "review_pdf_supervisor",
    Role.CONSULTANT: "review_pdf_consultant",
    Role.REVIEWER: "review_pdf_reviewer",
}
SIGNED_PATH_FIELD: Dict[Role, str] = {
    Role.SUPERVISOR: "supervisor_signed_review_path",
    Role.CONSULTANT: "consultant_signed_review_path",
    Role.REVIEWER: "reviewer_signed_review_path",
}
HOD_PATH_FIELDS = ("hod_signed_supervisor_path", "hod_signed_reviewer_path")
DEAN_PATH_FIELDS = ("dean_signed_supervisor_path", "dean_signed_reviewer_path")

# Everything the Dean step supersedes
SUPERSEDED_BY_DEAN = (
    "supervisor_signed_review_path",
    "reviewer_signed_review_path",
    "hod_signed_supervisor_path",
    "hod_signed_reviewer_path",
    "review_pdf_consultant",
    "review_pdf_supervisor",
    "review_pdf_reviewer",
    "consultant_signed_review_path",
)


# =========================
# Status derivation
# =========================
def status_for_team(supervisor: Optional[str], consultant: Optional[str],
                    reviewer: Optional[str]) -> Optional[ThesisStatus]:
    """
    Derive the active review status from the current team:
      consultant + supervisor -> with_consultant
      supervisor only         -> with_supervisor
      reviewer only           -> under_review
    Returns None when nobody who can start a review is assigned.
    """
    if supervisor and consultant:
        return ThesisStatus.WITH_CONSULTANT
    if supervisor:
        return ThesisStatus.WITH_SUPERVISOR
    if reviewer:
        return ThesisStatus.UNDER_REVIEW
    return None


def status_after_retraction(role) -> ThesisStatus:
    """Status a thesis returns to when `role` retracts its approval."""
    return {
        Role.CONSULTANT: ThesisStatus.WITH_CONSULTANT,
        Role.SUPERVISOR: ThesisStatus.WITH_SUPERVISOR,
        Role.REVIEWER: ThesisStatus.UNDER_REVIEW,
    }[as_reviewing_role(role)]


def status_after_approval(role, thesis: dict) -> ThesisStatus:
    """
    Where the thesis goes after `role` gives final approval:
    - consultant hands over to the supervisor (or straight to review when none)
    - supervisor hands over to the reviewer
    - reviewer stays under review until the signing chain completes
    """
    role = as_reviewing_role(role)
    if role is Role.CONSULTANT and thesis.get("assigned_supervisor"):
        return ThesisStatus.WITH_SUPERVISOR
    return ThesisStatus.UNDER_REVIEW


def is_active(status) -> bool:
    try:
        return ThesisStatus(status) in ACTIVE_REVIEW_STATUSES
    except ValueError:
        return False


def required_similarity_action(score: Optional[float]) -> str:
    if score is None:
        return "run_plagiarism_check"
    return f"reduce_similarity_to_{PLAGIARISM_THRESHOLD:g}_percent_or_less"
