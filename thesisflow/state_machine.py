"""
Thesis status state machine and review-iteration bookkeeping.

    submitted -> with_consultant | with_supervisor | under_review -> evaluated
    any active review state -> revisions_requested -> (re-assignment / re-submission)

The thesis record owns `status`, `review_iterations`, `current_iteration` and
`total_review_count`. `review_iterations[i]["iteration"] == i + 1` always holds;
iterations are appended or updated in place, never removed.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from thesisflow.context import Actor, WorkflowContext
from thesisflow.errors import (
    AuthorizationError, ConflictError, PrecheckFailedError, PreconditionError, ValidationError,
)
from thesisflow.repo import now_iso
from thesisflow.rules import (
    FEEDBACK_FIELD, HOD_PATH_FIELDS, DEAN_PATH_FIELDS, REVIEW_FIELD, REVIEWING_ROLES, SIGNED_PATH_FIELD,
    THESIS_ROLE_FIELD, UNSIGNED_PATH_FIELD, REVIEW_ENTRY_STATUSES,
    ReviewStatus, Role, ThesisStatus, as_reviewing_role, is_active,
    status_after_approval, status_after_retraction, status_for_team,
)


def current_iteration_entry(thesis: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    iters = thesis.get("review_iterations") or []
    idx = int(thesis.get("current_iteration") or 0)
    if idx < 1 or idx > len(iters):
        return None
    return iters[idx - 1]


def _replace_current(thesis: Dict[str, Any], entry: Dict[str, Any]) -> List[Dict[str, Any]]:
    iters = [dict(x) for x in (thesis.get("review_iterations") or [])]
    iters[int(thesis["current_iteration"]) - 1] = entry
    return iters


class ThesisStateMachine:
    def __init__(self, ctx: WorkflowContext, signing, plagiarism):
        self.ctx = ctx
        self.signing = signing
        self.plagiarism = plagiarism

    # ------------------------------------------------------------------
    # Entering review
    # ------------------------------------------------------------------
    def enter_review(self, thesis_id: str) -> Dict[str, Any]:
        """
        Re-derive status from the current team when the thesis waits for review
        (submitted / revisions_requested). The first entry creates iteration 1;
        later entries only change the status.
        """
        thesis = self.ctx.thesis(thesis_id)
        if thesis.get("status") not in {s.value for s in REVIEW_ENTRY_STATUSES}:
            return thesis
        derived = status_for_team(thesis.get("assigned_supervisor"),
                                  thesis.get("assigned_consultant"),
                                  thesis.get("assigned_reviewer"))
        if derived is None:
            return thesis
        fields: Dict[str, Any] = {"status": derived.value}
        if not thesis.get("review_iterations"):
            fields.update({
                "review_iterations": [{"iteration": 1, "status": ThesisStatus.UNDER_REVIEW.value}],
                "current_iteration": 1,
                "total_review_count": 1,
            })
        return self.ctx.set_thesis_fields(thesis, fields)

    def start_next_iteration(self, thesis_id: str, *, actor: str = "system") -> Dict[str, Any]:
        """
        Re-submission after revisions: close the current iteration, open the next one,
        send every assigned staff member's copy back to `assigned_theses`, and drop
        the previous round's role documents.
        """
        thesis = self.ctx.thesis(thesis_id)
        iters = [dict(x) for x in (thesis.get("review_iterations") or [])]
        if iters:
            iters[int(thesis.get("current_iteration") or len(iters)) - 1]["status"] = \
                ThesisStatus.REVISIONS_REQUESTED.value
        iters.append({"iteration": len(iters) + 1, "status": ThesisStatus.UNDER_REVIEW.value})

        derived = status_for_team(thesis.get("assigned_supervisor"),
                                  thesis.get("assigned_consultant"),
                                  thesis.get("assigned_reviewer"))
        fields: Dict[str, Any] = {
            "review_iterations": iters,
            "current_iteration": len(iters),
            "total_review_count": int(thesis.get("total_review_count") or 0) + 1,
            "status": (derived or ThesisStatus.SUBMITTED).value,
            "assessments": None,
        }
        stale = []
        for role in REVIEWING_ROLES:
            for field in (UNSIGNED_PATH_FIELD[role], SIGNED_PATH_FIELD[role]):
                if thesis.get(field):
                    stale.append(thesis[field])
                    fields[field] = None
        updated = self.ctx.set_thesis_fields(thesis, fields)

        for role in REVIEWING_ROLES:
            staff_id = thesis.get(THESIS_ROLE_FIELD[role])
            if staff_id:
                self.ctx.move_member(staff_id, "reviewed_theses", "assigned_theses", thesis_id)
        self.signing.discard(stale, thesis_id=thesis_id, actor=actor, reason="superseded_by_resubmission")
        return updated

    # ------------------------------------------------------------------
    # Role review submission
    # ------------------------------------------------------------------
    def _check_reviewer(self, actor: Actor, role: Role, thesis: Dict[str, Any], action: str) -> None:
        holder = thesis.get(THESIS_ROLE_FIELD[role])
        if actor.is_admin and action == "re_review":
            return
        if actor.role is not role or actor.id != holder:
            self.ctx.audit.security(actor.id, f"NOT_ASSIGNED:{action}",
                                    f"{role.value} review on {thesis['id']}",
                                    role=actor.role.value, extra={"thesis_id": thesis["id"], "holder": holder})
            raise AuthorizationError(f"You are not the assigned {role.value} for this thesis",
                                     {"role": role.value, "thesis_id": thesis["id"]})

    def _require_active(self, thesis: Dict[str, Any]) -> Dict[str, Any]:
        status = thesis.get("status")
        if status == ThesisStatus.EVALUATED.value:
            raise ConflictError("Thesis is already evaluated", {"status": status})
        if not is_active(status):
            action = "await_resubmission" if status == ThesisStatus.REVISIONS_REQUESTED.value else "assign_team"
            raise PrecheckFailedError("Thesis is not in an active review state",
                                      {"status": status}, required_action=action)
        entry = current_iteration_entry(thesis)
        if entry is None:
            raise PrecheckFailedError("Review has not started for this thesis",
                                      {"current_iteration": thesis.get("current_iteration")},
                                      required_action="assign_team")
        return entry

    def _require_student_signature(self, thesis: Dict[str, Any]) -> None:
        has_file = self.ctx.artifacts.exists(thesis.get("thesis_file"))
        signed = bool(thesis.get("student_signed"))
        if has_file and signed:
            return
        raise PreconditionError("Student has not counter-signed the current submission",
                                {"has_submission": has_file, "student_signed": signed},
                                required_action="await_student_signature")

    def submit_role_review(self, actor: Actor, role, thesis_id: str, *,
                           comments: Optional[str] = None, assessment: Any = None) -> Dict[str, Any]:
        """
        comments without assessment -> revision request
        assessment present          -> final approval (unsigned document generated)
        Supervisor submissions must first clear the plagiarism gate and the student
        counter-signature; with a signed consultant approval they take the
        signing-only path (comments optional) and re-file the consultant's signed document.
        """
        role = as_reviewing_role(role)
        comments = (comments or "").strip() or None
        thesis = self.ctx.thesis(thesis_id)
        self._check_reviewer(actor, role, thesis, "submit_review")
        entry = self._require_active(thesis)
        if entry.get(REVIEW_FIELD[role]):
            raise ConflictError(f"{role.value} review already submitted for iteration {entry['iteration']}",
                                {"iteration": entry["iteration"],
                                 "review_status": entry[REVIEW_FIELD[role]].get("status"),
                                 "required_action": "re_review"})

        signing_only = False
        if role is Role.SUPERVISOR:
            self.plagiarism.require_cleared(thesis)
            self._require_student_signature(thesis)
            consultant_review = entry.get(REVIEW_FIELD[Role.CONSULTANT]) or {}
            if thesis.get("assigned_consultant") and consultant_review.get("is_final_approval"):
                if not self.ctx.artifacts.exists(thesis.get(SIGNED_PATH_FIELD[Role.CONSULTANT])):
                    raise PrecheckFailedError("Consultant approval has not been signed yet",
                                              {"consultant_signed": False},
                                              required_action="await_consultant_signature")
                signing_only = True
        if not signing_only and comments is None and assessment is None:
            raise ValidationError("Either comments or an assessment is required",
                                  {"comments": None, "assessment": None})

        if signing_only:
            return self._approve(actor, role, thesis, entry, comments or
                                 "Thesis approved by supervisor after consultant review",
                                 assessment, signing_only=True)
        if assessment is None:
            return self._request_revisions(actor, role, thesis, entry, comments)
        return self._approve(actor, role, thesis, entry, comments or f"Thesis approved by {role.value}",
                             assessment, signing_only=False)

    def _request_revisions(self, actor: Actor, role: Role, thesis: Dict[str, Any],
                           entry: Dict[str, Any], comments: str) -> Dict[str, Any]:
        review = {
            "comments": comments,
            "submitted_date": now_iso(),
            "status": ReviewStatus.REVISIONS_REQUESTED.value,
            "is_final_approval": False,
            "reviewed_by": actor.id,
        }
        with self.ctx.oplog.operation("submit_role_review", actor=actor.id, thesis_id=thesis["id"],
                                      student_id=thesis["student"], role=role.value) as op:
            op.step("record_review")
            updated = self.ctx.set_thesis_fields(thesis, {
                "review_iterations": _replace_current(thesis, dict(entry, **{REVIEW_FIELD[role]: review})),
                "status": ThesisStatus.REVISIONS_REQUESTED.value,
            })
            op.step("student_feedback")
            self._write_feedback(thesis, role, comments, ReviewStatus.REVISIONS_REQUESTED)
            op.step("staff_stats")
            self._bump_stats(actor.id, approved=False)

        self.ctx.audit.log("REVIEW_REVISIONS", actor.id, f"{thesis['id']} iteration={entry['iteration']}",
                           role=role.value, extra={"thesis_id": thesis["id"], "operation_id": op.id})
        self.ctx.notifier.emit("review_submitted",
                               {"thesis": thesis["id"], "role": role.value, "outcome": "revisions_requested"},
                               level="warn", topic="review", actor=actor.id, audience="student",
                               correlation_id=op.id)
        return self._result(updated, role, "revisions_requested", None, False)

    def _approve(self, actor: Actor, role: Role, thesis: Dict[str, Any], entry: Dict[str, Any],
                 comments: str, assessment: Any, *, signing_only: bool) -> Dict[str, Any]:
        with self.ctx.oplog.operation("submit_role_review", actor=actor.id, thesis_id=thesis["id"],
                                      student_id=thesis["student"], role=role.value) as op:
            if signing_only:
                op.step("refile_consultant_signed")
                handle = self.signing.refile_consultant_signed(thesis)
            else:
                op.step("generate_unsigned")
                handle = self.signing.issue_unsigned(thesis, role, actor, assessment=assessment,
                                                     comments=comments)
            review = {
                "comments": comments,
                "submitted_date": now_iso(),
                "status": ReviewStatus.APPROVED.value,
                "is_final_approval": True,
                "reviewed_by": actor.id,
                "signing_only": signing_only,
            }
            assessments = dict(thesis.get("assessments") or {})
            if assessment is not None:
                assessments[role.value] = assessment
            op.step("record_review")
            updated = self.ctx.set_thesis_fields(thesis, {
                "review_iterations": _replace_current(thesis, dict(entry, **{REVIEW_FIELD[role]: review})),
                UNSIGNED_PATH_FIELD[role]: handle,
                "assessments": assessments or None,
                "status": status_after_approval(role, thesis).value,
            })
            op.step("student_feedback")
            self._write_feedback(thesis, role, comments, ReviewStatus.APPROVED, is_signed=signing_only)
            op.step("staff_stats")
            self._bump_stats(actor.id, approved=True)
            op.step("move_to_reviewed")
            self.ctx.move_member(actor.id, "assigned_theses", "reviewed_theses", thesis["id"])

        self.ctx.audit.log("REVIEW_APPROVED", actor.id,
                           f"{thesis['id']} iteration={entry['iteration']} signing_only={signing_only}",
                           role=role.value, extra={"thesis_id": thesis["id"], "operation_id": op.id})
        self.ctx.notifier.emit("review_submitted",
                               {"thesis": thesis["id"], "role": role.value, "outcome": "approved"},
                               level="success", topic="review", actor=actor.id, audience="student",
                               correlation_id=op.id)
        return self._result(updated, role, "approved", handle, signing_only)

    # ------------------------------------------------------------------
    # Retraction
    # ------------------------------------------------------------------
    def re_review(self, actor: Actor, role, thesis_id: str) -> Dict[str, Any]:
        """
        Retract `role`'s review in the current iteration: drop its documents, clear the
        review, send the thesis back to the member's `assigned_theses` and revert the
        status. `total_review_count` does not change.

        A supervisor approval taken on the signing-only path re-filed the consultant's
        signed document, so retracting the consultant's review retracts it as well.
        """
        role = as_reviewing_role(role)
        thesis = self.ctx.thesis(thesis_id)
        self._check_reviewer(actor, role, thesis, "re_review")
        countersigned = [f for f in HOD_PATH_FIELDS + DEAN_PATH_FIELDS if thesis.get(f)]
        if countersigned or thesis.get("status") == ThesisStatus.EVALUATED.value:
            raise ConflictError("Thesis has already been countersigned or evaluated",
                                {"status": thesis.get("status"), "countersigned": countersigned})
        entry = current_iteration_entry(thesis)
        if entry is None or not entry.get(REVIEW_FIELD[role]):
            raise ConflictError(f"No {role.value} review to retract in the current iteration",
                                {"current_iteration": thesis.get("current_iteration")})

        roles = [role]
        if role is Role.CONSULTANT and (entry.get(REVIEW_FIELD[Role.SUPERVISOR]) or {}).get("signing_only"):
            roles.append(Role.SUPERVISOR)
        handles = [thesis.get(f) for r in roles for f in (UNSIGNED_PATH_FIELD[r], SIGNED_PATH_FIELD[r])]
        with self.ctx.oplog.operation("re_review", actor=actor.id, thesis_id=thesis_id,
                                      student_id=thesis["student"], role=role.value) as op:
            op.step("delete_artifacts")
            for handle in handles:
                self.ctx.artifacts.delete(handle)
            op.step("reset_review")
            cleared = dict(entry)
            assessments = dict(thesis.get("assessments") or {})
            fields: Dict[str, Any] = {}
            for r in roles:
                cleared.pop(REVIEW_FIELD[r], None)
                assessments.pop(r.value, None)
                fields[UNSIGNED_PATH_FIELD[r]] = None
                fields[SIGNED_PATH_FIELD[r]] = None
            fields.update({
                "review_iterations": _replace_current(thesis, cleared),
                "assessments": assessments or None,
                "status": status_after_retraction(role).value,
            })
            updated = self.ctx.set_thesis_fields(thesis, fields)
            op.step("move_to_assigned")
            for r in roles:
                staff_id = thesis.get(THESIS_ROLE_FIELD[r])
                if staff_id:
                    self.ctx.move_member(staff_id, "reviewed_theses", "assigned_theses", thesis_id)
            op.step("student_feedback")
            self.ctx.store.users.update(thesis["student"], {FEEDBACK_FIELD[r]: {
                "comments": None,
                "review_iteration": entry["iteration"],
                "status": ReviewStatus.PENDING.value,
                "is_signed": False,
                "last_review_date": now_iso(),
            } for r in roles})

        retracted = [r.value for r in roles]
        self.ctx.audit.log("RE_REVIEW", actor.id, f"{thesis_id} iteration={entry['iteration']} roles={retracted}",
                           role=role.value, extra={"thesis_id": thesis_id, "operation_id": op.id,
                                                   "retracted": retracted})
        self.ctx.notifier.emit("review_retracted",
                               {"thesis": thesis_id, "role": role.value, "retracted": retracted},
                               level="warn", topic="review", actor=actor.id, audience="student",
                               correlation_id=op.id)
        return self._result(updated, role, "retracted", None, False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _write_feedback(self, thesis: Dict[str, Any], role: Role, comments: str,
                        status: ReviewStatus, *, is_signed: bool = False) -> None:
        student = self.ctx.store.users.require(thesis["student"], "Student")
        self.ctx.store.users.update(student["id"], {
            FEEDBACK_FIELD[role]: {
                "comments": comments,
                "review_iteration": int(thesis.get("current_iteration") or 0),
                "status": status.value,
                "is_signed": is_signed,
                "last_review_date": now_iso(),
            },
            "total_review_attempts": int(student.get("total_review_attempts") or 0) + 1,
        })

    def _bump_stats(self, staff_id: str, *, approved: bool) -> None:
        staff = self.ctx.store.users.require(staff_id, "Staff member")
        stats = dict({"approvals": 0, "revision_requests": 0}, **(staff.get("review_stats") or {}))
        stats["approvals" if approved else "revision_requests"] += 1
        self.ctx.store.users.update(staff_id, {"review_stats": stats})

    @staticmethod
    def _result(thesis: Dict[str, Any], role: Role, outcome: str,
                handle: Optional[str], signing_only: bool) -> Dict[str, Any]:
        return {
            "thesis_id": thesis["id"],
            "role": role.value,
            "outcome": outcome,
            "status": thesis.get("status"),
            "current_iteration": thesis.get("current_iteration"),
            "total_review_count": thesis.get("total_review_count"),
            "unsigned_artifact": handle,
            "signing_only": signing_only,
        }
