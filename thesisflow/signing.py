"""
Signing chain for the two review documents of a thesis.

Each side (supervisor, reviewer) moves through
    unsigned -> party-signed -> HOD-signed -> Dean-signed
and every countersignature takes both sides in one call. The thesis record is
updated only after the artifact store accepted the files; the Dean step then
supersedes every earlier document.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import tempfile

from thesisflow.context import Actor, WorkflowContext
from thesisflow.errors import (
    AuthorizationError, ConflictError, NotFoundError, PrecheckFailedError, StorageError, ValidationError,
)
from thesisflow.files import check_pdf
from thesisflow.repo import now_iso
from thesisflow.rules import (
    DEAN_PATH_FIELDS, FEEDBACK_FIELD, HOD_PATH_FIELDS, REVIEW_FIELD, SIGNED_PATH_FIELD, SUPERSEDED_BY_DEAN,
    THESIS_ROLE_FIELD, UNSIGNED_PATH_FIELD,
    ReviewStatus, Role, ThesisStatus, Tier, as_reviewing_role, is_active,
)

Renderer = Callable[..., Path]


def _iteration_review(thesis: Dict[str, Any], role: Role) -> Dict[str, Any]:
    iters = thesis.get("review_iterations") or []
    idx = int(thesis.get("current_iteration") or 0)
    if idx < 1 or idx > len(iters):
        return {}
    return iters[idx - 1].get(REVIEW_FIELD[role]) or {}


class SigningChainCoordinator:
    def __init__(self, ctx: WorkflowContext, renderer: Renderer):
        self.ctx = ctx
        self.renderer = renderer

    # ------------------------------------------------------------------
    # Unsigned documents (called by the state machine on final approval)
    # ------------------------------------------------------------------
    def issue_unsigned(self, thesis: Dict[str, Any], role, reviewer: Actor, *,
                       assessment: Any = None, comments: Optional[str] = None) -> str:
        role = as_reviewing_role(role)
        student = self.ctx.store.users.require(thesis["student"], "Student")
        staff = self.ctx.store.users.get(reviewer.id) or {"id": reviewer.id}
        with tempfile.TemporaryDirectory(prefix="thesisflow_") as tmp:
            out = Path(tmp) / f"review_{role.value}.pdf"
            try:
                self.renderer(out, thesis=thesis, student=student, staff=staff, role=role.value,
                              assessment=assessment, comments=comments)
            except OSError as ex:
                raise StorageError("failed to render review document",
                                   {"thesis_id": thesis["id"], "role": role.value, "error": str(ex)}) from ex
            return self.ctx.artifacts.put(thesis["id"], role, Tier.UNSIGNED, out)

    def refile_consultant_signed(self, thesis: Dict[str, Any]) -> str:
        """The supervisor signs the consultant's already-signed document instead of a fresh one."""
        source = thesis.get(SIGNED_PATH_FIELD[Role.CONSULTANT])
        return self.ctx.artifacts.copy(source, thesis["id"], Role.SUPERVISOR, Tier.UNSIGNED)

    def discard(self, handles: Iterable[Optional[str]], *, thesis_id: str, actor: str, reason: str) -> List[str]:
        """Best-effort removal of superseded documents. Failures are logged, never raised."""
        removed = []
        for handle in handles:
            if not handle:
                continue
            try:
                if self.ctx.artifacts.delete(handle):
                    removed.append(handle)
            except StorageError as ex:
                self.ctx.audit.warn(actor, "CLEANUP_FAILED", f"{thesis_id}: {handle}",
                                    extra={"thesis_id": thesis_id, "handle": handle,
                                           "reason": reason, "error": ex.details.get("error")})
        return removed

    # ------------------------------------------------------------------
    # Readiness (structured sub-conditions for clients)
    # ------------------------------------------------------------------
    def hod_readiness(self, thesis: Dict[str, Any]) -> Dict[str, bool]:
        return {
            "supervisor_signed": _iteration_review(thesis, Role.SUPERVISOR).get("status") == ReviewStatus.SIGNED.value,
            "reviewer_signed": _iteration_review(thesis, Role.REVIEWER).get("status") == ReviewStatus.SIGNED.value,
            "thesis_not_evaluated": thesis.get("status") != ThesisStatus.EVALUATED.value,
            "supervisor_file_exists": self.ctx.artifacts.exists(thesis.get(SIGNED_PATH_FIELD[Role.SUPERVISOR])),
            "reviewer_file_exists": self.ctx.artifacts.exists(thesis.get(SIGNED_PATH_FIELD[Role.REVIEWER])),
        }

    def dean_readiness(self, thesis: Dict[str, Any]) -> Dict[str, bool]:
        return {
            "hod_signed": bool(thesis.get("hod_signed_date")),
            "thesis_evaluated": thesis.get("status") == ThesisStatus.EVALUATED.value,
            "hod_supervisor_file_exists": self.ctx.artifacts.exists(thesis.get(HOD_PATH_FIELDS[0])),
            "hod_reviewer_file_exists": self.ctx.artifacts.exists(thesis.get(HOD_PATH_FIELDS[1])),
        }

    def readiness(self, tier, thesis_id: str) -> Dict[str, Any]:
        thesis = self.ctx.thesis(thesis_id)
        tier = Tier(tier)
        if tier is Tier.HOD:
            checks = self.hod_readiness(thesis)
        elif tier is Tier.DEAN:
            checks = self.dean_readiness(thesis)
        else:
            raise ValidationError("readiness is defined for the hod and dean tiers", {"tier": tier.value})
        return {"tier": tier.value, "ready": all(checks.values()), "checks": checks}

    # ------------------------------------------------------------------
    # Party signature
    # ------------------------------------------------------------------
    def upload_party_signed(self, actor: Actor, role, thesis_id: str, file: Optional[Path]) -> Dict[str, Any]:
        role = as_reviewing_role(role)
        if file is None:
            raise ValidationError("Signed file is required", {"missing": ["file"]})
        thesis = self.ctx.thesis(thesis_id)
        holder = thesis.get(THESIS_ROLE_FIELD[role])
        if actor.role is not role or actor.id != holder:
            self.ctx.audit.security(actor.id, "NOT_ASSIGNED:party_sign", f"{role.value} on {thesis_id}",
                                    role=actor.role.value, extra={"thesis_id": thesis_id})
            raise AuthorizationError(f"You are not the assigned {role.value} for this thesis",
                                     {"role": role.value, "thesis_id": thesis_id})
        check_pdf(file, label="file")
        if thesis.get(SIGNED_PATH_FIELD[role]):
            raise ConflictError(f"{role.value} review is already signed",
                                {"role": role.value, "required_action": "re_review"})
        checks = {
            "unsigned_exists": self.ctx.artifacts.exists(thesis.get(UNSIGNED_PATH_FIELD[role])),
            "active_review_state": is_active(thesis.get("status")),
        }
        if not all(checks.values()):
            raise PrecheckFailedError("Review document is not ready for signing",
                                      dict(checks, status=thesis.get("status")),
                                      required_action="submit_final_approval" if not checks["unsigned_exists"]
                                      else "await_active_review")

        fields: Dict[str, Any] = {}
        if role is Role.SUPERVISOR:
            fields["status"] = ThesisStatus.UNDER_REVIEW.value
        elif role is Role.REVIEWER and not thesis.get("assigned_supervisor"):
            # no supervisor side to countersign: the reviewer's signature is final
            fields["status"] = ThesisStatus.EVALUATED.value

        with self.ctx.oplog.operation("party_sign", actor=actor.id, thesis_id=thesis_id,
                                      student_id=thesis["student"], role=role.value) as op:
            op.step("store_signed")
            handle = self.ctx.artifacts.put(thesis_id, role, Tier.SIGNED, file)
            op.step("record_signature")
            iters = [dict(x) for x in thesis.get("review_iterations") or []]
            entry = iters[int(thesis["current_iteration"]) - 1]
            entry[REVIEW_FIELD[role]] = dict(entry.get(REVIEW_FIELD[role]) or {},
                                             status=ReviewStatus.SIGNED.value, signed_date=now_iso())
            fields.update({"review_iterations": iters, SIGNED_PATH_FIELD[role]: handle})
            updated = self.ctx.set_thesis_fields(thesis, fields)
            op.step("student_feedback")
            student = self.ctx.store.users.require(thesis["student"], "Student")
            feedback = dict(student.get(FEEDBACK_FIELD[role]) or {}, is_signed=True,
                            status=ReviewStatus.SIGNED.value)
            self.ctx.store.users.update(student["id"], {FEEDBACK_FIELD[role]: feedback})

        self.ctx.audit.log("PARTY_SIGNED", actor.id, f"{thesis_id} {role.value}", role=role.value,
                           extra={"thesis_id": thesis_id, "handle": handle, "operation_id": op.id})
        self.ctx.notifier.emit("review_signed", {"thesis": thesis_id, "role": role.value,
                                                 "status": updated.get("status")},
                               level="success", topic="signing", actor=actor.id, audience="approver",
                               correlation_id=op.id)
        return {"thesis_id": thesis_id, "role": role.value, "handle": handle, "status": updated.get("status")}

    # ------------------------------------------------------------------
    # Institutional countersignatures
    # ------------------------------------------------------------------
    def _countersign_prechecks(self, actor: Actor, tier: Tier, thesis_id: str,
                               supervisor_file: Optional[Path], reviewer_file: Optional[Path]):
        allowed = {Tier.HOD: Role.HEAD_OF_DEPARTMENT, Tier.DEAN: Role.DEAN}[tier]
        if actor.role not in (allowed, Role.ADMIN):
            self.ctx.audit.security(actor.id, f"ROLE_DENIED:{tier.value}_sign", thesis_id, role=actor.role.value)
            raise AuthorizationError(f"Only the {allowed.value} can sign at this step",
                                     {"required_role": allowed.value, "role": actor.role.value})
        received = {"supervisor_file": supervisor_file is not None, "reviewer_file": reviewer_file is not None}
        missing = [name for name, ok in received.items() if not ok]
        if missing:
            raise ValidationError("Both supervisor and reviewer files are required",
                                  {"missing": missing, "received": received})
        thesis = self.ctx.thesis(thesis_id)
        student = self.ctx.student(thesis["student"])
        self.ctx.require_faculty_scope(actor, student, f"{tier.value}_sign")
        if (tier is Tier.HOD and actor.department and student.get("department")
                and actor.department != student.get("department")):
            raise AuthorizationError("Student is outside your department",
                                     {"actor_department": actor.department,
                                      "student_department": student.get("department")})
        check_pdf(supervisor_file, label="supervisor_file")
        check_pdf(reviewer_file, label="reviewer_file")
        return thesis

    def upload_hod_signed(self, actor: Actor, thesis_id: str, supervisor_file: Optional[Path],
                          reviewer_file: Optional[Path]) -> Dict[str, Any]:
        thesis = self._countersign_prechecks(actor, Tier.HOD, thesis_id, supervisor_file, reviewer_file)
        present = [f for f in HOD_PATH_FIELDS if thesis.get(f)]
        if present:
            raise ConflictError("Reviews are already signed by the head of department", {"present": present})
        checks = self.hod_readiness(thesis)
        if not all(checks.values()):
            raise PrecheckFailedError("Thesis is not ready for head of department signature", checks,
                                      required_action="await_party_signatures")

        with self.ctx.oplog.operation("hod_sign", actor=actor.id, thesis_id=thesis_id,
                                      student_id=thesis["student"]) as op:
            op.step("store_pair")
            sup_handle, rev_handle = self.ctx.artifacts.put_pair(thesis_id, Tier.HOD, supervisor_file, reviewer_file)
            op.step("record_signature")
            updated = self.ctx.set_thesis_fields(thesis, {
                HOD_PATH_FIELDS[0]: sup_handle,
                HOD_PATH_FIELDS[1]: rev_handle,
                "hod_signed_date": now_iso(),
                "hod_signed_by": actor.id,
                "status": ThesisStatus.EVALUATED.value,
            })

        self.ctx.audit.log("HOD_SIGNED", actor.id, thesis_id, role=actor.role.value,
                           extra={"thesis_id": thesis_id, "operation_id": op.id})
        self.ctx.notifier.emit("hod_signed", {"thesis": thesis_id}, level="success", topic="signing",
                               actor=actor.id, audience="approver", correlation_id=op.id)
        return {"thesis_id": thesis_id, "status": updated["status"],
                "hod_signed_date": updated["hod_signed_date"],
                "handles": {"supervisor": sup_handle, "reviewer": rev_handle}}

    def upload_dean_signed(self, actor: Actor, thesis_id: str, supervisor_file: Optional[Path],
                           reviewer_file: Optional[Path]) -> Dict[str, Any]:
        thesis = self._countersign_prechecks(actor, Tier.DEAN, thesis_id, supervisor_file, reviewer_file)
        present = [f for f in DEAN_PATH_FIELDS if thesis.get(f)]
        if present:
            raise ConflictError("Reviews are already signed by the dean", {"present": present})
        checks = self.dean_readiness(thesis)
        if not all(checks.values()):
            raise PrecheckFailedError("Thesis is not ready for dean signature", checks,
                                      required_action="await_hod_signature")

        superseded = [thesis[f] for f in SUPERSEDED_BY_DEAN if thesis.get(f)]
        with self.ctx.oplog.operation("dean_sign", actor=actor.id, thesis_id=thesis_id,
                                      student_id=thesis["student"]) as op:
            op.step("store_pair")
            sup_handle, rev_handle = self.ctx.artifacts.put_pair(thesis_id, Tier.DEAN, supervisor_file, reviewer_file)
            op.step("record_signature")
            fields: Dict[str, Any] = {f: None for f in SUPERSEDED_BY_DEAN}
            fields.update({
                DEAN_PATH_FIELDS[0]: sup_handle,
                DEAN_PATH_FIELDS[1]: rev_handle,
                "dean_signed_date": now_iso(),
                "dean_signed_by": actor.id,
            })
            updated = self.ctx.set_thesis_fields(thesis, fields)
            op.step("cleanup_superseded", count=len(superseded))
            removed = self.discard(superseded, thesis_id=thesis_id, actor=actor.id, reason="superseded_by_dean")

        self.ctx.audit.log("DEAN_SIGNED", actor.id, f"{thesis_id} removed={len(removed)}/{len(superseded)}",
                           role=actor.role.value, extra={"thesis_id": thesis_id, "operation_id": op.id})
        self.ctx.notifier.emit("dean_signed", {"thesis": thesis_id}, level="success", topic="signing",
                               actor=actor.id, audience="student", correlation_id=op.id)
        return {"thesis_id": thesis_id, "status": updated.get("status"),
                "dean_signed_date": updated["dean_signed_date"],
                "handles": {"supervisor": sup_handle, "reviewer": rev_handle},
                "superseded_removed": len(removed)}

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------
    def get_unsigned_artifact(self, role, thesis_id: str) -> Path:
        role = as_reviewing_role(role)
        thesis = self.ctx.thesis(thesis_id)
        handle = thesis.get(UNSIGNED_PATH_FIELD[role])
        if not self.ctx.artifacts.exists(handle):
            raise NotFoundError(f"No unsigned {role.value} review for this thesis",
                                {"role": role.value, "thesis_id": thesis_id})
        return self.ctx.artifacts.path(handle)

    def _pair(self, thesis: Dict[str, Any], fields: Tuple[str, str], what: str) -> Dict[str, Path]:
        exists = {side: self.ctx.artifacts.exists(thesis.get(f)) for side, f in zip(("supervisor", "reviewer"), fields)}
        if not all(exists.values()):
            raise NotFoundError(f"{what} are not available",
                                {"missing": [side for side, ok in exists.items() if not ok]})
        return {side: self.ctx.artifacts.path(thesis[f]) for side, f in zip(("supervisor", "reviewer"), fields)}

    def get_final_signed_artifacts(self, thesis_id: str) -> Dict[str, Path]:
        return self._pair(self.ctx.thesis(thesis_id), DEAN_PATH_FIELDS, "Final signed reviews")

    def get_pair_for_tier(self, tier, thesis_id: str) -> Dict[str, Path]:
        """The pair waiting for `tier`'s countersignature."""
        thesis = self.ctx.thesis(thesis_id)
        tier = Tier(tier)
        if tier is Tier.HOD:
            return self._pair(thesis, (SIGNED_PATH_FIELD[Role.SUPERVISOR], SIGNED_PATH_FIELD[Role.REVIEWER]),
                              "Party-signed reviews")
        if tier is Tier.DEAN:
            return self._pair(thesis, HOD_PATH_FIELDS, "Head of department signed reviews")
        raise ValidationError("pairs are defined for the hod and dean tiers", {"tier": tier.value})
