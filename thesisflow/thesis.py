# thesisflow/thesis.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional

from thesisflow.context import Actor, WorkflowContext
from thesisflow.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from thesisflow.files import check_pdf
from thesisflow.plagiarism import empty_check
from thesisflow.repo import new_id, now_iso
from thesisflow.rules import (
    DEAN_PATH_FIELDS, HOD_PATH_FIELDS, REVIEWING_ROLES, SIGNED_PATH_FIELD, STUDENT_ROLE_FIELD,
    THESIS_ROLE_FIELD, UNSIGNED_PATH_FIELD,
    Role, ThesisStatus, Tier,
)


class ThesisService:
    """Student-side lifecycle of the thesis document: submit, counter-sign, delete."""

    def __init__(self, ctx: WorkflowContext, state_machine, signing):
        self.ctx = ctx
        self.state_machine = state_machine
        self.signing = signing

    def _student_actor(self, actor: Actor) -> Dict[str, Any]:
        if actor.role is not Role.STUDENT:
            raise AuthorizationError("Only the student can manage their thesis", {"role": actor.role.value})
        return self.ctx.student(actor.id)

    def submit_thesis(self, actor: Actor, title: str, file: Optional[Path]) -> Dict[str, Any]:
        """
        First submission creates the thesis; a `submitted` thesis gets its content
        replaced; a `revisions_requested` thesis opens the next review iteration.
        """
        student = self._student_actor(actor)
        title = (title or "").strip()
        if len(title) < 3:
            raise ValidationError("Thesis title is required", {"title": title or None})
        if file is None:
            raise ValidationError("Thesis file is required", {"missing": ["file"]})
        check_pdf(file, label="file")

        existing = self.ctx.thesis_of(student["id"])
        if existing and existing.get("status") not in (ThesisStatus.SUBMITTED.value,
                                                       ThesisStatus.REVISIONS_REQUESTED.value):
            raise ConflictError("Thesis is under review and cannot be replaced",
                                {"status": existing.get("status")})
        if existing is None:
            return self._create(student, title, file)
        return self._replace(student, existing, title, file)

    def _create(self, student: Dict[str, Any], title: str, file: Path) -> Dict[str, Any]:
        thesis_id = new_id()
        with self.ctx.oplog.operation("submit_thesis", actor=student["id"], student_id=student["id"],
                                      thesis_id=thesis_id) as op:
            op.step("store_submission")
            handle = self.ctx.artifacts.put(thesis_id, Role.STUDENT, Tier.SUBMISSION, file)
            op.step("create_thesis")
            doc: Dict[str, Any] = {
                "student": student["id"],
                "title": title,
                "status": ThesisStatus.SUBMITTED.value,
                "thesis_file": handle,
                "submitted_at": now_iso(),
                "student_signed": False,
                "plagiarism_check": empty_check(),
                "current_iteration": 0,
                "total_review_count": 0,
                "review_iterations": [],
            }
            for role in REVIEWING_ROLES:
                staff_id = student.get(STUDENT_ROLE_FIELD[role])
                if staff_id:
                    doc[THESIS_ROLE_FIELD[role]] = staff_id
            thesis = self.ctx.store.theses.put(thesis_id, doc)
            self.ctx.store.users.update(student["id"], {
                "thesis_status": ThesisStatus.SUBMITTED.value,
                "thesis_file": handle,
                "thesis_topic": student.get("thesis_topic") or title,
            })
            for role in REVIEWING_ROLES:
                staff_id = doc.get(THESIS_ROLE_FIELD[role])
                if staff_id:
                    op.step(f"link_{role.value}", staff_id=staff_id)
                    self.ctx.add_member(staff_id, "assigned_theses", thesis_id)
            op.step("derive_status")
            thesis = self.state_machine.enter_review(thesis_id)

        self.ctx.audit.log("THESIS_SUBMITTED", student["id"], thesis_id, role="student",
                           extra={"thesis_id": thesis_id, "operation_id": op.id})
        self.ctx.notifier.emit("thesis_submitted", {"student": student["id"], "thesis": thesis_id},
                               level="success", topic="thesis", actor=student["id"], audience="staff",
                               correlation_id=op.id)
        return thesis

    def _replace(self, student: Dict[str, Any], thesis: Dict[str, Any], title: str, file: Path) -> Dict[str, Any]:
        resubmission = thesis.get("status") == ThesisStatus.REVISIONS_REQUESTED.value
        old_handle = thesis.get("thesis_file")
        with self.ctx.oplog.operation("resubmit_thesis" if resubmission else "replace_submission",
                                      actor=student["id"], student_id=student["id"], thesis_id=thesis["id"]) as op:
            op.step("store_submission")
            handle = self.ctx.artifacts.put(thesis["id"], Role.STUDENT, Tier.SUBMISSION, file)
            op.step("reset_submission_state")
            pc = empty_check()
            pc["attempts"] = 0
            thesis = self.ctx.store.theses.update(thesis["id"], {
                "title": title,
                "thesis_file": handle,
                "submitted_at": now_iso(),
                "student_signed": False,
                "student_signed_date": None,
                "plagiarism_check": pc,
            })
            self.ctx.store.users.update(student["id"], {"thesis_file": handle})
            if resubmission:
                op.step("next_iteration")
                thesis = self.state_machine.start_next_iteration(thesis["id"], actor=student["id"])
            if old_handle and old_handle != handle:
                op.step("discard_previous_submission")
                self.signing.discard([old_handle], thesis_id=thesis["id"], actor=student["id"],
                                     reason="replaced_submission")

        self.ctx.audit.log("THESIS_RESUBMITTED" if resubmission else "THESIS_REPLACED", student["id"],
                           thesis["id"], role="student", extra={"thesis_id": thesis["id"], "operation_id": op.id})
        self.ctx.notifier.emit("thesis_resubmitted", {"student": student["id"], "thesis": thesis["id"],
                                                      "iteration": thesis.get("current_iteration")},
                               topic="thesis", actor=student["id"], audience="staff", correlation_id=op.id)
        return thesis

    def sign_submission(self, actor: Actor) -> Dict[str, Any]:
        """Student counter-signs the current submission; supervisors wait for this."""
        student = self._student_actor(actor)
        thesis = self.ctx.thesis_of(student["id"])
        if thesis is None:
            raise NotFoundError("No thesis submitted", {"student_id": student["id"]})
        if not self.ctx.artifacts.exists(thesis.get("thesis_file")):
            raise NotFoundError("Thesis file not found", {"thesis_id": thesis["id"]})
        if thesis.get("student_signed"):
            raise ConflictError("Submission is already signed", {"student_signed_date": thesis.get("student_signed_date")})
        thesis = self.ctx.store.theses.update(thesis["id"], {"student_signed": True,
                                                             "student_signed_date": now_iso()})
        self.ctx.audit.log("SUBMISSION_SIGNED", student["id"], thesis["id"], role="student")
        self.ctx.notifier.emit("submission_signed", {"thesis": thesis["id"]}, topic="thesis",
                               actor=student["id"], audience="staff")
        return thesis

    def delete_thesis(self, actor: Actor) -> Dict[str, Any]:
        """Cascading delete: staff links, every stored document, then the record."""
        student = self._student_actor(actor)
        thesis = self.ctx.thesis_of(student["id"])
        if thesis is None:
            raise NotFoundError("No thesis submitted", {"student_id": student["id"]})
        if thesis.get("status") == ThesisStatus.EVALUATED.value:
            raise ConflictError("An evaluated thesis cannot be deleted", {"status": thesis.get("status")})

        thesis_id = thesis["id"]
        handle_fields = (["thesis_file"] + list(UNSIGNED_PATH_FIELD.values()) + list(SIGNED_PATH_FIELD.values())
                         + list(HOD_PATH_FIELDS) + list(DEAN_PATH_FIELDS))
        handles = [thesis.get(f) for f in handle_fields if thesis.get(f)]
        with self.ctx.oplog.operation("delete_thesis", actor=student["id"], student_id=student["id"],
                                      thesis_id=thesis_id) as op:
            op.step("unlink_staff")
            for user in self.ctx.store.users.all():
                if thesis_id in (user.get("assigned_theses") or []) or thesis_id in (user.get("reviewed_theses") or []):
                    self.ctx.remove_member(user["id"], "assigned_theses", thesis_id)
                    self.ctx.remove_member(user["id"], "reviewed_theses", thesis_id)
            op.step("delete_artifacts", count=len(handles))
            for handle in handles:
                self.ctx.artifacts.delete(handle)
            op.step("delete_record")
            self.ctx.store.theses.delete(thesis_id)
            self.ctx.store.users.update(student["id"], {
                "thesis_status": ThesisStatus.NOT_SUBMITTED.value,
                "thesis_file": None,
            })

        self.ctx.audit.log("THESIS_DELETED", student["id"], thesis_id, role="student",
                           extra={"thesis_id": thesis_id, "operation_id": op.id, "artifacts": len(handles)})
        self.ctx.notifier.emit("thesis_deleted", {"thesis": thesis_id}, level="warn", topic="thesis",
                               actor=student["id"], audience="staff", correlation_id=op.id)
        return {"thesis_id": thesis_id, "deleted": True, "artifacts_removed": len(handles)}

    def status(self, student_id: str) -> Dict[str, Any]:
        student = self.ctx.student(student_id)
        thesis = self.ctx.thesis_of(student_id)
        return {
            "student_id": student_id,
            "thesis_status": student.get("thesis_status", ThesisStatus.NOT_SUBMITTED.value),
            "team": {r.value: student.get(STUDENT_ROLE_FIELD[r]) for r in REVIEWING_ROLES},
            "thesis": thesis,
        }
