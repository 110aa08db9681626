# thesisflow/assignment.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from thesisflow.context import Actor, WorkflowContext
from thesisflow.errors import AuthorizationError, ConflictError, ValidationError
from thesisflow.repo import new_id, now_iso
from thesisflow.rules import (
    REVIEWING_ROLES, STUDENT_ROLE_FIELD, THESIS_ROLE_FIELD,
    RequestStatus, Role, outranks_or_equal,
)

ASSIGNED = "assigned"
UNCHANGED = "unchanged"
NOT_REQUESTED = "not_requested"


class AssignmentCoordinator:
    """
    Links supervisor / consultant / reviewer to a student and, when one exists,
    to the student's thesis, keeping both directions of every link in step:

        student.<role>          <-> staff.assigned_students
        thesis.assigned_<role>  <-> staff.assigned_theses

    Per role the previous holder is unlinked before the new one is linked.
    """

    def __init__(self, ctx: WorkflowContext, state_machine):
        self.ctx = ctx
        self.state_machine = state_machine

    # ------------------------------------------------------------------
    # Staff-initiated assignment
    # ------------------------------------------------------------------
    def assign_team(self, actor: Actor, student_id: str, *, supervisor_id: Optional[str] = None,
                    consultant_id: Optional[str] = None, reviewer_id: Optional[str] = None) -> Dict[str, Any]:
        requested = {Role.SUPERVISOR: supervisor_id, Role.CONSULTANT: consultant_id, Role.REVIEWER: reviewer_id}
        requested = {role: sid for role, sid in requested.items() if sid}
        if not requested:
            raise ValidationError("At least one of supervisor, consultant or reviewer is required",
                                  {"provided": []})
        if not outranks_or_equal(actor.role, Role.HEAD_OF_DEPARTMENT):
            self.ctx.audit.security(actor.id, "ROLE_DENIED:assign_team", student_id, role=actor.role.value)
            raise AuthorizationError("Only a head of department, dean or admin can assign a team",
                                     {"role": actor.role.value})
        student = self.ctx.student(student_id)
        self.ctx.require_faculty_scope(actor, student, "assign_team")

        # validate every candidate before touching anything
        for role, staff_id in requested.items():
            candidate = self.ctx.user_with_role(staff_id, role)
            self._check_candidate_scope(actor, student, role, candidate)

        thesis = self.ctx.thesis_of(student_id)
        outcome = {role.value: NOT_REQUESTED for role in REVIEWING_ROLES}
        with self.ctx.oplog.operation("assign_team", actor=actor.id, student_id=student_id,
                                      thesis_id=thesis["id"] if thesis else None) as op:
            for role, staff_id in requested.items():
                outcome[role.value] = self._reassign(op, student_id, role, staff_id)
            if thesis:
                op.step("derive_status")
                thesis = self.state_machine.enter_review(thesis["id"])

        changed = sorted(r for r, v in outcome.items() if v == ASSIGNED)
        self.ctx.audit.log("ASSIGN_TEAM", actor.id, f"{student_id} {outcome}", role=actor.role.value,
                           extra={"student_id": student_id, "thesis_id": thesis["id"] if thesis else None,
                                  "operation_id": op.id, "outcome": outcome})
        if changed:
            self.ctx.notifier.emit("team_assigned", {"student": student_id, "roles": changed},
                                   level="success", topic="assignment", actor=actor.id,
                                   audience="student", correlation_id=op.id)
        return {
            "message": "Team assignment updated" if changed else "Team assignment unchanged",
            "assignments": outcome,
            "thesis": self._thesis_snapshot(thesis),
        }

    def _check_candidate_scope(self, actor: Actor, student: Dict[str, Any], role: Role,
                               candidate: Dict[str, Any]) -> None:
        if candidate.get("faculty") != student.get("faculty"):
            raise ValidationError(f"{role.value.capitalize()} must be from the student's faculty",
                                  {"role": role.value, "candidate_faculty": candidate.get("faculty"),
                                   "student_faculty": student.get("faculty")})
        if actor.role is Role.HEAD_OF_DEPARTMENT and actor.department:
            if candidate.get("department") != actor.department:
                raise ValidationError(f"{role.value.capitalize()} must be from your department",
                                      {"role": role.value, "candidate_department": candidate.get("department"),
                                       "actor_department": actor.department})

    def _reassign(self, op, student_id: str, role: Role, new_id_: str) -> str:
        """Unlink the previous holder (if any), then link the new one. Same holder is a no-op."""
        field = STUDENT_ROLE_FIELD[role]
        student = self.ctx.store.users.require(student_id, "Student")
        current = student.get(field)
        if current == new_id_:
            return UNCHANGED
        thesis = self.ctx.thesis_of(student_id)
        if current:
            op.step(f"unlink_{role.value}", staff_id=current)
            self.ctx.remove_member(current, "assigned_students", student_id)
            if thesis:
                self.ctx.remove_member(current, "assigned_theses", thesis["id"])
                self.ctx.store.theses.update(thesis["id"], {THESIS_ROLE_FIELD[role]: None})
        op.step(f"link_{role.value}", staff_id=new_id_)
        self.ctx.store.users.update(student_id, {field: new_id_})
        self.ctx.add_member(new_id_, "assigned_students", student_id)
        if thesis:
            self.ctx.store.theses.update(thesis["id"], {THESIS_ROLE_FIELD[role]: new_id_})
            self.ctx.add_member(new_id_, "assigned_theses", thesis["id"])
        return ASSIGNED

    @staticmethod
    def _thesis_snapshot(thesis: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not thesis:
            return {"has_thesis": False, "status": None, "current_iteration": None, "total_review_count": None}
        return {
            "has_thesis": True,
            "thesis_id": thesis["id"],
            "status": thesis.get("status"),
            "current_iteration": thesis.get("current_iteration", 0),
            "total_review_count": thesis.get("total_review_count", 0),
        }

    # ------------------------------------------------------------------
    # Student-initiated supervisor requests
    # ------------------------------------------------------------------
    def request_supervisor(self, actor: Actor, supervisor_id: str, message: str = "") -> Dict[str, Any]:
        if actor.role is not Role.STUDENT:
            raise AuthorizationError("Only students can request a supervisor", {"role": actor.role.value})
        student = self.ctx.student(actor.id)
        supervisor = self.ctx.user_with_role(supervisor_id, Role.SUPERVISOR)
        if supervisor.get("faculty") != student.get("faculty"):
            raise ValidationError("You can only request supervisors from your own faculty",
                                  {"supervisor_faculty": supervisor.get("faculty"),
                                   "student_faculty": student.get("faculty")})
        if student.get("supervisor"):
            raise ConflictError("You already have an assigned supervisor", {"supervisor": student["supervisor"]})
        if self.ctx.store.requests.find(student_id=actor.id, supervisor_id=supervisor_id,
                                        status=RequestStatus.PENDING.value):
            raise ConflictError("You already have a pending request to this supervisor",
                                {"supervisor_id": supervisor_id})
        rid = new_id()
        request = self.ctx.store.requests.put(rid, {
            "student_id": actor.id,
            "supervisor_id": supervisor_id,
            "faculty": student.get("faculty"),
            "status": RequestStatus.PENDING.value,
            "student_message": (message or "").strip() or None,
            "request_date": now_iso(),
        })
        self.ctx.audit.log("SUPERVISOR_REQUESTED", actor.id, f"{rid} -> {supervisor_id}", role="student",
                           extra={"request_id": rid, "supervisor_id": supervisor_id})
        self.ctx.notifier.emit("supervisor_requested", {"request": rid, "student": actor.id},
                               topic="assignment", actor=actor.id, audience="staff")
        return request

    def _pending_request_for(self, actor: Actor, request_id: str) -> Dict[str, Any]:
        request = self.ctx.store.requests.require(request_id, "Supervisor request")
        if actor.id != request.get("supervisor_id") and not actor.is_admin:
            self.ctx.audit.security(actor.id, "REQUEST_DENIED", request_id, role=actor.role.value)
            raise AuthorizationError("This request is not addressed to you", {"request_id": request_id})
        if request.get("status") != RequestStatus.PENDING.value:
            raise ConflictError("Request has already been processed",
                                {"request_id": request_id, "status": request.get("status")})
        return request

    def accept_supervisor_request(self, actor: Actor, request_id: str,
                                  response_message: str = "") -> Dict[str, Any]:
        request = self._pending_request_for(actor, request_id)
        student_id = request["student_id"]
        student = self.ctx.student(student_id)
        if student.get("supervisor"):
            # lost the race to a direct assignment or another acceptance
            cancelled = []
            for pending in self.ctx.store.requests.find(student_id=student_id, status=RequestStatus.PENDING.value):
                self.ctx.store.requests.update(pending["id"], {
                    "status": RequestStatus.CANCELLED.value,
                    "response_date": now_iso(),
                    "response_message": "Student already has a supervisor",
                })
                cancelled.append(pending["id"])
            self.ctx.audit.log("SUPERVISOR_REQUEST_STALE", actor.id, request_id, level="WARN",
                               role=actor.role.value, extra={"request_id": request_id, "student_id": student_id, "cancelled": cancelled})
            raise ConflictError("Student already has a supervisor; request cancelled",
                                {"request_id": request_id, "supervisor": student["supervisor"],
                                 "cancelled_requests": cancelled})

        supervisor_id = request["supervisor_id"]
        thesis = self.ctx.thesis_of(student_id)
        with self.ctx.oplog.operation("accept_supervisor_request", actor=actor.id, request_id=request_id,
                                      student_id=student_id, thesis_id=thesis["id"] if thesis else None) as op:
            op.step("accept_request")
            self.ctx.store.requests.update(request_id, {
                "status": RequestStatus.ACCEPTED.value,
                "response_date": now_iso(),
                "response_message": (response_message or "").strip() or None,
            })
            self._reassign(op, student_id, Role.SUPERVISOR, supervisor_id)
            if thesis:
                op.step("derive_status")
                thesis = self.state_machine.enter_review(thesis["id"])
            op.step("cancel_other_requests")
            cancelled = []
            for other in self.ctx.store.requests.find(student_id=student_id, status=RequestStatus.PENDING.value):
                self.ctx.store.requests.update(other["id"], {
                    "status": RequestStatus.CANCELLED.value,
                    "response_date": now_iso(),
                    "response_message": "Another supervisor accepted the request",
                })
                cancelled.append(other["id"])

        self.ctx.audit.log("SUPERVISOR_REQUEST_ACCEPTED", actor.id, request_id, role=actor.role.value,
                           extra={"request_id": request_id, "student_id": student_id,
                                  "cancelled": cancelled, "operation_id": op.id})
        self.ctx.notifier.emit("supervisor_request_accepted", {"request": request_id, "student": student_id},
                               level="success", topic="assignment", actor=actor.id, audience="student",
                               correlation_id=op.id)
        return {
            "request": self.ctx.store.requests.get(request_id),
            "cancelled_requests": cancelled,
            "thesis": self._thesis_snapshot(thesis),
        }

    def decline_supervisor_request(self, actor: Actor, request_id: str, reason: str) -> Dict[str, Any]:
        if not (reason or "").strip():
            raise ValidationError("Decline reason is required", {"decline_reason": None})
        self._pending_request_for(actor, request_id)
        request = self.ctx.store.requests.update(request_id, {
            "status": RequestStatus.DECLINED.value,
            "decline_reason": reason.strip(),
            "response_date": now_iso(),
        })
        self.ctx.audit.log("SUPERVISOR_REQUEST_DECLINED", actor.id, request_id, role=actor.role.value,
                           extra={"request_id": request_id})
        self.ctx.notifier.emit("supervisor_request_declined", {"request": request_id,
                                                               "student": request["student_id"]},
                               level="warn", topic="assignment", actor=actor.id, audience="student")
        return {"request": request}

    def cancel_supervisor_request(self, actor: Actor, request_id: str) -> Dict[str, Any]:
        request = self.ctx.store.requests.require(request_id, "Supervisor request")
        if request.get("student_id") != actor.id:
            raise AuthorizationError("You can only cancel your own requests", {"request_id": request_id})
        if request.get("status") != RequestStatus.PENDING.value:
            raise ConflictError("Only pending requests can be cancelled",
                                {"request_id": request_id, "status": request.get("status")})
        request = self.ctx.store.requests.update(request_id, {
            "status": RequestStatus.CANCELLED.value,
            "response_date": now_iso(),
        })
        self.ctx.notifier.emit("supervisor_request_cancelled", {"request": request_id},
                               topic="assignment", actor=actor.id, audience="staff")
        return {"request": request}

    def list_requests(self, *, student_id: Optional[str] = None, supervisor_id: Optional[str] = None,
                      status: Optional[str] = None) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if student_id:
            filters["student_id"] = student_id
        if supervisor_id:
            filters["supervisor_id"] = supervisor_id
        items = self.ctx.store.requests.find(**filters)
        stats = {s.value: sum(1 for r in items if r.get("status") == s.value) for s in RequestStatus}
        if status:
            items = [r for r in items if r.get("status") == RequestStatus(status).value]
        items.sort(key=lambda r: r.get("request_date", ""), reverse=True)
        return {"requests": items, "stats": dict(stats, total=sum(stats.values()))}

    def available_supervisors(self, student_id: str) -> List[Dict[str, Any]]:
        student = self.ctx.student(student_id)
        out = []
        for u in self.ctx.store.users.find(role=Role.SUPERVISOR.value, faculty=student.get("faculty")):
            out.append({
                "id": u["id"],
                "full_name": u.get("full_name"),
                "department": u.get("department"),
                "assigned_students": len(u.get("assigned_students") or []),
            })
        return sorted(out, key=lambda x: (x["full_name"] or "", x["id"]))
