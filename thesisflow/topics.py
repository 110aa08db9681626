# thesisflow/topics.py
from __future__ import annotations
from typing import Any, Dict, Optional

from thesisflow.context import Actor, WorkflowContext
from thesisflow.errors import AuthorizationError, ConflictError, PrecheckFailedError, ValidationError
from thesisflow.repo import now_iso
from thesisflow.rules import Role

MAX_TOPIC_LEN = 300


def _clean_topic(topic: Optional[str]) -> str:
    t = (topic or "").strip()
    if len(t) < 3 or len(t) > MAX_TOPIC_LEN:
        raise ValidationError(f"Topic must be between 3 and {MAX_TOPIC_LEN} characters", {"topic": topic})
    return t


class TopicService:
    """Topic proposal by either side, student response, supervisor approval."""

    def __init__(self, ctx: WorkflowContext):
        self.ctx = ctx

    def _snapshot(self, student: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "student_id": student["id"],
            "thesis_topic": student.get("thesis_topic"),
            "is_topic_approved": bool(student.get("is_topic_approved")),
            "topic_proposed_by": student.get("topic_proposed_by"),
            "student_topic_response": student.get("student_topic_response"),
            "topic_rejection_comments": student.get("topic_rejection_comments"),
        }

    def _assigned_supervisor_of(self, actor: Actor, student_id: str) -> Dict[str, Any]:
        student = self.ctx.student(student_id)
        if actor.role is not Role.SUPERVISOR or student.get("supervisor") != actor.id:
            raise AuthorizationError("You are not the assigned supervisor of this student",
                                     {"student_id": student_id})
        return student

    def propose_topic(self, actor: Actor, topic: str) -> Dict[str, Any]:
        student = self.ctx.student(actor.id)
        if student.get("is_topic_approved"):
            raise ConflictError("Thesis topic is already approved", {"thesis_topic": student.get("thesis_topic")})
        student = self.ctx.store.users.update(actor.id, {
            "thesis_topic": _clean_topic(topic),
            "topic_proposed_by": "student",
            "is_topic_approved": False,
            "student_topic_response": None,
            "topic_rejection_comments": None,
        })
        self.ctx.notifier.emit("topic_proposed", {"student": actor.id, "by": "student"},
                               topic="thesis", actor=actor.id, audience="staff")
        return self._snapshot(student)

    def supervisor_propose_topic(self, actor: Actor, student_id: str, topic: str) -> Dict[str, Any]:
        student = self._assigned_supervisor_of(actor, student_id)
        if student.get("is_topic_approved"):
            raise ConflictError("Thesis topic is already approved", {"thesis_topic": student.get("thesis_topic")})
        student = self.ctx.store.users.update(student_id, {
            "thesis_topic": _clean_topic(topic),
            "topic_proposed_by": "supervisor",
            "is_topic_approved": False,
            "student_topic_response": {"status": "pending", "proposed_at": now_iso()},
        })
        self.ctx.notifier.emit("topic_proposed", {"student": student_id, "by": "supervisor"},
                               topic="thesis", actor=actor.id, audience="student")
        return self._snapshot(student)

    def respond_to_topic(self, actor: Actor, accepted: bool, comments: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(accepted, bool):
            raise ValidationError("accepted must be a boolean", {"accepted": accepted})
        if not accepted and not (comments or "").strip():
            raise ValidationError("Comments are required when rejecting a proposed topic", {"comments": None})
        student = self.ctx.student(actor.id)
        response = student.get("student_topic_response") or {}
        if student.get("topic_proposed_by") != "supervisor" or response.get("status") != "pending":
            raise PrecheckFailedError("No pending topic proposal from your supervisor",
                                      {"topic_proposed_by": student.get("topic_proposed_by"),
                                       "response_status": response.get("status")})
        if student.get("is_topic_approved"):
            raise ConflictError("Thesis topic is already approved", {})
        fields: Dict[str, Any] = {
            "student_topic_response": dict(response, status="accepted" if accepted else "rejected",
                                           responded_at=now_iso(),
                                           comments=None if accepted else comments.strip()),
            "is_topic_approved": bool(accepted),
        }
        if not accepted:
            fields["thesis_topic"] = None
        student = self.ctx.store.users.update(actor.id, fields)
        self.ctx.notifier.emit("topic_approved" if accepted else "topic_rejected",
                               {"student": actor.id, "by": "student"},
                               topic="thesis", actor=actor.id, audience="staff")
        return self._snapshot(student)

    def approve_topic(self, actor: Actor, student_id: str, approved: bool,
                      comments: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(approved, bool):
            raise ValidationError("approved must be a boolean", {"approved": approved})
        if not approved and not (comments or "").strip():
            raise ValidationError("Comments are required when rejecting a topic", {"comments": None})
        student = self._assigned_supervisor_of(actor, student_id)
        if not (student.get("thesis_topic") or "").strip():
            raise PrecheckFailedError("Student has not proposed a topic yet", {"thesis_topic": None},
                                      required_action="propose_topic")
        if student.get("is_topic_approved"):
            raise ConflictError("Thesis topic is already approved", {"thesis_topic": student.get("thesis_topic")})
        student = self.ctx.store.users.update(student_id, {
            "is_topic_approved": approved,
            "topic_rejection_comments": None if approved else comments.strip(),
            "topic_reviewed_at": now_iso(),
        })
        self.ctx.audit.log("TOPIC_APPROVED" if approved else "TOPIC_REJECTED", actor.id, student_id,
                           role=actor.role.value, extra={"student_id": student_id})
        self.ctx.notifier.emit("topic_approved" if approved else "topic_rejected",
                               {"student": student_id, "by": "supervisor"},
                               level="success" if approved else "warn",
                               topic="thesis", actor=actor.id, audience="student")
        return self._snapshot(student)
