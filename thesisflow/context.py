# thesisflow/context.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from thesisflow.errors import AuthorizationError, NotFoundError
from thesisflow.rules import Role, ThesisStatus, as_role


@dataclass(frozen=True)
class Actor:
    """Who is calling: identity plus the scope their role is bounded by."""
    id: str
    role: Role
    faculty: Optional[str] = None
    department: Optional[str] = None

    @classmethod
    def from_user(cls, user: Dict[str, Any]) -> "Actor":
        return cls(id=user["id"], role=as_role(user.get("role")),
                   faculty=user.get("faculty"), department=user.get("department"))

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=Role.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class WorkflowContext:
    """
    Shared collaborators for the coordinators: document store, artifact store,
    audit trail, notifications and the operation log.
    """

    def __init__(self, store, artifacts, audit, notifier, oplog):
        self.store = store
        self.artifacts = artifacts
        self.audit = audit
        self.notifier = notifier
        self.oplog = oplog

    # ---- lookups
    def user_with_role(self, user_id: Optional[str], role: Role, what: Optional[str] = None) -> Dict[str, Any]:
        user = self.store.users.get(user_id) if user_id else None
        if user is None or user.get("role") != role.value:
            raise NotFoundError(f"{what or role.value.replace('_', ' ').capitalize()} not found",
                                {"id": user_id, "expected_role": role.value})
        return user

    def student(self, student_id: Optional[str]) -> Dict[str, Any]:
        return self.user_with_role(student_id, Role.STUDENT, "Student")

    def thesis(self, thesis_id: Optional[str]) -> Dict[str, Any]:
        return self.store.theses.require(thesis_id, "Thesis")

    def thesis_of(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self.store.thesis_of(student_id)

    # ---- scope checks
    def require_faculty_scope(self, actor: Actor, student: Dict[str, Any], action: str) -> None:
        """Non-admin approvers only act inside their own faculty."""
        if actor.is_admin:
            return
        if not actor.faculty or actor.faculty != student.get("faculty"):
            self.audit.security(actor.id, f"SCOPE_DENIED:{action}",
                                f"student {student['id']} outside faculty {actor.faculty}",
                                role=actor.role.value,
                                extra={"student_id": student["id"], "actor_faculty": actor.faculty,
                                       "student_faculty": student.get("faculty")})
            raise AuthorizationError("Student is outside your faculty",
                                     {"actor_faculty": actor.faculty, "student_faculty": student.get("faculty")})

    # ---- membership sets (each call is one read-modify-write of one document)
    def add_member(self, user_id: str, field: str, value: str) -> None:
        user = self.store.users.require(user_id, "User")
        members = list(user.get(field) or [])
        if value not in members:
            members.append(value)
            self.store.users.update(user_id, {field: members})

    def remove_member(self, user_id: str, field: str, value: str) -> None:
        user = self.store.users.get(user_id)
        if user is None:
            return
        members = list(user.get(field) or [])
        if value in members:
            self.store.users.update(user_id, {field: [m for m in members if m != value]})

    def move_member(self, user_id: str, src: str, dst: str, value: str) -> None:
        """Move `value` from one set to the other so it is never in both."""
        user = self.store.users.require(user_id, "User")
        src_list = [m for m in (user.get(src) or []) if m != value]
        dst_list = [m for m in (user.get(dst) or []) if m != value] + [value]
        self.store.users.update(user_id, {src: src_list, dst: dst_list})

    # ---- thesis status (thesis is authoritative, the student keeps a mirror)
    def set_thesis_fields(self, thesis: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.store.theses.update(thesis["id"], fields)
        if "status" in fields and fields["status"] is not None:
            self.store.users.update(thesis["student"], {"thesis_status": ThesisStatus(fields["status"]).value})
        return updated
