# thesisflow/engine.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import os

from thesisflow.assignment import AssignmentCoordinator
from thesisflow.audit import AuditLog
from thesisflow.context import WorkflowContext
from thesisflow.errors import ConflictError, ValidationError
from thesisflow.files import FILES_DIR, ArtifactStore
from thesisflow.notifications import Notifier
from thesisflow.oplog import OperationLog
from thesisflow.plagiarism import PlagiarismGate
from thesisflow.reconcile import Reconciler
from thesisflow.repo import Store, new_id, now_iso
from thesisflow.rules import REVIEWING_ROLES, Role, ThesisStatus, as_role
from thesisflow.signing import SigningChainCoordinator
from thesisflow.state_machine import ThesisStateMachine
from thesisflow.thesis import ThesisService
from thesisflow.topics import TopicService

DATA_DIR = Path(os.getenv("THESIS_DATA_DIR", Path.cwd() / "data"))


def _default_renderer() -> Callable[..., Path]:
    from reports.review_pdf import render_review
    return render_review


class Engine:
    """Every workflow component wired over one store, artifact root and audit trail."""

    def __init__(self, store: Store, artifacts: ArtifactStore, audit: AuditLog, notifier: Notifier,
                 renderer: Optional[Callable[..., Path]] = None):
        self.store = store
        self.artifacts = artifacts
        self.audit = audit
        self.notifier = notifier
        self.oplog = OperationLog(store.operations, audit)
        self.ctx = WorkflowContext(store, artifacts, audit, notifier, self.oplog)

        self.plagiarism = PlagiarismGate(store.theses, artifacts, audit, notifier)
        self.signing = SigningChainCoordinator(self.ctx, renderer or _default_renderer())
        self.state_machine = ThesisStateMachine(self.ctx, self.signing, self.plagiarism)
        self.assignment = AssignmentCoordinator(self.ctx, self.state_machine)
        self.topics = TopicService(self.ctx)
        self.theses = ThesisService(self.ctx, self.state_machine, self.signing)
        self.reconciler = Reconciler(self.ctx)

    # ---- provisioning
    def create_user(self, role, full_name: str, *, faculty: Optional[str] = None,
                    department: Optional[str] = None, user_id: Optional[str] = None,
                    **extra: Any) -> Dict[str, Any]:
        role = as_role(role)
        if not (full_name or "").strip():
            raise ValidationError("full_name is required", {"full_name": full_name})
        if role is not Role.ADMIN and not faculty:
            raise ValidationError("faculty is required", {"role": role.value})
        uid = user_id or new_id()
        if self.store.users.get(uid):
            raise ConflictError("User already exists", {"id": uid})

        doc: Dict[str, Any] = {
            "role": role.value,
            "full_name": full_name.strip(),
            "faculty": faculty,
            "department": department,
            "created_at": now_iso(),
        }
        if role is Role.STUDENT:
            doc.update({"thesis_status": ThesisStatus.NOT_SUBMITTED.value,
                        "is_topic_approved": False, "total_review_attempts": 0})
        elif role in REVIEWING_ROLES:
            doc.update({"assigned_students": [], "assigned_theses": [], "reviewed_theses": [],
                        "review_stats": {"approvals": 0, "revision_requests": 0}})
        doc.update({k: v for k, v in extra.items() if v is not None})
        user = self.store.users.put(uid, {k: v for k, v in doc.items() if v is not None})
        self.audit.log("USER_CREATED", "system", uid, role=role.value, extra={"user_id": uid})
        return user

    # ---- maintenance
    def health(self) -> Dict[str, Any]:
        users = self.store.users.all()
        by_role = {r.value: sum(1 for u in users if u.get("role") == r.value) for r in Role}
        theses = self.store.theses.all()
        by_status = {s.value: sum(1 for t in theses if t.get("status") == s.value)
                     for s in ThesisStatus if s is not ThesisStatus.NOT_SUBMITTED}
        return {
            "users": by_role,
            "theses": by_status,
            "incomplete_operations": len(self.oplog.incomplete()),
            "artifact_root": str(self.artifacts.root),
            "audit_dropped_writes": self.audit.dropped_writes,
        }


def build_engine(data_dir: Optional[Path] = None, files_dir: Optional[Path] = None, *,
                 in_memory: bool = False, renderer: Optional[Callable[..., Path]] = None,
                 console: bool = False) -> Engine:
    """Explicit directories win over THESIS_DATA_DIR / THESIS_FILES_DIR."""
    data = Path(data_dir or DATA_DIR)
    audit = AuditLog(data)
    store = Store.in_memory() if in_memory else Store.on_disk(data, audit=audit)
    artifacts = ArtifactStore(files_dir or (data / "files" if data_dir else FILES_DIR))
    notifier = Notifier(data, console=console)
    return Engine(store, artifacts, audit, notifier, renderer=renderer)


def seed_demo(engine: Engine, faculty: str = "Engineering", department: str = "Computer") -> Dict[str, str]:
    """Provision one user per role in a single faculty/department. Returns role -> id."""
    people = [
        (Role.ADMIN, "System Admin"),
        (Role.DEAN, "Dean Farahani"),
        (Role.HEAD_OF_DEPARTMENT, "Dr. Karimi"),
        (Role.SUPERVISOR, "Dr. Rahimi"),
        (Role.CONSULTANT, "Dr. Moradi"),
        (Role.REVIEWER, "Dr. Hosseini"),
        (Role.STUDENT, "Sara Ahmadi"),
    ]
    ids: Dict[str, str] = {}
    for role, name in people:
        user = engine.create_user(role, name, faculty=None if role is Role.ADMIN else faculty,
                                  department=None if role in (Role.ADMIN, Role.DEAN) else department,
                                  user_id=f"{role.value}-demo")
        ids[role.value] = user["id"]
    return ids
