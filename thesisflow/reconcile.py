"""
Consistency scan and repair across students, staff, theses and the operation log.

Nothing spans the documents a multi-step operation touches, so a crash can leave
one side of a link written and the other not. `scan()` reports every such
inconsistency; `repair()` fixes them idempotently. Role links follow the student
profile, status and iterations follow the thesis record.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from thesisflow.context import WorkflowContext
from thesisflow.rules import (
    REVIEW_FIELD, REVIEWING_ROLES, STUDENT_ROLE_FIELD, THESIS_ROLE_FIELD,
    Role, ThesisStatus, as_role,
)

STUDENT_LINK_MISSING = "student_link_missing"
STAFF_LINK_DANGLING = "staff_link_dangling"
THESIS_LINK_MISMATCH = "thesis_link_mismatch"
THESIS_MEMBERSHIP_MISSING = "thesis_membership_missing"
THESIS_MEMBERSHIP_DANGLING = "thesis_membership_dangling"
EXCLUSIVE_MEMBERSHIP = "exclusive_membership"
ITERATION_NUMBERING = "iteration_numbering"
STATUS_MIRROR = "status_mirror"
DANGLING_THESIS = "dangling_thesis"
INCOMPLETE_OPERATION = "incomplete_operation"


@dataclass
class Issue:
    kind: str
    entity_id: str
    detail: Dict[str, Any] = field(default_factory=dict)
    repair: Optional[str] = None  # None: needs a human

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _staff_role(user: Dict[str, Any]) -> Optional[Role]:
    try:
        role = as_role(user.get("role"))
    except ValueError:
        return None
    return role if role in REVIEWING_ROLES else None


def _past_reviewers(thesis: Dict[str, Any]) -> set:
    """Staff ids with a final approval recorded in any iteration of `thesis`."""
    out = set()
    for entry in thesis.get("review_iterations") or []:
        for role in REVIEWING_ROLES:
            review = entry.get(REVIEW_FIELD[role]) or {}
            if review.get("is_final_approval") and review.get("reviewed_by"):
                out.add(review["reviewed_by"])
    return out


class Reconciler:
    def __init__(self, ctx: WorkflowContext):
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    def scan(self) -> List[Issue]:
        users = {u["id"]: u for u in self.ctx.store.users.all()}
        theses = self.ctx.store.theses.all()
        students = {uid: u for uid, u in users.items() if u.get("role") == Role.STUDENT.value}
        thesis_by_student = {t.get("student"): t for t in theses}

        issues: List[Issue] = []
        issues += self._scan_student_links(users, students)
        issues += self._scan_thesis_links(users, students, theses)
        issues += self._scan_exclusive(users)
        issues += self._scan_iterations(theses)
        issues += self._scan_status_mirror(students, thesis_by_student)
        for op in self.ctx.oplog.incomplete():
            issues.append(Issue(INCOMPLETE_OPERATION, op["id"], {
                "name": op.get("name"),
                "status": op.get("status"),
                "entities": op.get("entities") or {},
                "failed_step": op.get("failed_step"),
                "error": op.get("error"),
            }, repair="mark_reconciled"))
        return issues

    def _scan_student_links(self, users, students) -> List[Issue]:
        out = []
        for sid, student in students.items():
            for role in REVIEWING_ROLES:
                staff_id = student.get(STUDENT_ROLE_FIELD[role])
                if not staff_id:
                    continue
                staff = users.get(staff_id)
                if staff is None or staff.get("role") != role.value:
                    out.append(Issue(STUDENT_LINK_MISSING, sid,
                                     {"role": role.value, "staff_id": staff_id, "staff_exists": False},
                                     repair="clear_student_role"))
                elif sid not in (staff.get("assigned_students") or []):
                    out.append(Issue(STUDENT_LINK_MISSING, sid,
                                     {"role": role.value, "staff_id": staff_id, "staff_exists": True},
                                     repair="add_assigned_student"))
        for uid, staff in users.items():
            role = _staff_role(staff)
            if role is None:
                continue
            for sid in staff.get("assigned_students") or []:
                student = students.get(sid)
                if student is None or student.get(STUDENT_ROLE_FIELD[role]) != uid:
                    out.append(Issue(STAFF_LINK_DANGLING, uid, {"role": role.value, "student_id": sid},
                                     repair="remove_assigned_student"))
        return out

    def _scan_thesis_links(self, users, students, theses) -> List[Issue]:
        out = []
        expected_holders: Dict[str, set] = {}
        past_reviewers: Dict[str, set] = {}
        for thesis in theses:
            tid = thesis["id"]
            student = students.get(thesis.get("student"))
            if student is None:
                out.append(Issue(DANGLING_THESIS, tid, {"student_id": thesis.get("student")}))
                continue
            holders = set()
            for role in REVIEWING_ROLES:
                expected = student.get(STUDENT_ROLE_FIELD[role])
                actual = thesis.get(THESIS_ROLE_FIELD[role])
                if expected != actual:
                    out.append(Issue(THESIS_LINK_MISMATCH, tid,
                                     {"role": role.value, "student_value": expected, "thesis_value": actual},
                                     repair="copy_student_role"))
                if not expected:
                    continue
                holders.add(expected)
                staff = users.get(expected) or {}
                if tid not in (staff.get("assigned_theses") or []) and tid not in (staff.get("reviewed_theses") or []):
                    out.append(Issue(THESIS_MEMBERSHIP_MISSING, tid, {"role": role.value, "staff_id": expected},
                                     repair="add_assigned_thesis"))
            expected_holders[tid] = holders
            past_reviewers[tid] = _past_reviewers(thesis)

        for uid, staff in users.items():
            if _staff_role(staff) is None:
                continue
            for fld in ("assigned_theses", "reviewed_theses"):
                for tid in staff.get(fld) or []:
                    allowed = expected_holders.get(tid, set())
                    if fld == "reviewed_theses":
                        # a replaced member keeps the theses it actually reviewed
                        allowed = allowed | past_reviewers.get(tid, set())
                    if uid not in allowed:
                        out.append(Issue(THESIS_MEMBERSHIP_DANGLING, uid, {"thesis_id": tid, "field": fld},
                                         repair="remove_thesis_membership"))
        return out

    def _scan_exclusive(self, users) -> List[Issue]:
        out = []
        for uid, staff in users.items():
            both = set(staff.get("assigned_theses") or []) & set(staff.get("reviewed_theses") or [])
            for tid in sorted(both):
                out.append(Issue(EXCLUSIVE_MEMBERSHIP, uid, {"thesis_id": tid}, repair="keep_one_membership"))
        return out

    def _scan_iterations(self, theses) -> List[Issue]:
        out = []
        for thesis in theses:
            iters = thesis.get("review_iterations") or []
            bad = [i for i, it in enumerate(iters) if it.get("iteration") != i + 1]
            current = int(thesis.get("current_iteration") or 0)
            if bad or current > len(iters):
                out.append(Issue(ITERATION_NUMBERING, thesis["id"],
                                 {"positions": bad, "current_iteration": current, "count": len(iters)},
                                 repair="renumber_iterations"))
        return out

    def _scan_status_mirror(self, students, thesis_by_student) -> List[Issue]:
        out = []
        for sid, student in students.items():
            thesis = thesis_by_student.get(sid)
            expected = thesis.get("status") if thesis else ThesisStatus.NOT_SUBMITTED.value
            mirror = student.get("thesis_status") or ThesisStatus.NOT_SUBMITTED.value
            if mirror != expected:
                out.append(Issue(STATUS_MIRROR, sid, {"student_value": mirror, "thesis_value": expected},
                                 repair="copy_thesis_status"))
        return out

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------
    def repair(self, issues: Optional[List[Issue]] = None, *, actor: str = "system") -> Dict[str, Any]:
        if issues is None:
            issues = self.scan()
        handlers: Dict[str, Callable[[Issue], None]] = {
            "clear_student_role": self._clear_student_role,
            "add_assigned_student": self._add_assigned_student,
            "remove_assigned_student": self._remove_assigned_student,
            "copy_student_role": self._copy_student_role,
            "add_assigned_thesis": self._add_assigned_thesis,
            "remove_thesis_membership": self._remove_thesis_membership,
            "keep_one_membership": self._keep_one_membership,
            "renumber_iterations": self._renumber_iterations,
            "copy_thesis_status": self._copy_thesis_status,
            "mark_reconciled": self._mark_reconciled,
        }
        applied, skipped = [], []
        for issue in issues:
            handler = handlers.get(issue.repair or "")
            if handler is None:
                skipped.append(issue.to_dict())
                continue
            handler(issue)
            applied.append(issue.to_dict())
            self.ctx.audit.log("RECONCILE_REPAIR", actor, f"{issue.kind} {issue.entity_id}",
                               extra={"kind": issue.kind, "entity_id": issue.entity_id,
                                      "repair": issue.repair, **issue.detail})
        if skipped:
            self.ctx.audit.warn(actor, "RECONCILE_MANUAL", f"{len(skipped)} issue(s) need manual repair",
                                extra={"kinds": sorted({i["kind"] for i in skipped})})
        return {"applied": applied, "skipped": skipped}

    def _clear_student_role(self, issue: Issue) -> None:
        self.ctx.store.users.update(issue.entity_id, {STUDENT_ROLE_FIELD[Role(issue.detail["role"])]: None})

    def _add_assigned_student(self, issue: Issue) -> None:
        self.ctx.add_member(issue.detail["staff_id"], "assigned_students", issue.entity_id)

    def _remove_assigned_student(self, issue: Issue) -> None:
        self.ctx.remove_member(issue.entity_id, "assigned_students", issue.detail["student_id"])

    def _copy_student_role(self, issue: Issue) -> None:
        role = Role(issue.detail["role"])
        thesis = self.ctx.store.theses.get(issue.entity_id)
        if thesis is None:
            return
        student = self.ctx.store.users.get(thesis.get("student")) or {}
        self.ctx.store.theses.update(thesis["id"], {THESIS_ROLE_FIELD[role]: student.get(STUDENT_ROLE_FIELD[role])})

    def _add_assigned_thesis(self, issue: Issue) -> None:
        staff = self.ctx.store.users.get(issue.detail["staff_id"])
        if staff is None or issue.entity_id in (staff.get("reviewed_theses") or []):
            return
        self.ctx.add_member(staff["id"], "assigned_theses", issue.entity_id)

    def _remove_thesis_membership(self, issue: Issue) -> None:
        self.ctx.remove_member(issue.entity_id, issue.detail["field"], issue.detail["thesis_id"])

    def _keep_one_membership(self, issue: Issue) -> None:
        """Keep `reviewed_theses` only when this member's approval stands in the current iteration."""
        tid = issue.detail["thesis_id"]
        staff = self.ctx.store.users.get(issue.entity_id) or {}
        thesis = self.ctx.store.theses.get(tid) or {}
        role = _staff_role(staff)
        iters = thesis.get("review_iterations") or []
        idx = int(thesis.get("current_iteration") or 0)
        review = (iters[idx - 1].get(REVIEW_FIELD[role]) if role and 0 < idx <= len(iters) else None) or {}
        if review.get("is_final_approval"):
            self.ctx.remove_member(issue.entity_id, "assigned_theses", tid)
        else:
            self.ctx.remove_member(issue.entity_id, "reviewed_theses", tid)

    def _renumber_iterations(self, issue: Issue) -> None:
        thesis = self.ctx.store.theses.get(issue.entity_id)
        if thesis is None:
            return
        iters = [dict(it, iteration=i + 1) for i, it in enumerate(thesis.get("review_iterations") or [])]
        current = min(int(thesis.get("current_iteration") or 0), len(iters))
        self.ctx.store.theses.update(thesis["id"], {"review_iterations": iters, "current_iteration": current})

    def _copy_thesis_status(self, issue: Issue) -> None:
        thesis = self.ctx.thesis_of(issue.entity_id)
        status = thesis.get("status") if thesis else ThesisStatus.NOT_SUBMITTED.value
        self.ctx.store.users.update(issue.entity_id, {"thesis_status": status})

    def _mark_reconciled(self, issue: Issue) -> None:
        self.ctx.oplog.mark_reconciled(issue.entity_id, note=f"reviewed by reconciler ({issue.detail.get('status')})")
