# thesisflow/oplog.py
from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from thesisflow.repo import DocumentRepository, new_id, now_iso

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
RECONCILED = "reconciled"


class Operation:
    """Handle for one in-flight multi-entity operation."""

    def __init__(self, log: "OperationLog", record: Dict[str, Any]):
        self._log = log
        self.record = record

    @property
    def id(self) -> str:
        return self.record["id"]

    @property
    def step_index(self) -> int:
        return len(self.record["steps"]) - 1

    def step(self, name: str, **context: Any) -> None:
        """Persist the step before it executes so a crash points at it."""
        self.record["steps"].append({
            "index": len(self.record["steps"]),
            "name": name,
            "ts": now_iso(),
            **({"context": context} if context else {}),
        })
        self._log.repo.update(self.id, {"steps": self.record["steps"]})


class OperationLog:
    """
    Persisted log of multi-step workflow operations.

    No transaction spans the documents an operation touches. The log records
    which step was reached so the reconciler (or a human) can finish or repair
    a half-applied operation.
    """

    def __init__(self, repo: DocumentRepository, audit=None):
        self.repo = repo
        self.audit = audit

    @contextmanager
    def operation(self, name: str, *, actor: Optional[str] = None, **entities: Any) -> Iterator[Operation]:
        record = {
            "id": new_id(),
            "name": name,
            "actor": actor,
            "entities": {k: v for k, v in entities.items() if v is not None},
            "status": RUNNING,
            "steps": [],
            "started_at": now_iso(),
        }
        self.repo.put(record["id"], record)
        op = Operation(self, record)
        try:
            yield op
        except Exception as ex:
            failed_step = op.record["steps"][-1]["name"] if op.record["steps"] else None
            self.repo.update(op.id, {
                "status": FAILED,
                "finished_at": now_iso(),
                "failed_step_index": op.step_index,
                "failed_step": failed_step,
                "error": f"{type(ex).__name__}: {ex}",
            })
            if self.audit is not None and op.step_index >= 0:
                self.audit.error(
                    actor or "system", f"OP_FAILED:{name}",
                    f"step {op.step_index} ({failed_step}): {ex}",
                    extra={"operation_id": op.id, "step_index": op.step_index,
                           "step": failed_step, **record["entities"]},
                )
            raise
        else:
            self.repo.update(op.id, {"status": COMPLETED, "finished_at": now_iso()})

    def get(self, op_id: str) -> Optional[Dict[str, Any]]:
        return self.repo.get(op_id)

    def incomplete(self) -> List[Dict[str, Any]]:
        """Operations that started but never completed (running or failed after a step)."""
        out = []
        for rec in self.repo.all():
            if rec.get("status") == RUNNING:
                out.append(rec)
            elif rec.get("status") == FAILED and rec.get("steps"):
                out.append(rec)
        return sorted(out, key=lambda r: r.get("started_at", ""))

    def mark_reconciled(self, op_id: str, note: str = "") -> None:
        self.repo.update(op_id, {"status": RECONCILED, "reconciled_at": now_iso(),
                                 "reconcile_note": note or None})
