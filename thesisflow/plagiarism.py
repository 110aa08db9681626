# thesisflow/plagiarism.py
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from thesisflow.errors import ConflictError, NotFoundError, PrecheckFailedError, ValidationError
from thesisflow.repo import now_iso
from thesisflow.rules import PLAGIARISM_MAX_ATTEMPTS, PLAGIARISM_THRESHOLD, required_similarity_action


@dataclass
class PlagiarismResult:
    """What the external checker reports for one document."""
    is_approved: bool
    similarity_score: float
    checked_file_url: str
    report_url: Optional[str] = None


class PlagiarismProvider(ABC):
    """Adapter for the external checking service. Scoring and retries live there."""

    @abstractmethod
    def check(self, document: Path, thesis_id: str) -> PlagiarismResult:
        ...


def empty_check() -> Dict[str, Any]:
    return {
        "is_checked": False,
        "is_approved": False,
        "similarity_score": None,
        "checked_file_url": None,
        "attempts": 0,
        "max_attempts": PLAGIARISM_MAX_ATTEMPTS,
    }


class PlagiarismGate:
    """
    Consumes external plagiarism results for a thesis's current submission.

    The stored `is_approved` flag is authoritative. PLAGIARISM_THRESHOLD is only
    reported back to clients so they know what to aim for.
    """

    def __init__(self, theses, artifacts, audit=None, notifier=None):
        self.theses = theses
        self.artifacts = artifacts
        self.audit = audit
        self.notifier = notifier

    def check_latest(self, thesis_id: str) -> Dict[str, Any]:
        thesis = self.theses.require(thesis_id, "thesis")
        pc = thesis.get("plagiarism_check") or empty_check()
        return {
            "is_checked": bool(pc.get("is_checked")),
            "is_approved": bool(pc.get("is_approved")),
            "similarity_score": pc.get("similarity_score"),
            "checked_file_url": pc.get("checked_file_url"),
        }

    def require_cleared(self, thesis: Dict[str, Any]) -> None:
        """Raise PrecheckFailedError unless the current submission passed the check."""
        pc = thesis.get("plagiarism_check") or empty_check()
        cleared = bool(pc.get("is_checked")) and bool(pc.get("is_approved")) and bool(pc.get("checked_file_url"))
        if cleared:
            return
        score = pc.get("similarity_score")
        details = {
            "is_checked": bool(pc.get("is_checked")),
            "is_approved": bool(pc.get("is_approved")),
            "checked_file_url_set": bool(pc.get("checked_file_url")),
            "similarity_score": score,
            "threshold": PLAGIARISM_THRESHOLD,
        }
        if not pc.get("is_checked"):
            msg = "Plagiarism check has not been run for the current submission"
        elif not pc.get("is_approved"):
            msg = f"Similarity score {score}% exceeds the allowed {PLAGIARISM_THRESHOLD:g}%"
        else:
            msg = "Plagiarism check has no checked file reference"
        raise PrecheckFailedError(msg, details, required_action=required_similarity_action(
            score if pc.get("is_checked") else None))

    def record_result(self, thesis_id: str, result: PlagiarismResult, *, actor: str = "system") -> Dict[str, Any]:
        """Store a result delivered by the external system for the current submission."""
        thesis = self.theses.require(thesis_id, "thesis")
        if not result.checked_file_url:
            raise ValidationError("checked_file_url is required", {"checked_file_url": None})
        pc = dict(empty_check(), **(thesis.get("plagiarism_check") or {}))
        pc.update({
            "is_checked": True,
            "is_approved": bool(result.is_approved),
            "similarity_score": float(result.similarity_score),
            "checked_file_url": result.checked_file_url,
            "report_url": result.report_url,
            "last_check_date": now_iso(),
        })
        self.theses.update(thesis_id, {"plagiarism_check": pc})
        if self.audit is not None:
            self.audit.log("PLAGIARISM_RESULT", actor,
                           f"{thesis_id} score={result.similarity_score} approved={result.is_approved}",
                           extra={"thesis_id": thesis_id, **asdict(result)})
        if self.notifier is not None:
            self.notifier.emit("plagiarism_checked",
                               {"thesis": thesis_id, "score": result.similarity_score,
                                "approved": bool(result.is_approved)},
                               level="success" if result.is_approved else "warn",
                               topic="plagiarism", actor=actor, audience="student")
        return pc

    def run_check(self, thesis_id: str, provider: PlagiarismProvider, *, actor: str = "system") -> Dict[str, Any]:
        """Send the current submission to `provider`, bounded by max_attempts."""
        thesis = self.theses.require(thesis_id, "thesis")
        pc = dict(empty_check(), **(thesis.get("plagiarism_check") or {}))
        attempts = int(pc.get("attempts") or 0)
        max_attempts = int(pc.get("max_attempts") or PLAGIARISM_MAX_ATTEMPTS)
        if attempts >= max_attempts:
            raise ConflictError("Maximum plagiarism check attempts reached",
                                {"attempts": attempts, "max_attempts": max_attempts})
        handle = thesis.get("thesis_file")
        if not self.artifacts.exists(handle):
            raise NotFoundError("Thesis file not found", {"thesis_id": thesis_id, "thesis_file": handle})

        result = provider.check(self.artifacts.path(handle), thesis_id)
        self.theses.update(thesis_id, {"plagiarism_check": dict(pc, attempts=attempts + 1)})
        return self.record_result(thesis_id, result, actor=actor)
