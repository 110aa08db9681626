#!/usr/bin/env python3
"""
Demo Flow (headless) for thesisflow

Runs one thesis through the whole workflow against a throw-away data directory:
- seed one user per role
- assign supervisor + consultant + reviewer
- submit and counter-sign the thesis, record a passing plagiarism result
- consultant approval and signature, supervisor signing-only approval
- reviewer approval and signature
- HOD and Dean countersignatures (terminal cleanup)

Run from the project root (so that ./thesisflow and ./reports are importable).
Usage:
    python scripts/demo_flow.py
Environment:
    DEMO_DIR=path  -> keep data/artifacts there instead of a temp directory
"""

from __future__ import annotations
import os
import sys
import tempfile
from pathlib import Path

# --- make project importable if running from scripts/ ---
HERE = Path(__file__).resolve()
PROJ = HERE.parent.parent
if str(PROJ) not in sys.path:
    sys.path.insert(0, str(PROJ))

from rich import print
from rich.panel import Panel

from thesisflow.context import Actor
from thesisflow.engine import build_engine, seed_demo
from thesisflow.plagiarism import PlagiarismResult
from thesisflow.rules import Role


def write_min_pdf(path: Path, marker: str = "") -> Path:
    # Minimal valid PDF with header and EOF marker; `marker` keeps contents distinct
    content = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n% " + marker.encode("utf-8") + b"\n%%EOF\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def main() -> int:
    base = Path(os.getenv("DEMO_DIR") or tempfile.mkdtemp(prefix="thesisflow_demo_"))
    eng = build_engine(base / "data", base / "files", console=False)
    ids = seed_demo(eng)
    who = {role: Actor.from_user(eng.store.users.get(uid)) for role, uid in ids.items()}
    uploads = base / "uploads"
    print(Panel.fit(f"data: {base}", title="== Demo Flow starting =="))

    # 1) team
    eng.assignment.assign_team(who["head_of_department"], ids["student"], supervisor_id=ids["supervisor"],
                               consultant_id=ids["consultant"], reviewer_id=ids["reviewer"])

    # 2) submission
    student = who["student"]
    eng.topics.propose_topic(student, "Consistency repair for document stores")
    eng.topics.approve_topic(who["supervisor"], ids["student"], True)
    thesis = eng.theses.submit_thesis(student, "Consistency repair for document stores",
                                      write_min_pdf(uploads / "thesis.pdf", "thesis"))
    tid = thesis["id"]
    print(f"submitted {tid}: status={thesis['status']}")
    eng.theses.sign_submission(student)
    eng.plagiarism.record_result(tid, PlagiarismResult(True, 8.5, f"checked/{tid}.pdf"))

    # 3) consultant approves and signs
    eng.state_machine.submit_role_review(who["consultant"], Role.CONSULTANT, tid,
                                         comments="Method is sound", assessment={"grade": "A"})
    eng.signing.upload_party_signed(who["consultant"], Role.CONSULTANT, tid,
                                    write_min_pdf(uploads / "consultant_signed.pdf", "consultant"))

    # 4) supervisor: signing-only path over the consultant's signed document
    r = eng.state_machine.submit_role_review(who["supervisor"], Role.SUPERVISOR, tid, comments="Agreed")
    print(f"supervisor review: outcome={r['outcome']} signing_only={r['signing_only']}")
    eng.signing.upload_party_signed(who["supervisor"], Role.SUPERVISOR, tid,
                                    write_min_pdf(uploads / "supervisor_signed.pdf", "supervisor"))

    # 5) reviewer
    eng.state_machine.submit_role_review(who["reviewer"], Role.REVIEWER, tid,
                                         comments="Ready for defense", assessment={"score": 18.5})
    eng.signing.upload_party_signed(who["reviewer"], Role.REVIEWER, tid,
                                    write_min_pdf(uploads / "reviewer_signed.pdf", "reviewer"))

    # 6) HOD + Dean
    print(eng.signing.readiness("hod", tid))
    eng.signing.upload_hod_signed(who["head_of_department"], tid,
                                  write_min_pdf(uploads / "hod_sup.pdf", "hod-sup"),
                                  write_min_pdf(uploads / "hod_rev.pdf", "hod-rev"))
    res = eng.signing.upload_dean_signed(who["dean"], tid,
                                         write_min_pdf(uploads / "dean_sup.pdf", "dean-sup"),
                                         write_min_pdf(uploads / "dean_rev.pdf", "dean-rev"))
    final = eng.signing.get_final_signed_artifacts(tid)
    print(Panel.fit(f"status={eng.store.theses.get(tid)['status']}\n"
                    f"superseded removed={res['superseded_removed']}\n"
                    f"final: {final['supervisor'].name}, {final['reviewer'].name}",
                    title="== Demo Flow finished =="))

    issues = eng.reconciler.scan()
    print(f"consistency issues: {len(issues)}")
    return 0 if not issues else 1


if __name__ == "__main__":
    sys.exit(main())
