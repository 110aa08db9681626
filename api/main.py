from __future__ import annotations

# =======================
# FastAPI application
# =======================

from typing import Any, Dict, Iterator, Optional
from datetime import datetime, timezone
from pathlib import Path
import os
import tempfile

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, validator

from thesisflow.context import Actor
from thesisflow.engine import Engine, build_engine
from thesisflow.errors import AuthorizationError, WorkflowError
from thesisflow.plagiarism import PlagiarismResult
from thesisflow.rules import Role, Tier, outranks_or_equal
from thesisflow.security import actor_from_token, random_token

app = FastAPI(
    title="thesisflow API",
    description="Thesis workflow: team assignment, review iterations and the signing chain",
    version="1.0.0",
)

# CORS for local dev tools / frontends (tighten in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =======================
# Utilities & Dependencies
# =======================

_ENGINE: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine built from THESIS_* environment variables."""
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = build_engine()
    return _ENGINE


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _get_bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Extract Bearer token from Authorization header."""
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def current_actor(token: Optional[str] = Depends(_get_bearer_token)) -> Actor:
    """Resolve the caller from the JWT; 401 when it is missing."""
    if not token:
        raise HTTPException(401, detail="Missing bearer token")
    return actor_from_token(token)


def _require_role(actor: Actor, role: Role) -> None:
    if actor.role is not role and not actor.is_admin:
        raise AuthorizationError(f"This action requires the {role.value} role", {"role": actor.role.value})


def _save_upload_to_tmp(uf: Optional[UploadFile]) -> Optional[Path]:
    """Persist an UploadFile into a temp file (streamed, chunked). None passes through."""
    if uf is None:
        return None
    fd, tmp_path = tempfile.mkstemp(prefix="upload_", suffix=Path(uf.filename or "").suffix or ".pdf")
    try:
        with os.fdopen(fd, "wb") as f:
            while True:
                chunk = uf.file.read(1024 * 1024)  # 1MB chunks
                if not chunk:
                    break
                f.write(chunk)
    finally:
        uf.file.close()
    return Path(tmp_path)


def _cleanup(*paths: Optional[Path]) -> None:
    for p in paths:
        if p is not None:
            p.unlink(missing_ok=True)


def _multipart_mixed(files: Dict[str, Path]) -> StreamingResponse:
    """One part per file, each with its own Content-Disposition."""
    boundary = f"thesisflow-{random_token(12)}"

    def _body() -> Iterator[bytes]:
        for name, path in files.items():
            yield (f"--{boundary}\r\n"
                   f"Content-Type: application/pdf\r\n"
                   f"Content-Disposition: attachment; name=\"{name}\"; filename=\"{name}_review.pdf\"\r\n"
                   f"Content-Length: {path.stat().st_size}\r\n\r\n").encode("ascii")
            with path.open("rb") as f:
                while True:
                    chunk = f.read(1024 * 1024)
                    if not chunk:
                        break
                    yield chunk
            yield b"\r\n"
        yield f"--{boundary}--\r\n".encode("ascii")

    return StreamingResponse(_body(), media_type=f"multipart/mixed; boundary={boundary}")


# =======================
# Pydantic Models
# =======================

class AssignTeamIn(BaseModel):
    supervisor_id: Optional[str] = None
    consultant_id: Optional[str] = None
    reviewer_id: Optional[str] = None


class SupervisorRequestIn(BaseModel):
    supervisor_id: str
    message: str = Field("", max_length=1000)


class RequestAcceptIn(BaseModel):
    response_message: str = Field("", max_length=1000)


class RequestDeclineIn(BaseModel):
    reason: str

    @validator("reason")
    def not_empty(cls, v):
        if not v or not str(v).strip():
            raise ValueError("Decline reason is required")
        return v.strip()


class TopicIn(BaseModel):
    topic: str = Field(..., min_length=3, max_length=300)


class TopicResponseIn(BaseModel):
    accepted: bool
    comments: Optional[str] = None


class TopicApprovalIn(BaseModel):
    approved: bool
    comments: Optional[str] = None


class ReviewIn(BaseModel):
    comments: Optional[str] = None
    assessment: Optional[Any] = None


class PlagiarismResultIn(BaseModel):
    is_approved: bool
    similarity_score: float = Field(..., ge=0, le=100)
    checked_file_url: str
    report_url: Optional[str] = None


class UserIn(BaseModel):
    role: Role
    full_name: str = Field(..., min_length=2, max_length=200)
    faculty: Optional[str] = None
    department: Optional[str] = None
    user_id: Optional[str] = None


# =======================
# Health & Admin (JSON)
# =======================

@app.get("/health", tags=["Admin"])
def health(engine: Engine = Depends(get_engine)):
    return {"ok": True, "ts": _now_iso(), **engine.health()}


@app.post("/admin/users", status_code=201, tags=["Admin"])
def admin_create_user(inp: UserIn, actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    _require_role(actor, Role.ADMIN)
    return engine.create_user(inp.role, inp.full_name, faculty=inp.faculty,
                              department=inp.department, user_id=inp.user_id)


@app.get("/admin/reconcile", tags=["Admin"])
def admin_reconcile_scan(actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """Report inconsistencies without changing anything."""
    _require_role(actor, Role.ADMIN)
    issues = engine.reconciler.scan()
    return {"count": len(issues), "issues": [i.to_dict() for i in issues]}


@app.post("/admin/reconcile", tags=["Admin"])
def admin_reconcile_apply(actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    _require_role(actor, Role.ADMIN)
    return engine.reconciler.repair(actor=actor.id)


@app.get("/admin/notifications", tags=["Admin"])
def admin_notifications(limit: int = 50, event: Optional[str] = None,
                        actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    _require_role(actor, Role.ADMIN)
    return {"items": engine.notifier.list_recent(limit=limit, event=event)}


@app.post("/admin/notifications/purge", tags=["Admin"])
def admin_notifications_purge(actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """Purge all notifications (danger zone)."""
    _require_role(actor, Role.ADMIN)
    engine.notifier.purge_all()
    return {"ok": True}


@app.get("/admin/audit", tags=["Admin"])
def admin_audit(limit: int = 100, level: Optional[str] = None,
                actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    _require_role(actor, Role.ADMIN)
    return {"items": engine.audit.records(limit=limit, level=level)}


# =======================
# Assignment
# =======================

@app.post("/students/{student_id}/team", tags=["Assignment"])
def assign_team(student_id: str, inp: AssignTeamIn,
                actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.assignment.assign_team(actor, student_id, supervisor_id=inp.supervisor_id,
                                         consultant_id=inp.consultant_id, reviewer_id=inp.reviewer_id)


@app.get("/students/{student_id}/available-supervisors", tags=["Assignment"])
def available_supervisors(student_id: str, actor: Actor = Depends(current_actor),
                          engine: Engine = Depends(get_engine)):
    if actor.role is Role.STUDENT and actor.id != student_id:
        raise AuthorizationError("Students can only look up their own supervisors", {})
    return {"items": engine.assignment.available_supervisors(student_id)}


# =======================
# Supervisor requests
# =======================

@app.post("/requests", status_code=201, tags=["Requests"])
def create_request(inp: SupervisorRequestIn, actor: Actor = Depends(current_actor),
                   engine: Engine = Depends(get_engine)):
    return engine.assignment.request_supervisor(actor, inp.supervisor_id, inp.message)


@app.post("/requests/{request_id}/accept", tags=["Requests"])
def accept_request(request_id: str, inp: Optional[RequestAcceptIn] = None,
                   actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.assignment.accept_supervisor_request(actor, request_id, inp.response_message if inp else "")


@app.post("/requests/{request_id}/decline", tags=["Requests"])
def decline_request(request_id: str, inp: RequestDeclineIn,
                    actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.assignment.decline_supervisor_request(actor, request_id, inp.reason)


@app.post("/requests/{request_id}/cancel", tags=["Requests"])
def cancel_request(request_id: str, actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.assignment.cancel_supervisor_request(actor, request_id)


@app.get("/requests", tags=["Requests"])
def list_requests(status: Optional[str] = None, student_id: Optional[str] = None,
                  supervisor_id: Optional[str] = None,
                  actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """Students see their own requests, supervisors the ones addressed to them."""
    if actor.role is Role.STUDENT:
        student_id, supervisor_id = actor.id, None
    elif actor.role is Role.SUPERVISOR:
        supervisor_id = actor.id
    return engine.assignment.list_requests(student_id=student_id, supervisor_id=supervisor_id, status=status)


# =======================
# Topic
# =======================

@app.post("/topic", tags=["Topic"])
def propose_topic(inp: TopicIn, actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    _require_role(actor, Role.STUDENT)
    return engine.topics.propose_topic(actor, inp.topic)


@app.post("/topic/response", tags=["Topic"])
def respond_to_topic(inp: TopicResponseIn, actor: Actor = Depends(current_actor),
                     engine: Engine = Depends(get_engine)):
    _require_role(actor, Role.STUDENT)
    return engine.topics.respond_to_topic(actor, inp.accepted, inp.comments)


@app.post("/students/{student_id}/topic", tags=["Topic"])
def supervisor_propose_topic(student_id: str, inp: TopicIn, actor: Actor = Depends(current_actor),
                             engine: Engine = Depends(get_engine)):
    return engine.topics.supervisor_propose_topic(actor, student_id, inp.topic)


@app.post("/students/{student_id}/topic/approval", tags=["Topic"])
def approve_topic(student_id: str, inp: TopicApprovalIn, actor: Actor = Depends(current_actor),
                  engine: Engine = Depends(get_engine)):
    return engine.topics.approve_topic(actor, student_id, inp.approved, inp.comments)


# =======================
# Thesis (student side)
# =======================

@app.post("/thesis", tags=["Thesis"])
async def submit_thesis(title: str = Form(...), file: UploadFile = File(...),
                        actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """First submission, replacement, or re-submission after revisions."""
    tmp = _save_upload_to_tmp(file)
    try:
        return engine.theses.submit_thesis(actor, title, tmp)
    finally:
        _cleanup(tmp)


@app.post("/thesis/sign", tags=["Thesis"])
def sign_submission(actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.theses.sign_submission(actor)


@app.delete("/thesis", tags=["Thesis"])
def delete_thesis(actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.theses.delete_thesis(actor)


@app.get("/students/{student_id}/thesis", tags=["Thesis"])
def thesis_status(student_id: str, actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    if actor.role is Role.STUDENT and actor.id != student_id:
        raise AuthorizationError("Students can only view their own thesis", {})
    return engine.theses.status(student_id)


# =======================
# Review
# =======================

@app.post("/theses/{thesis_id}/reviews/{role}", tags=["Review"])
def submit_review(thesis_id: str, role: str, inp: ReviewIn,
                  actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """comments only: revision request; with assessment: final approval."""
    return engine.state_machine.submit_role_review(actor, role, thesis_id,
                                                   comments=inp.comments, assessment=inp.assessment)


@app.post("/theses/{thesis_id}/reviews/{role}/re-review", tags=["Review"])
def re_review(thesis_id: str, role: str, actor: Actor = Depends(current_actor),
              engine: Engine = Depends(get_engine)):
    return engine.state_machine.re_review(actor, role, thesis_id)


@app.get("/theses/{thesis_id}/reviews/{role}/unsigned", tags=["Review"])
def download_unsigned(thesis_id: str, role: str, actor: Actor = Depends(current_actor),
                      engine: Engine = Depends(get_engine)):
    path = engine.signing.get_unsigned_artifact(role, thesis_id)
    return FileResponse(str(path), media_type="application/pdf", filename=f"{role}_review_unsigned.pdf")


# =======================
# Signing
# =======================

@app.post("/theses/{thesis_id}/signatures/party/{role}", tags=["Signing"])
async def upload_party_signed(thesis_id: str, role: str, file: Optional[UploadFile] = File(None),
                              actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    tmp = _save_upload_to_tmp(file)
    try:
        return engine.signing.upload_party_signed(actor, role, thesis_id, tmp)
    finally:
        _cleanup(tmp)


@app.post("/theses/{thesis_id}/signatures/hod", tags=["Signing"])
async def upload_hod_signed(thesis_id: str,
                            supervisor_file: Optional[UploadFile] = File(None),
                            reviewer_file: Optional[UploadFile] = File(None),
                            actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """Both files in one call; a partial pair is rejected without changes."""
    sup, rev = _save_upload_to_tmp(supervisor_file), _save_upload_to_tmp(reviewer_file)
    try:
        return engine.signing.upload_hod_signed(actor, thesis_id, sup, rev)
    finally:
        _cleanup(sup, rev)


@app.post("/theses/{thesis_id}/signatures/dean", tags=["Signing"])
async def upload_dean_signed(thesis_id: str,
                             supervisor_file: Optional[UploadFile] = File(None),
                             reviewer_file: Optional[UploadFile] = File(None),
                             actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    sup, rev = _save_upload_to_tmp(supervisor_file), _save_upload_to_tmp(reviewer_file)
    try:
        return engine.signing.upload_dean_signed(actor, thesis_id, sup, rev)
    finally:
        _cleanup(sup, rev)


@app.get("/theses/{thesis_id}/signatures/{tier}/readiness", tags=["Signing"])
def signing_readiness(thesis_id: str, tier: Tier, actor: Actor = Depends(current_actor),
                      engine: Engine = Depends(get_engine)):
    return engine.signing.readiness(tier, thesis_id)


@app.get("/theses/{thesis_id}/signatures/{tier}/pending", tags=["Signing"])
def pending_pair(thesis_id: str, tier: Tier, actor: Actor = Depends(current_actor),
                 engine: Engine = Depends(get_engine)):
    """The pair waiting for this tier's countersignature, as multipart/mixed."""
    if not outranks_or_equal(actor.role, Role.HEAD_OF_DEPARTMENT):
        raise AuthorizationError("Only approvers can download pending pairs", {"role": actor.role.value})
    return _multipart_mixed(engine.signing.get_pair_for_tier(tier, thesis_id))


@app.get("/theses/{thesis_id}/final", tags=["Signing"])
def final_signed(thesis_id: str, actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    """Dean-signed supervisor and reviewer documents, one part each."""
    return _multipart_mixed(engine.signing.get_final_signed_artifacts(thesis_id))


# =======================
# Plagiarism
# =======================

@app.get("/theses/{thesis_id}/plagiarism", tags=["Plagiarism"])
def plagiarism_latest(thesis_id: str, actor: Actor = Depends(current_actor), engine: Engine = Depends(get_engine)):
    return engine.plagiarism.check_latest(thesis_id)


@app.post("/theses/{thesis_id}/plagiarism", tags=["Plagiarism"])
def plagiarism_record(thesis_id: str, inp: PlagiarismResultIn, actor: Actor = Depends(current_actor),
                      engine: Engine = Depends(get_engine)):
    """Result delivered by the external checking service."""
    _require_role(actor, Role.ADMIN)
    result = PlagiarismResult(is_approved=inp.is_approved, similarity_score=inp.similarity_score,
                              checked_file_url=inp.checked_file_url, report_url=inp.report_url)
    return engine.plagiarism.record_result(thesis_id, result, actor=actor.id)


# =======================
# Errors -> JSON
# =======================

@app.exception_handler(WorkflowError)
async def workflow_error_handler(_, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError):
    """Unknown role/tier names and similar bad input."""
    return JSONResponse(status_code=400, content={"error": str(exc) or "Invalid request",
                                                  "code": "validation_error", "details": {}})
