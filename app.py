#!/usr/bin/env python3
from __future__ import annotations

# ======================== Imports ========================
import json
import shutil
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from pathlib import Path

import typer
from rich import print
from rich.table import Table
from rich.panel import Panel

from thesisflow.context import Actor
from thesisflow.engine import Engine, build_engine, seed_demo
from thesisflow.errors import WorkflowError
from thesisflow.plagiarism import PlagiarismResult
from thesisflow.rules import REVIEWING_ROLES, Role

# ======================== Typer Apps ========================
app = typer.Typer(add_completion=False, help="thesisflow CLI")
admin_app = typer.Typer(help="Admin/maintenance commands")
assign_app = typer.Typer(help="Team assignment (HOD / Dean / Admin)")
request_app = typer.Typer(help="Student-initiated supervisor requests")
topic_app = typer.Typer(help="Thesis topic proposal and approval")
thesis_app = typer.Typer(help="Student thesis submission")
review_app = typer.Typer(help="Consultant / supervisor / reviewer reviews")
sign_app = typer.Typer(help="Signing chain: party, HOD, Dean")
plag_app = typer.Typer(help="Plagiarism check results")

app.add_typer(admin_app, name="admin")
app.add_typer(assign_app, name="assign")
app.add_typer(request_app, name="request")
app.add_typer(topic_app, name="topic")
app.add_typer(thesis_app, name="thesis")
app.add_typer(review_app, name="review")
app.add_typer(sign_app, name="sign")
app.add_typer(plag_app, name="plagiarism")

_STATE: Dict[str, Any] = {"data_dir": None, "files_dir": None, "engine": None}


@app.callback()
def main(
    data_dir: Optional[Path] = typer.Option(None, envvar="THESIS_DATA_DIR", help="Document/audit directory"),
    files_dir: Optional[Path] = typer.Option(None, envvar="THESIS_FILES_DIR", help="Artifact store root"),
):
    _STATE.update(data_dir=data_dir, files_dir=files_dir, engine=None)


# ======================== Helpers ========================
def _engine() -> Engine:
    if _STATE["engine"] is None:
        _STATE["engine"] = build_engine(_STATE["data_dir"], _STATE["files_dir"], console=True)
    return _STATE["engine"]


def _actor(user_id: str) -> Actor:
    user = _engine().store.users.get(user_id)
    if user is None:
        raise typer.BadParameter(f"Unknown user: {user_id}")
    return Actor.from_user(user)


def _dump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


@contextmanager
def _handled() -> Iterator[None]:
    """WorkflowError -> red panel with its details, exit code 1."""
    try:
        yield
    except WorkflowError as ex:
        print(Panel.fit(f"[red]{ex.code}[/red] {ex.message}\n{_dump(ex.details)}", title="Failed"))
        raise typer.Exit(code=1)


def _parse_assessment(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# ======================== Admin / Maintenance ========================
@admin_app.command("init")
def init():
    """Create the data and artifact directories and empty collections."""
    eng = _engine()
    eng.store.users.all()
    typer.secho(f"Initialized data at {eng.audit.directory} (artifacts: {eng.artifacts.root})",
                fg=typer.colors.GREEN)


@admin_app.command("seed")
def seed(faculty: str = typer.Option("Engineering"), department: str = typer.Option("Computer")):
    """Provision one demo user per role if the store is empty."""
    eng = _engine()
    if eng.store.users.all():
        typer.secho("Users already exist; nothing seeded.", fg=typer.colors.YELLOW)
        return
    ids = seed_demo(eng, faculty=faculty, department=department)
    tbl = Table(title="Seeded users")
    tbl.add_column("Role")
    tbl.add_column("Id")
    for role, uid in ids.items():
        tbl.add_row(role, uid)
    print(tbl)


@admin_app.command("health")
def health_check(json_out: bool = typer.Option(False, help="Print JSON object instead of colored text")):
    """Counts plus a consistency scan."""
    eng = _engine()
    issues = eng.reconciler.scan()
    report = dict(eng.health(), ok=not issues, issues=len(issues))
    if json_out:
        print(Panel.fit(_dump(report)))
        return
    print(Panel.fit("[green]HEALTH OK[/green]" if report["ok"] else
                    f"[red]{len(issues)} CONSISTENCY ISSUE(S)[/red] (run: admin reconcile)"))
    tbl = Table(title="Theses by status")
    tbl.add_column("Status")
    tbl.add_column("Count", justify="right")
    for status, count in report["theses"].items():
        tbl.add_row(status, str(count))
    print(tbl)


@admin_app.command("reconcile")
def reconcile(apply: bool = typer.Option(False, "--apply", help="Repair what the scan finds"),
              json_out: bool = typer.Option(False, help="Print JSON")):
    """Scan (and optionally repair) links, iterations, status mirrors and incomplete operations."""
    eng = _engine()
    issues = eng.reconciler.scan()
    if apply:
        result = eng.reconciler.repair(issues, actor="cli")
        if json_out:
            print(_dump(result))
        else:
            typer.secho(f"Repaired {len(result['applied'])}, manual {len(result['skipped'])}",
                        fg=typer.colors.GREEN if not result["skipped"] else typer.colors.YELLOW)
        return
    if json_out:
        print(_dump([i.to_dict() for i in issues]))
        return
    if not issues:
        print(Panel.fit("[green]No inconsistencies[/green]"))
        return
    tbl = Table(title=f"{len(issues)} issue(s)")
    for c in ["Kind", "Entity", "Repair", "Detail"]:
        tbl.add_column(c)
    for i in issues:
        tbl.add_row(i.kind, i.entity_id, i.repair or "[red]manual[/red]", json.dumps(i.detail, default=str))
    print(tbl)


@admin_app.command("notifications")
def notifications(limit: int = typer.Option(20), event: Optional[str] = typer.Option(None)):
    items = _engine().notifier.list_recent(limit=limit, event=event)
    tbl = Table(title="Recent notifications")
    for c in ["Time", "Event", "Level", "Actor", "Payload"]:
        tbl.add_column(c)
    for n in items:
        tbl.add_row(n.get("ts", ""), n.get("event", ""), n.get("level", ""), str(n.get("actor") or ""),
                    json.dumps(n.get("payload"), ensure_ascii=False, default=str))
    print(tbl)


@admin_app.command("purge-notifs")
def purge_notifications():
    """Clear the notification log."""
    _engine().notifier.purge_all()
    typer.secho("Notifications cleared.", fg=typer.colors.GREEN)


@admin_app.command("add-user")
def add_user(role: Role = typer.Option(...), name: str = typer.Option(...),
             faculty: Optional[str] = typer.Option(None), department: Optional[str] = typer.Option(None),
             user_id: Optional[str] = typer.Option(None, "--id")):
    with _handled():
        user = _engine().create_user(role, name, faculty=faculty, department=department, user_id=user_id)
    typer.secho(f"Created {user['role']} {user['id']}", fg=typer.colors.GREEN)


# ======================== Assignment ========================
@assign_app.command("team")
def assign_team(as_: str = typer.Option(..., "--as", help="Assigning user id"),
                student: str = typer.Option(...),
                supervisor: Optional[str] = typer.Option(None),
                consultant: Optional[str] = typer.Option(None),
                reviewer: Optional[str] = typer.Option(None)):
    with _handled():
        result = _engine().assignment.assign_team(_actor(as_), student, supervisor_id=supervisor,
                                                  consultant_id=consultant, reviewer_id=reviewer)
    tbl = Table(title=f"Team for {student}")
    tbl.add_column("Role")
    tbl.add_column("Outcome")
    for role, outcome in result["assignments"].items():
        tbl.add_row(role, outcome)
    print(tbl)
    if result["thesis"].get("thesis_id"):
        print(f"thesis status: [bold]{result['thesis']['status']}[/bold]")


# ======================== Supervisor requests ========================
@request_app.command("create")
def request_create(as_: str = typer.Option(..., "--as"), supervisor: str = typer.Option(...),
                   message: str = typer.Option("")):
    with _handled():
        req = _engine().assignment.request_supervisor(_actor(as_), supervisor, message)
    typer.secho(f"Request {req['id']} sent", fg=typer.colors.GREEN)


@request_app.command("accept")
def request_accept(request_id: str, as_: str = typer.Option(..., "--as"), message: str = typer.Option("")):
    with _handled():
        result = _engine().assignment.accept_supervisor_request(_actor(as_), request_id, message)
    typer.secho(f"Accepted; cancelled {len(result['cancelled_requests'])} other request(s)", fg=typer.colors.GREEN)


@request_app.command("decline")
def request_decline(request_id: str, as_: str = typer.Option(..., "--as"), reason: str = typer.Option(...)):
    with _handled():
        _engine().assignment.decline_supervisor_request(_actor(as_), request_id, reason)
    typer.secho("Declined", fg=typer.colors.YELLOW)


@request_app.command("cancel")
def request_cancel(request_id: str, as_: str = typer.Option(..., "--as")):
    with _handled():
        _engine().assignment.cancel_supervisor_request(_actor(as_), request_id)
    typer.secho("Cancelled", fg=typer.colors.YELLOW)


@request_app.command("list")
def request_list(as_: str = typer.Option(..., "--as"), status: Optional[str] = typer.Option(None)):
    actor = _actor(as_)
    scope = {"student_id": actor.id} if actor.role is Role.STUDENT else {"supervisor_id": actor.id}
    if actor.is_admin:
        scope = {}
    with _handled():
        result = _engine().assignment.list_requests(status=status, **scope)
    tbl = Table(title="Supervisor requests")
    for c in ["Id", "Student", "Supervisor", "Status", "Requested"]:
        tbl.add_column(c)
    for r in result["requests"]:
        tbl.add_row(r["id"], r["student_id"], r["supervisor_id"], r["status"], r.get("request_date", ""))
    print(tbl)
    print(result["stats"])


# ======================== Topic ========================
@topic_app.command("propose")
def topic_propose(topic: str, as_: str = typer.Option(..., "--as")):
    with _handled():
        _engine().topics.propose_topic(_actor(as_), topic)
    typer.secho("Topic proposed", fg=typer.colors.GREEN)


@topic_app.command("suggest")
def topic_suggest(topic: str, as_: str = typer.Option(..., "--as"), student: str = typer.Option(...)):
    """Supervisor proposes a topic for an assigned student."""
    with _handled():
        _engine().topics.supervisor_propose_topic(_actor(as_), student, topic)
    typer.secho("Topic suggested", fg=typer.colors.GREEN)


@topic_app.command("respond")
def topic_respond(as_: str = typer.Option(..., "--as"), accept: bool = typer.Option(..., "--accept/--reject"),
                  comments: Optional[str] = typer.Option(None)):
    with _handled():
        _engine().topics.respond_to_topic(_actor(as_), accept, comments)
    typer.secho("Response recorded", fg=typer.colors.GREEN)


@topic_app.command("approve")
def topic_approve(as_: str = typer.Option(..., "--as"), student: str = typer.Option(...),
                  approved: bool = typer.Option(..., "--approve/--reject"),
                  comments: Optional[str] = typer.Option(None)):
    with _handled():
        _engine().topics.approve_topic(_actor(as_), student, approved, comments)
    typer.secho("Topic approved" if approved else "Topic rejected",
                fg=typer.colors.GREEN if approved else typer.colors.YELLOW)


# ======================== Thesis ========================
@thesis_app.command("submit")
def thesis_submit(as_: str = typer.Option(..., "--as"), title: str = typer.Option(...),
                  file: Path = typer.Option(..., exists=True, dir_okay=False)):
    with _handled():
        thesis = _engine().theses.submit_thesis(_actor(as_), title, file)
    typer.secho(f"Thesis {thesis['id']} status={thesis['status']} iteration={thesis.get('current_iteration')}",
                fg=typer.colors.GREEN)


@thesis_app.command("sign")
def thesis_sign(as_: str = typer.Option(..., "--as")):
    """Student counter-signs the current submission."""
    with _handled():
        _engine().theses.sign_submission(_actor(as_))
    typer.secho("Submission signed", fg=typer.colors.GREEN)


@thesis_app.command("delete")
def thesis_delete(as_: str = typer.Option(..., "--as"), yes: bool = typer.Option(False, "--yes", "-y")):
    if not yes:
        typer.confirm("Delete the thesis, its documents and every staff link?", abort=True)
    with _handled():
        result = _engine().theses.delete_thesis(_actor(as_))
    typer.secho(f"Deleted {result['thesis_id']} ({result['artifacts_removed']} document(s))", fg=typer.colors.YELLOW)


@thesis_app.command("show")
def thesis_show(student_id: str):
    with _handled():
        info = _engine().theses.status(student_id)
    thesis = info["thesis"] or {}
    tbl = Table(title=f"Thesis of {student_id}")
    tbl.add_column("Field")
    tbl.add_column("Value")
    tbl.add_row("status", info["thesis_status"])
    for role in REVIEWING_ROLES:
        tbl.add_row(role.value, str(info["team"].get(role.value) or "-"))
    if thesis:
        tbl.add_row("thesis id", thesis["id"])
        tbl.add_row("iteration", f"{thesis.get('current_iteration')} (reviews: {thesis.get('total_review_count')})")
        tbl.add_row("student signed", str(bool(thesis.get("student_signed"))))
        pc = thesis.get("plagiarism_check") or {}
        tbl.add_row("plagiarism", f"checked={pc.get('is_checked')} approved={pc.get('is_approved')} "
                                  f"score={pc.get('similarity_score')}")
    print(tbl)


# ======================== Review ========================
@review_app.command("submit")
def review_submit(as_: str = typer.Option(..., "--as"), thesis: str = typer.Option(...),
                  role: str = typer.Option(..., help="consultant | supervisor | reviewer"),
                  comments: Optional[str] = typer.Option(None),
                  assessment: Optional[str] = typer.Option(None, help="JSON or text; present = final approval")):
    with _handled():
        result = _engine().state_machine.submit_role_review(_actor(as_), role, thesis, comments=comments,
                                                            assessment=_parse_assessment(assessment))
    print(Panel.fit(_dump(result), title=f"{role} review: {result['outcome']}"))


@review_app.command("re-review")
def review_re_review(as_: str = typer.Option(..., "--as"), thesis: str = typer.Option(...),
                     role: str = typer.Option(...)):
    with _handled():
        result = _engine().state_machine.re_review(_actor(as_), role, thesis)
    typer.secho(f"{role} review retracted; status={result['status']}", fg=typer.colors.YELLOW)


# ======================== Signing ========================
@sign_app.command("unsigned")
def sign_unsigned(thesis: str = typer.Option(...), role: str = typer.Option(...),
                  out: Path = typer.Option(Path("."), file_okay=False)):
    """Copy the generated (unsigned) review document for signing."""
    with _handled():
        src = _engine().signing.get_unsigned_artifact(role, thesis)
    out.mkdir(parents=True, exist_ok=True)
    dst = out / f"{role}_review_unsigned.pdf"
    shutil.copyfile(src, dst)
    typer.secho(f"Saved {dst}", fg=typer.colors.GREEN)


@sign_app.command("party")
def sign_party(as_: str = typer.Option(..., "--as"), thesis: str = typer.Option(...),
               role: str = typer.Option(...), file: Path = typer.Option(..., exists=True, dir_okay=False)):
    with _handled():
        result = _engine().signing.upload_party_signed(_actor(as_), role, thesis, file)
    typer.secho(f"{role} signature stored; status={result['status']}", fg=typer.colors.GREEN)


@sign_app.command("hod")
def sign_hod(as_: str = typer.Option(..., "--as"), thesis: str = typer.Option(...),
             supervisor_file: Optional[Path] = typer.Option(None, exists=True, dir_okay=False),
             reviewer_file: Optional[Path] = typer.Option(None, exists=True, dir_okay=False)):
    with _handled():
        result = _engine().signing.upload_hod_signed(_actor(as_), thesis, supervisor_file, reviewer_file)
    typer.secho(f"HOD signed; status={result['status']}", fg=typer.colors.GREEN)


@sign_app.command("dean")
def sign_dean(as_: str = typer.Option(..., "--as"), thesis: str = typer.Option(...),
              supervisor_file: Optional[Path] = typer.Option(None, exists=True, dir_okay=False),
              reviewer_file: Optional[Path] = typer.Option(None, exists=True, dir_okay=False)):
    with _handled():
        result = _engine().signing.upload_dean_signed(_actor(as_), thesis, supervisor_file, reviewer_file)
    typer.secho(f"Dean signed; {result['superseded_removed']} superseded document(s) removed",
                fg=typer.colors.GREEN)


@sign_app.command("readiness")
def sign_readiness(thesis: str = typer.Option(...), tier: str = typer.Option(..., help="hod | dean")):
    with _handled():
        result = _engine().signing.readiness(tier, thesis)
    tbl = Table(title=f"{tier} readiness: {'READY' if result['ready'] else 'NOT READY'}")
    tbl.add_column("Check")
    tbl.add_column("OK")
    for name, ok in result["checks"].items():
        tbl.add_row(name, "[green]yes[/green]" if ok else "[red]no[/red]")
    print(tbl)


@sign_app.command("final")
def sign_final(thesis: str = typer.Option(...), out: Path = typer.Option(Path("."), file_okay=False)):
    """Copy the Dean-signed pair into `out`."""
    with _handled():
        pair = _engine().signing.get_final_signed_artifacts(thesis)
    out.mkdir(parents=True, exist_ok=True)
    for side, src in pair.items():
        dst = out / f"{side}_review_final.pdf"
        shutil.copyfile(src, dst)
        print(f"[green]Saved[/green] {dst}")


# ======================== Plagiarism ========================
@plag_app.command("record")
def plagiarism_record(thesis: str = typer.Option(...), score: float = typer.Option(...),
                      approved: bool = typer.Option(..., "--approved/--rejected"),
                      url: str = typer.Option(..., help="Checked file reference")):
    """Store a result delivered by the external checker."""
    with _handled():
        _engine().plagiarism.record_result(thesis, PlagiarismResult(approved, score, url), actor="cli")
    typer.secho("Result recorded", fg=typer.colors.GREEN)


@plag_app.command("show")
def plagiarism_show(thesis: str = typer.Option(...)):
    with _handled():
        print(_engine().plagiarism.check_latest(thesis))


# ======================== Entry ========================
if __name__ == "__main__":
    app()
