# reports/review_pdf.py
from __future__ import annotations

from typing import Any, Dict, List, Optional
from pathlib import Path
from datetime import datetime, timezone

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.graphics.barcode import qr
from reportlab.graphics.shapes import Drawing

from thesisflow.security import sign_data

FONT_MAIN = "Helvetica"
FONT_BOLD = "Helvetica-Bold"

ROLE_TITLES = {
    "consultant": "Consultant Review",
    "supervisor": "Supervisor Review",
    "reviewer": "Reviewer Evaluation",
}


# ----------- Low-level text helpers -----------
def _wrap_text(c: canvas.Canvas, text: Any, max_width: float, font_name: str, font_size: float) -> List[str]:
    raw = "" if text is None else str(text)
    lines: List[str] = []
    for paragraph in raw.splitlines() or [raw]:
        acc: List[str] = []
        for w in paragraph.split():
            test = " ".join(acc + [w])
            if c.stringWidth(test, font_name, font_size) <= max_width:
                acc.append(w)
            else:
                if acc:
                    lines.append(" ".join(acc))
                acc = [w]
        if acc:
            lines.append(" ".join(acc))
    return lines


def _draw_kv(c: canvas.Canvas, x: float, y: float, key: str, val: Any, *,
             width: float, key_w: float = 45 * mm, size: float = 10.5) -> float:
    """Bold key in a fixed column, wrapped value beside it. Returns the next baseline."""
    c.setFillColor(colors.black)
    c.setFont(FONT_BOLD, size)
    c.drawString(x, y, key)
    c.setFont(FONT_MAIN, size)
    lines = _wrap_text(c, val, width - key_w, FONT_MAIN, size) or ["-"]
    for i, line in enumerate(lines):
        if i:
            y -= 5.5 * mm
        c.drawString(x + key_w, y, line)
    return y - 7 * mm


def _draw_hr(c: canvas.Canvas, x1: float, x2: float, y: float, color=colors.grey) -> None:
    c.setStrokeColor(color)
    c.setLineWidth(0.6)
    c.line(x1, y, x2, y)


def _draw_signature_box(c: canvas.Canvas, x: float, y: float, w: float, h: float, label: str) -> None:
    c.setStrokeColor(colors.black)
    c.setLineWidth(0.8)
    c.rect(x, y - h, w, h, stroke=1, fill=0)
    c.setFillColor(colors.black)
    c.setFont(FONT_MAIN, 10)
    c.drawString(x + 3 * mm, y - h - 4 * mm, label)
    c.setFillColor(colors.gray)
    c.setFont(FONT_MAIN, 9)
    for i, caption in enumerate(("Name:", "Signature:", "Date:")):
        c.drawString(x + 4 * mm, y - (8 + 6 * i) * mm, caption)


def _draw_qr(c: canvas.Canvas, data: str, x: float, y: float, size: float) -> None:
    code = qr.QrCodeWidget(data)
    b = code.getBounds()
    w, h = b[2] - b[0], b[3] - b[1]
    d = Drawing(size, size, transform=[size / w, 0, 0, size / h, 0, 0])
    d.add(code)
    d.drawOn(c, x, y)


def _utc_now_display() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%MZ")


def _draw_footer(c: canvas.Canvas, page_w: float, margin: float, fingerprint: str) -> None:
    _draw_hr(c, margin, page_w - margin, 25 * mm)
    c.setFillColor(colors.gray)
    c.setFont(FONT_MAIN, 8.5)
    c.drawString(margin, 20 * mm, f"Generated (UTC): {_utc_now_display()}")
    c.drawRightString(page_w - margin, 20 * mm, f"thesisflow review document · page {c.getPageNumber()}")
    c.setFont(FONT_MAIN, 7)
    c.drawString(margin, 15 * mm, f"fingerprint: {fingerprint}")


def _assessment_lines(assessment: Any) -> List[str]:
    if assessment is None:
        return []
    if isinstance(assessment, dict):
        return [f"{k}: {v}" for k, v in assessment.items()]
    if isinstance(assessment, (list, tuple)):
        return [str(x) for x in assessment]
    return [str(assessment)]


# ----------- Fingerprint -----------
def build_fingerprint(*, thesis_id: str, role: str, staff_id: str, iteration: int,
                      version: str = "v1", secret: Optional[str] = None) -> str:
    """
    Canonical payload:
      THESIS|v1|thesis=<id>;role=<role>;staff=<id>;iteration=<n>;sig=<base64url>
    Signature = HMAC-SHA256 over the prefix without ';sig=...'.
    """
    prefix = f"THESIS|{version}|thesis={thesis_id};role={role};staff={staff_id};iteration={iteration}"
    return f"{prefix};sig={sign_data(prefix, secret)}"


# ----------- Public API -----------
def render_review(
    out_path: Path,
    *,
    thesis: Dict[str, Any],
    student: Dict[str, Any],
    staff: Dict[str, Any],
    role: str,
    assessment: Any = None,
    comments: Optional[str] = None,
) -> Path:
    """
    Draw the unsigned review document for one reviewing role: title block,
    student and thesis details, assessment, comments and signature boxes.
    """
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    page_w, page_h = A4
    margin = 18 * mm
    width = page_w - 2 * margin

    c = canvas.Canvas(str(out), pagesize=A4)
    c.setTitle(f"{ROLE_TITLES.get(role, 'Review')} - {thesis.get('title') or thesis.get('id')}")
    c.setAuthor("thesisflow")

    fingerprint = build_fingerprint(thesis_id=thesis["id"], role=role, staff_id=staff.get("id", ""),
                                    iteration=int(thesis.get("current_iteration") or 0))

    y = page_h - margin
    c.setFont(FONT_BOLD, 16)
    c.drawString(margin, y, ROLE_TITLES.get(role, "Review"))
    c.setFont(FONT_MAIN, 10)
    c.setFillColor(colors.gray)
    c.drawRightString(page_w - margin, y, f"Iteration {thesis.get('current_iteration') or '-'}")
    y -= 6 * mm
    _draw_hr(c, margin, page_w - margin, y)
    y -= 9 * mm

    y = _draw_kv(c, margin, y, "Student", student.get("full_name") or student["id"], width=width)
    y = _draw_kv(c, margin, y, "Faculty / Dept.",
                 " / ".join(x for x in (student.get("faculty"), student.get("department")) if x) or "-",
                 width=width)
    y = _draw_kv(c, margin, y, "Thesis title", thesis.get("title") or "-", width=width)
    y = _draw_kv(c, margin, y, "Topic", student.get("thesis_topic") or "-", width=width)
    y = _draw_kv(c, margin, y, role.capitalize(), staff.get("full_name") or staff.get("id"), width=width)

    y -= 2 * mm
    c.setFillColor(colors.black)
    c.setFont(FONT_BOLD, 12)
    c.drawString(margin, y, "Assessment")
    y -= 7 * mm
    c.setFont(FONT_MAIN, 10.5)
    for line in _assessment_lines(assessment) or ["-"]:
        for wrapped in _wrap_text(c, line, width, FONT_MAIN, 10.5):
            c.drawString(margin + 4 * mm, y, wrapped)
            y -= 5.5 * mm

    y -= 4 * mm
    c.setFont(FONT_BOLD, 12)
    c.drawString(margin, y, "Comments")
    y -= 7 * mm
    c.setFont(FONT_MAIN, 10.5)
    for wrapped in _wrap_text(c, comments or "-", width, FONT_MAIN, 10.5):
        if y < margin + 70 * mm:
            _draw_footer(c, page_w, margin, fingerprint)
            c.showPage()
            y = page_h - margin
            c.setFont(FONT_MAIN, 10.5)
        c.drawString(margin + 4 * mm, y, wrapped)
        y -= 5.5 * mm

    box_w, box_h = (width - 10 * mm) / 2, 26 * mm
    top = margin + 65 * mm
    _draw_signature_box(c, margin, top, box_w, box_h, role.capitalize())
    _draw_signature_box(c, margin + box_w + 10 * mm, top, box_w, box_h, "Head of Department")
    _draw_qr(c, fingerprint, page_w - margin - 24 * mm, margin + 4 * mm + 10 * mm, 22 * mm)

    _draw_footer(c, page_w, margin, fingerprint)
    c.showPage()
    c.save()
    return out
