# FILE: app/services/pdf_prescription.py
from __future__ import annotations

from datetime import datetime, date
from io import BytesIO
from typing import Any, Dict, List, Optional

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from app.core.config import settings
from app.models.medicine import Medicine
from app.models.patient import Patient
from app.models.prescription import Prescription

INK = colors.HexColor("#0f172a")
MUTED = colors.HexColor("#475569")
RULE = colors.HexColor("#cbd5e1")


# -------------------------------
# Helpers
# -------------------------------
def _safe(v: Any) -> str:
    return "" if v is None else str(v)


def _fmt_date(v: Any) -> str:
    if isinstance(v, datetime):
        return v.strftime("%d-%m-%Y")
    if isinstance(v, date):
        return v.strftime("%d-%m-%Y")
    return _safe(v) or "—"


def _wrap(text: str, font: str, size: float, max_w: float) -> List[str]:
    s = (text or "").replace("\n", " ").strip()
    if not s:
        return [""]
    words = s.split()
    lines: List[str] = []
    cur = ""
    for w in words:
        cand = (cur + " " + w).strip()
        if pdfmetrics.stringWidth(cand, font, size) <= max_w:
            cur = cand
        else:
            if cur:
                lines.append(cur)
            cur = w
    if cur:
        lines.append(cur)
    return lines


def freq_to_slots(freq: Optional[str]) -> tuple[int, int, int, int]:
    """
    Morning / Afternoon / Evening / Night counts for a frequency code
    ("BD", "TDS", "1-0-1", ...). Unknown codes give zeros.
    """
    if not freq:
        return (0, 0, 0, 0)
    f = str(freq).strip().upper()

    if "-" in f:
        nums: list[int] = []
        for p in [p.strip() for p in f.split("-") if p.strip() != ""]:
            try:
                nums.append(int(float(p)))
            except ValueError:
                nums.append(0)
        if len(nums) == 3:
            return (nums[0], nums[1], 0, nums[2])
        if len(nums) >= 4:
            return (nums[0], nums[1], nums[2], nums[3])

    mapping = {
        "OD": (1, 0, 0, 0),
        "QD": (1, 0, 0, 0),
        "BD": (1, 0, 0, 1),
        "BID": (1, 0, 0, 1),
        "TID": (1, 1, 0, 1),
        "TDS": (1, 1, 0, 1),
        "QID": (1, 1, 1, 1),
        "HS": (0, 0, 0, 1),
        "NIGHT": (0, 0, 0, 1),
    }
    return mapping.get(f, (0, 0, 0, 0))


def _draw_qr(c: canvas.Canvas, text: str, x: float, y: float, size: float) -> None:
    widget = QrCodeWidget(text)
    x0, y0, x1, y1 = widget.getBounds()
    bw, bh = (x1 - x0), (y1 - y0)
    d = Drawing(size, size, transform=[size / bw, 0, 0, size / bh, 0, 0])
    d.add(widget)
    renderPDF.draw(d, c, x, y)


# -------------------------------
# Builder
# -------------------------------
def build_prescription_pdf(
    rx: Prescription,
    *,
    qr_text: str,
    patient: Optional[Patient] = None,
    medicines: Optional[Dict[int, Medicine]] = None,
) -> bytes:
    """
    A4 prescription with patient block, medicine table and the signed
    QR credential in the top-right corner.
    """
    medicines = medicines or {}
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    W, H = A4
    M = 14 * mm
    content_w = W - 2 * M
    qr_size = 38 * mm

    # Header
    y = H - M
    c.setFillColor(INK)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(M, y - 5 * mm, settings.PROJECT_NAME)
    c.setFont("Helvetica-Bold", 11)
    c.drawString(M, y - 12 * mm, "PRESCRIPTION")

    _draw_qr(c, qr_text, W - M - qr_size, y - qr_size, qr_size)
    c.setFont("Helvetica", 7)
    c.setFillColor(MUTED)
    c.drawCentredString(W - M - qr_size / 2, y - qr_size - 3 * mm, "Scan to verify")

    # Patient / prescription details
    c.setFillColor(INK)
    yy = y - 20 * mm
    details = [
        ("Rx No", rx.prescription_number),
        ("Issued", _fmt_date(rx.issued_at)),
        ("Valid until", _fmt_date(rx.valid_until)),
        ("Patient", _safe(getattr(patient, "full_name", "")) or "—"),
        ("UHID", _safe(getattr(patient, "uhid", "")) or "—"),
        ("Prescriber", rx.prescriber_id),
        ("Status", rx.status.value if rx.status else "—"),
    ]
    for label, value in details:
        c.setFont("Helvetica-Bold", 8.6)
        c.setFillColor(MUTED)
        c.drawString(M, yy, f"{label}:")
        c.setFont("Helvetica-Bold", 9.1)
        c.setFillColor(INK)
        c.drawString(M + 24 * mm, yy, _safe(value))
        yy -= 5 * mm

    if rx.diagnosis:
        c.setFont("Helvetica-Bold", 8.6)
        c.setFillColor(MUTED)
        c.drawString(M, yy, "Diagnosis:")
        c.setFont("Helvetica", 9)
        c.setFillColor(INK)
        for ln in _wrap(rx.diagnosis, "Helvetica", 9, content_w - 24 * mm - qr_size):
            c.drawString(M + 24 * mm, yy, ln)
            yy -= 4.5 * mm
        yy -= 0.5 * mm

    # Table
    yy = min(yy, y - qr_size - 8 * mm) - 3 * mm
    c.setStrokeColor(INK)
    c.setLineWidth(0.8)
    c.line(M, yy, W - M, yy)
    yy -= 5 * mm

    cols = [
        ("#", 8 * mm),
        ("Medicine", 62 * mm),
        ("Dosage", 24 * mm),
        ("M-A-E-N", 22 * mm),
        ("Days", 14 * mm),
        ("Qty", 14 * mm),
        ("Refills", content_w - 144 * mm),
    ]
    x = M
    c.setFont("Helvetica-Bold", 8.8)
    for title, w in cols:
        c.drawString(x + 1 * mm, yy, title)
        x += w
    yy -= 2.5 * mm
    c.setStrokeColor(RULE)
    c.line(M, yy, W - M, yy)
    yy -= 5 * mm

    c.setFont("Helvetica", 9)
    if not rx.lines:
        c.drawString(M + 3 * mm, yy, "No medicines")
        yy -= 6 * mm

    for ln in sorted(rx.lines, key=lambda l: l.line_no):
        med = medicines.get(ln.medicine_id)
        name = med.display_name if med else f"Medicine #{ln.medicine_id}"
        if med and med.strength:
            name = f"{name} {med.strength}"
        name_lines = _wrap(name, "Helvetica", 9, cols[1][1] - 2 * mm)
        instr_lines = _wrap(ln.instructions or "", "Helvetica", 8, cols[1][1] - 2 * mm) if ln.instructions else []
        row_h = (len(name_lines) * 4.5 + len(instr_lines) * 4.0 + 2) * mm

        if yy - row_h < M + 20 * mm:
            c.showPage()
            yy = H - M - 10 * mm
            c.setFont("Helvetica", 9)

        slots = freq_to_slots(ln.frequency)
        cells = [
            str(ln.line_no),
            None,
            _safe(ln.dosage),
            "-".join(str(s) for s in slots) if any(slots) else _safe(ln.frequency),
            _safe(ln.duration_days),
            str(ln.quantity),
            str(ln.refills_allowed),
        ]
        x = M
        c.setFillColor(INK)
        for (title, w), val in zip(cols, cells):
            if val is None:
                ty = yy
                c.setFont("Helvetica-Bold", 9)
                for t in name_lines:
                    c.drawString(x + 1 * mm, ty, t)
                    ty -= 4.5 * mm
                c.setFont("Helvetica", 8)
                c.setFillColor(MUTED)
                for t in instr_lines:
                    c.drawString(x + 1 * mm, ty, t)
                    ty -= 4.0 * mm
                c.setFillColor(INK)
                c.setFont("Helvetica", 9)
            else:
                c.drawString(x + 1 * mm, yy, val)
            x += w
        yy -= row_h
        c.setStrokeColor(RULE)
        c.line(M, yy + 2 * mm, W - M, yy + 2 * mm)

    # Notes
    if rx.notes:
        yy -= 4 * mm
        c.setFont("Helvetica-Bold", 10)
        c.drawString(M, yy, "Notes")
        yy -= 5 * mm
        c.setFont("Helvetica", 9)
        for ln in _wrap(rx.notes, "Helvetica", 9, content_w):
            c.drawString(M, yy, ln)
            yy -= 4.5 * mm

    # Footer
    c.setFont("Helvetica-Bold", 8.8)
    c.setFillColor(MUTED)
    c.drawString(M, M, f"Signature: {(rx.signature or '')[:16]}…")
    c.drawRightString(W - M, M, "Prescriber's signature")

    c.showPage()
    c.save()
    return buf.getvalue()
