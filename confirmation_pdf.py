from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import date
from io import BytesIO
from typing import Optional, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas

from booking_policies import parse_iso_date
from booking_wizard import BookingWizard, Step


@dataclass(frozen=True)
class ConfirmationPdfLine:
    description: str
    amount_text: str


@dataclass(frozen=True)
class ConfirmationPdfArtifact:
    confirmation_code: str
    issued_on: date
    passenger_name: str
    passenger_email: str
    passport: str
    route_label: str
    departure_label: str
    flight_label: str
    flight_summary: str
    lines: Tuple[ConfirmationPdfLine, ...]
    total_text: str
    card_last4: str = ""
    notes: Tuple[str, ...] = ()


def pdf_safe_text(text: str) -> str:
    """
    ReportLab's built-in Type1 fonts have no lira sign; spell the currency out instead.
    """
    return (text or "").replace("₺", "TRY ").replace("→", "->")


def confirmation_code_for(*parts: object) -> str:
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return f"SD{digest[:6].upper()}"


def long_date_label(iso_value: str) -> str:
    if not iso_value:
        return "N/A"
    try:
        d = parse_iso_date(iso_value)
    except ValueError:
        return iso_value
    return f"{d.strftime('%B')} {d.day}, {d.year}"


def build_confirmation_artifact(wizard: BookingWizard, *, issued_on: Optional[date] = None) -> ConfirmationPdfArtifact:
    """
    Collect what the Success step shows into a PDF artifact.

    Raises ValueError when the booking has not reached the Success step.
    """
    state = wizard.state
    if state.step != Step.SUCCESS:
        raise ValueError(f"booking is not confirmed (step={state.step.value})")
    flight = wizard.selected_flight()
    if flight is None:
        raise ValueError("confirmed booking has no selected flight")
    form = state.form
    total = wizard.display_price(wizard.total_price_usd(), show_both=True)
    card_digits = "".join(ch for ch in form.card_number if not ch.isspace())
    passengers_label = f"{form.passengers} adult" + ("s" if form.passengers != 1 else "")
    return ConfirmationPdfArtifact(
        confirmation_code=confirmation_code_for(
            flight.id, form.departure_date, form.first_name, form.last_name, form.passport, form.email
        ),
        issued_on=issued_on or wizard.today(),
        passenger_name=form.passenger_name,
        passenger_email=form.email,
        passport=form.passport,
        route_label=f"{form.route_from} -> {form.route_to}",
        departure_label=long_date_label(form.departure_date),
        flight_label=f"{flight.airline} #{flight.id}  {flight.time}",
        flight_summary=f"{flight.route}, {flight.duration}, {flight.fare_class.value}",
        lines=(ConfirmationPdfLine(description=f"Fare ({passengers_label}, {flight.fare_class.value})", amount_text=total),),
        total_text=total,
        card_last4=card_digits[-4:],
        notes=("Includes taxes and fees.",),
    )


def make_confirmation_pdf_bytes(artifact: ConfirmationPdfArtifact) -> bytes:
    """
    Render a one-page booking confirmation: header band, passenger and flight blocks, fare
    table with total, and notes above the footer.
    """
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    # Uncompressed so tests can find text markers in the bytes.
    c.setPageCompression(0)
    w, h = letter

    margin = 0.6 * inch
    x0 = margin
    y_top = h - margin
    pad = 0.15 * inch

    # Header band
    header_h = 1.2 * inch
    _rect(c, x0, y_top - header_h, w - 2 * margin, header_h, stroke=1, fill=0)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(x0 + pad, y_top - 0.45 * inch, "SkyDrift Airlines")
    c.setFont("Helvetica", 9)
    c.drawString(x0 + pad, y_top - 0.68 * inch, "Booking Confirmation (Demo)")

    box_w = 2.4 * inch
    box_x = w - margin - box_w
    box_y = y_top - header_h + pad
    box_h = header_h - 2 * pad
    _rect(c, box_x, box_y, box_w, box_h, stroke=1, fill=0)
    line_h = 0.22 * inch
    t_y = box_y + box_h - 0.28 * inch
    c.setFont("Helvetica-Bold", 10)
    c.drawString(box_x + pad, t_y, f"Confirmation {artifact.confirmation_code}")
    c.setFont("Helvetica", 9)
    t_y -= line_h
    c.drawString(box_x + pad, t_y, f"Issued: {artifact.issued_on.isoformat()}")
    c.setFont("Helvetica-Bold", 10)
    t_y -= line_h
    _draw_truncated(c, box_x + pad, t_y, f"Total: {pdf_safe_text(artifact.total_text)}", max_width=box_w - 2 * pad)

    y = y_top - header_h - 0.25 * inch

    # Passenger + flight blocks
    left_w = 3.2 * inch
    right_w = (w - 2 * margin) - left_w - 0.15 * inch
    block_h = 1.35 * inch
    right_x = x0 + left_w + 0.15 * inch
    _rect(c, x0, y - block_h, left_w, block_h, stroke=1, fill=0)
    _rect(c, right_x, y - block_h, right_w, block_h, stroke=1, fill=0)

    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y - 0.25 * inch, "PASSENGER")
    c.drawString(right_x + pad, y - 0.25 * inch, "FLIGHT")

    left_max = left_w - 2 * pad
    c.setFont("Helvetica-Bold", 9)
    _draw_truncated(c, x0 + pad, y - 0.50 * inch, artifact.passenger_name or "-", max_width=left_max)
    c.setFont("Helvetica", 8)
    _draw_truncated(c, x0 + pad, y - 0.70 * inch, artifact.passenger_email or "-", max_width=left_max)
    _draw_truncated(c, x0 + pad, y - 0.90 * inch, f"Passport: {artifact.passport or '-'}", max_width=left_max)
    if artifact.card_last4:
        _draw_truncated(c, x0 + pad, y - 1.10 * inch, f"Card ending {artifact.card_last4}", max_width=left_max)

    right_max = right_w - 2 * pad
    c.setFont("Helvetica-Bold", 9)
    _draw_truncated(c, right_x + pad, y - 0.50 * inch, artifact.route_label, max_width=right_max)
    c.setFont("Helvetica", 8)
    _draw_truncated(c, right_x + pad, y - 0.70 * inch, f"Departure: {artifact.departure_label}", max_width=right_max)
    _draw_truncated(c, right_x + pad, y - 0.90 * inch, artifact.flight_label, max_width=right_max)
    _draw_truncated(c, right_x + pad, y - 1.10 * inch, artifact.flight_summary, max_width=right_max)

    y = y - block_h - 0.25 * inch

    # Fare table
    row_h = 0.27 * inch
    table_w = w - 2 * margin
    table_h = 0.55 * inch + row_h * (len(artifact.lines) + 1)
    _rect(c, x0, y - table_h, table_w, table_h, stroke=1, fill=0)
    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y - 0.25 * inch, "DESCRIPTION")
    c.drawRightString(w - margin - pad, y - 0.25 * inch, "AMOUNT")
    _hline(c, x0, w - margin, y - 0.35 * inch)

    row_y = y - 0.55 * inch
    desc_max_w = table_w - 2.2 * inch
    c.setFont("Helvetica", 9)
    for line in artifact.lines:
        _draw_truncated(c, x0 + pad, row_y, line.description, max_width=desc_max_w)
        c.drawRightString(w - margin - pad, row_y, pdf_safe_text(line.amount_text))
        row_y -= row_h
    c.setFont("Helvetica-Bold", 10)
    c.drawString(x0 + pad, row_y, "Total")
    c.drawRightString(w - margin - pad, row_y, pdf_safe_text(artifact.total_text))

    # Notes + footer
    footer_y = margin + 0.35 * inch
    if artifact.notes:
        c.setFont("Helvetica", 8)
        note_y = footer_y + 0.15 * inch + 0.12 * inch * min(3, len(artifact.notes))
        for note in artifact.notes[:3]:
            _draw_truncated(c, x0, note_y, note, max_width=table_w)
            note_y -= 0.12 * inch
    c.setFont("Helvetica", 8)
    c.setFillColor(colors.grey)
    c.drawString(x0, footer_y, "Thank you for choosing SkyDrift Airlines. We look forward to serving you!")
    c.setFillColor(colors.black)

    c.showPage()
    c.save()
    return buf.getvalue()


def _rect(c: canvas.Canvas, x: float, y: float, w: float, h: float, *, stroke: int, fill: int) -> None:
    c.rect(x, y, w, h, stroke=stroke, fill=fill)


def _hline(c: canvas.Canvas, x1: float, x2: float, y: float) -> None:
    c.line(x1, y, x2, y)


def _draw_truncated(c: canvas.Canvas, x: float, y: float, text: str, *, max_width: float) -> None:
    """
    Draw text truncated with ellipsis so it stays inside a box.
    """
    t = (text or "").strip()
    if not t or max_width <= 0:
        return
    if c.stringWidth(t) <= max_width:
        c.drawString(x, y, t)
        return
    # ASCII ellipsis for compatibility with ReportLab's built-in fonts.
    ell = "..."
    lo = 0
    hi = len(t)
    best = ""
    while lo <= hi:
        mid = (lo + hi) // 2
        cand = (t[:mid].rstrip() + ell) if mid < len(t) else t
        if c.stringWidth(cand) <= max_width:
            best = cand
            lo = mid + 1
        else:
            hi = mid - 1
    if best:
        c.drawString(x, y, best)
