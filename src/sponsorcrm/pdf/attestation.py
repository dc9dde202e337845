"""Signing certificate pages appended to contract PDFs.

Each call adds exactly one page recording the chain of custody of a signing
process: when the contract was sent, when it was signed and, once both
fields are known, when the organizer counter-signed it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC
from io import BytesIO

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.colors import Color
from reportlab.lib.utils import simpleSplit
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from sponsorcrm.services.utils import from_iso

logger = logging.getLogger(__name__)

PAGE_WIDTH = 595.28
PAGE_HEIGHT = 841.89
MARGIN = 50
CONTENT_WIDTH = PAGE_WIDTH - MARGIN * 2

TEAL = Color(0.0, 0.55, 0.6)
TEXT = Color(0.2, 0.2, 0.2)
LABEL = Color(0.4, 0.4, 0.4)
LINE = Color(0.8, 0.8, 0.8)
GREEN = Color(0.15, 0.6, 0.3)

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
DEFAULT_ORGANIZER = "Sponsorship Team"


@dataclass(frozen=True)
class Attestation:
    agreement_name: str
    transaction_id: str
    signer_name: str
    signer_email: str
    signed_at: str | None = None
    organizer_name: str | None = None
    organizer_signed_by: str | None = None
    organizer_signed_at: str | None = None
    contract_sent_at: str | None = None


@dataclass(frozen=True)
class TimelineEvent:
    text: str
    detail: str
    completed: bool = False


def format_timestamp(value: str) -> str:
    try:
        parsed = from_iso(value).astimezone(UTC)
    except ValueError:
        return value
    return f"{parsed:%Y-%m-%d} - {parsed.hour % 12 or 12}:{parsed:%M:%S %p} UTC"


def build_timeline(attestation: Attestation) -> list[TimelineEvent]:
    events: list[TimelineEvent] = []
    # The counter-sign event needs both halves; one without the other is dropped.
    if attestation.organizer_signed_by and attestation.organizer_signed_at:
        events.append(
            TimelineEvent(
                f"Contract counter-signed by {attestation.organizer_signed_by} (organizer)",
                format_timestamp(attestation.organizer_signed_at),
            )
        )
    if attestation.contract_sent_at:
        events.append(
            TimelineEvent(
                f"Contract sent to {attestation.signer_email} for signature",
                format_timestamp(attestation.contract_sent_at),
            )
        )
    if not attestation.signed_at:
        return events
    events.append(
        TimelineEvent(
            f"Document e-signed by {attestation.signer_name} ({attestation.signer_email})",
            f"Signature Date: {format_timestamp(attestation.signed_at)}",
        )
    )
    events.append(
        TimelineEvent("Agreement completed.", format_timestamp(attestation.signed_at), completed=True)
    )
    return events


def render_attestation_page(attestation: Attestation) -> bytes:
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(PAGE_WIDTH, PAGE_HEIGHT))
    c.setTitle(f"{attestation.agreement_name} - Signing Certificate")

    c.setStrokeColor(TEAL)
    c.setLineWidth(2)
    c.rect(25, 25, PAGE_WIDTH - 50, PAGE_HEIGHT - 50)

    y = PAGE_HEIGHT - 70
    c.setFillColor(TEAL)
    c.setFont(FONT_BOLD, 20)
    for line in simpleSplit(attestation.agreement_name, FONT_BOLD, 20, CONTENT_WIDTH):
        c.drawString(MARGIN, y, line)
        y -= 26
    y -= 4

    report_date = (attestation.signed_at or attestation.contract_sent_at or "")[:10]
    c.setFillColor(TEXT)
    c.setFont(FONT, 10)
    c.drawString(MARGIN, y, "Signing Certificate")
    c.drawRightString(PAGE_WIDTH - MARGIN, y, report_date)
    y -= 24

    y = _draw_summary_table(
        c,
        y,
        [
            ("Date:", report_date),
            ("Signer:", f"{attestation.signer_name} ({attestation.signer_email})"),
            ("Status:", "Signed" if attestation.signed_at else "Out for signature"),
            ("Transaction ID:", attestation.transaction_id),
        ],
    )

    c.setFillColor(TEXT)
    c.setFont(FONT_BOLD, 14)
    for line in simpleSplit(f'"{attestation.agreement_name}" History', FONT_BOLD, 14, CONTENT_WIDTH):
        c.drawString(MARGIN, y, line)
        y -= 20
    y -= 10

    for event in build_timeline(attestation):
        c.setFillColor(GREEN if event.completed else TEAL)
        c.circle(MARGIN + 8, y + 3, 4, stroke=0, fill=1)
        c.setFillColor(TEXT)
        c.setFont(FONT, 10)
        for line in simpleSplit(event.text, FONT, 10, CONTENT_WIDTH - 30):
            c.drawString(MARGIN + 22, y, line)
            y -= 14
        c.setFillColor(LABEL)
        c.setFont(FONT, 9)
        c.drawString(MARGIN + 22, y, event.detail)
        y -= 26

    organizer = attestation.organizer_name or DEFAULT_ORGANIZER
    c.setFillColor(LABEL)
    c.setFont(FONT, 8)
    c.drawCentredString(PAGE_WIDTH / 2, 45, f"{organizer} \u2014 Verified Document Signing")

    c.showPage()
    c.save()
    return buffer.getvalue()


def _draw_summary_table(c: canvas.Canvas, top: float, rows: list[tuple[str, str]]) -> float:
    row_height = 24
    label_width = 110
    height = len(rows) * row_height
    c.setStrokeColor(LINE)
    c.setLineWidth(1)
    c.rect(MARGIN, top - height, CONTENT_WIDTH, height)
    c.setLineWidth(0.5)
    for index, (label, value) in enumerate(rows):
        if index:
            c.line(MARGIN, top - index * row_height, MARGIN + CONTENT_WIDTH, top - index * row_height)
        baseline = top - index * row_height - 16
        c.setFillColor(LABEL)
        c.setFont(FONT_BOLD, 9)
        c.drawString(MARGIN + 10, baseline, label)
        c.setFillColor(TEXT)
        c.setFont(FONT, 9)
        c.drawString(MARGIN + label_width, baseline, _truncate(value, CONTENT_WIDTH - label_width - 20))
    return top - height - 40


def _truncate(text: str, max_width: float, size: float = 9) -> str:
    if stringWidth(text, FONT, size) <= max_width:
        return text
    while text and stringWidth(text + "...", FONT, size) > max_width:
        text = text[:-1]
    return text + "..."


def append_attestation_page(document: bytes, attestation: Attestation) -> bytes:
    """Return ``document`` with one certificate page appended.

    Rendering or merge failures are logged and the input is returned unchanged.
    """
    try:
        page = PdfReader(BytesIO(render_attestation_page(attestation))).pages[0]
        writer = PdfWriter()
        for existing in PdfReader(BytesIO(document)).pages:
            writer.add_page(existing)
        writer.add_page(page)
        output = BytesIO()
        writer.write(output)
    except (PyPdfError, ValueError, OSError) as exc:
        logger.error("Failed to append attestation page to %s: %s", attestation.transaction_id, exc)
        return document
    return output.getvalue()
