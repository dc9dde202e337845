from __future__ import annotations

from collections.abc import Mapping
from io import BytesIO
from typing import Any

from reportlab.lib.colors import Color
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from sponsorcrm.domain.models import ContractTemplate
from sponsorcrm.pdf.attestation import MARGIN, PAGE_HEIGHT, PAGE_WIDTH
from sponsorcrm.services.templates import substitute, substitute_blocks

CONTENT_WIDTH = PAGE_WIDTH - MARGIN * 2
BOTTOM = 70
FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
TEXT = Color(0.2, 0.2, 0.2)
MUTED = Color(0.4, 0.4, 0.4)


class _Writer:
    """Top-down text cursor that starts a new page when it runs out of room."""

    def __init__(self, c: canvas.Canvas, header: str, footer: str) -> None:
        self.c = c
        self.header = header
        self.footer = footer
        self.page = 0
        self.y = 0.0
        self._start_page()

    def _start_page(self) -> None:
        self.page += 1
        self.y = PAGE_HEIGHT - MARGIN
        if self.header:
            self.c.setFillColor(MUTED)
            self.c.setFont(FONT, 8)
            self.c.drawString(MARGIN, PAGE_HEIGHT - 30, self.header)
        self.c.setFillColor(MUTED)
        self.c.setFont(FONT, 8)
        footer = f"{self.footer}    Page {self.page}" if self.footer else f"Page {self.page}"
        self.c.drawCentredString(PAGE_WIDTH / 2, 30, footer)

    def ensure(self, height: float) -> None:
        if self.y - height < BOTTOM:
            self.c.showPage()
            self._start_page()

    def text(self, value: str, size: float = 10, bold: bool = False, indent: float = 0, gap: float = 6) -> None:
        font = FONT_BOLD if bold else FONT
        leading = size * 1.4
        for paragraph in value.split("\n"):
            lines = simpleSplit(paragraph, font, size, CONTENT_WIDTH - indent) or [""]
            for line in lines:
                self.ensure(leading)
                self.c.setFillColor(TEXT)
                self.c.setFont(font, size)
                self.c.drawString(MARGIN + indent, self.y, line)
                self.y -= leading
        self.y -= gap

    def rows(self, rows: list[tuple[str, str | None]], label_width: float = 120) -> None:
        for label, value in rows:
            if not value:
                continue
            lines = simpleSplit(value, FONT, 10, CONTENT_WIDTH - label_width)
            self.ensure(14 * len(lines))
            self.c.setFillColor(MUTED)
            self.c.setFont(FONT_BOLD, 9)
            self.c.drawString(MARGIN, self.y, label)
            self.c.setFillColor(TEXT)
            self.c.setFont(FONT, 10)
            for line in lines:
                self.c.drawString(MARGIN + label_width, self.y, line)
                self.y -= 14
        self.y -= 8

    def blocks(self, blocks: list[dict[str, Any]]) -> None:
        numbered = 0
        for block in blocks:
            if block.get("_type") != "block":
                continue
            text = "".join(
                child.get("text", "") for child in block.get("children") or [] if child.get("_type") == "span"
            )
            style = block.get("style") or "normal"
            if style in {"h2", "h3", "h4"}:
                self.text(text, size=11, bold=True, gap=4)
                continue
            list_item = block.get("listItem")
            if list_item == "number":
                numbered += 1
                self.text(f"{numbered}. {text}", indent=16, gap=2)
            elif list_item:
                self.text(f"• {text}", indent=16, gap=2)
            else:
                numbered = 0
                self.text(text)


def render_contract(
    template: ContractTemplate,
    variables: Mapping[str, str],
    title: str | None = None,
) -> bytes:
    """Render a contract template with its variables substituted into a PDF."""
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(PAGE_WIDTH, PAGE_HEIGHT))
    header = substitute(template.header_text or "", variables)
    footer = substitute(template.footer_text or "", variables)
    title = title or substitute(template.title, variables)
    c.setTitle(title)
    c.setAuthor(header or variables.get("ORG_NAME", ""))
    w = _Writer(c, header, footer)

    w.text(title, size=18, bold=True, gap=14)

    w.text("Organizer", size=11, bold=True, gap=2)
    w.rows(
        [
            ("Name", variables.get("ORG_NAME")),
            ("Org. No.", variables.get("ORG_ORG_NUMBER")),
            ("Address", variables.get("ORG_ADDRESS")),
            ("Email", variables.get("ORG_EMAIL")),
        ]
    )
    w.text("Partner", size=11, bold=True, gap=2)
    w.rows(
        [
            ("Name", variables.get("SPONSOR_NAME")),
            ("Org. No.", variables.get("SPONSOR_ORG_NUMBER")),
            ("Address", variables.get("SPONSOR_ADDRESS")),
            ("Liaison", variables.get("CONTACT_NAME")),
            ("Email", variables.get("CONTACT_EMAIL")),
        ]
    )
    w.text("Event Details", size=11, bold=True, gap=2)
    w.rows(
        [
            ("Event", variables.get("CONFERENCE_TITLE")),
            ("Date(s)", variables.get("CONFERENCE_DATES") or variables.get("CONFERENCE_DATE")),
            ("City", variables.get("CONFERENCE_CITY")),
        ]
    )
    w.text("Selected Sponsorship Package", size=11, bold=True, gap=2)
    w.rows(
        [
            ("Partnership Level", variables.get("TIER_NAME")),
            ("Total Fee", variables.get("CONTRACT_VALUE")),
            ("Add-ons", variables.get("ADDONS_LIST")),
        ]
    )

    for section in template.sections:
        w.text(substitute(section.heading, variables).upper(), size=11, bold=True, gap=4)
        w.blocks(substitute_blocks(section.body, variables))

    if template.terms:
        w.text("Terms and Conditions", size=11, bold=True, gap=4)
        w.blocks(substitute_blocks(template.terms, variables))

    _signature_lines(w, variables)
    c.showPage()
    c.save()
    return buffer.getvalue()


def _signature_lines(w: _Writer, variables: Mapping[str, str]) -> None:
    w.ensure(110)
    w.y -= 40
    column = CONTENT_WIDTH * 0.45
    parties = [
        (0, variables.get("ORG_NAME", "Organizer")),
        (CONTENT_WIDTH * 0.55, variables.get("SPONSOR_NAME", "Partner")),
    ]
    for offset, party in parties:
        x = MARGIN + offset
        w.c.setStrokeColor(TEXT)
        w.c.setLineWidth(0.5)
        w.c.line(x, w.y, x + column, w.y)
        w.c.setFillColor(MUTED)
        w.c.setFont(FONT, 9)
        w.c.drawString(x, w.y - 12, f"Signature, {party}")
        w.c.line(x, w.y - 40, x + column, w.y - 40)
        w.c.drawString(x, w.y - 52, "Date")
    w.y -= 60
