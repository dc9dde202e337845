"""Template variables for contracts and sponsor emails.

Placeholders use triple braces, ``{{{SPONSOR_NAME}}}``. Plain strings and
block rich text (a list of ``{"_type": "block", "children": [...],
"markDefs": [...]}`` dicts) are both supported; block input is never mutated.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from itertools import count
from typing import Any

from sponsorcrm.domain.models import (
    Conference,
    ContactPerson,
    ContractTemplate,
    EmailTemplate,
    Sponsor,
    Tier,
)

PLACEHOLDER_RE = re.compile(r"\{\{\{([A-Z0-9_]+)\}\}\}")

URL_VARIABLE_KEYS = frozenset({"CONFERENCE_URL", "SPONSOR_PAGE_URL", "PROSPECTUS_URL", "SIGNING_URL"})

CONTRACT_SENT = "contract-sent"
CONTRACT_REMINDER = "contract-reminder"
CONTRACT_SIGNED = "contract-signed"

DEFAULT_CURRENCY = "NOK"
NBSP = "\u00a0"


def text_block(text: str) -> dict[str, Any]:
    return {
        "_type": "block",
        "style": "normal",
        "markDefs": [],
        "children": [{"_type": "span", "text": text, "marks": []}],
    }


def substitute(text: str, variables: Mapping[str, str]) -> str:
    """Replace known placeholders; unknown ones are left in place."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = variables.get(key)
        return match.group(0) if value is None else str(value)

    return PLACEHOLDER_RE.sub(_replace, text)


def substitute_blocks(
    blocks: Sequence[Mapping[str, Any]], variables: Mapping[str, str]
) -> list[dict[str, Any]]:
    urls = sorted(
        (value for key, value in variables.items() if key in URL_VARIABLE_KEYS and value),
        key=len,
        reverse=True,
    )
    keys = count(1)
    result: list[dict[str, Any]] = []
    for block in blocks:
        block = copy.deepcopy(dict(block))
        if block.get("_type") != "block" or not isinstance(block.get("children"), list):
            result.append(block)
            continue

        mark_defs = []
        for mark_def in block.get("markDefs") or []:
            if mark_def.get("_type") == "link" and isinstance(mark_def.get("href"), str):
                mark_def = {**mark_def, "href": substitute(mark_def["href"], variables)}
            mark_defs.append(mark_def)
        link_keys = {md.get("_key") for md in mark_defs if md.get("_type") == "link"}

        children = []
        for child in block["children"]:
            if child.get("_type") != "span" or not isinstance(child.get("text"), str):
                children.append(child)
                continue
            expanded = substitute(child["text"], variables)
            marks = list(child.get("marks") or [])
            segments = _split_by_urls(expanded, urls)
            if link_keys.intersection(marks) or not any(is_url for _, is_url in segments):
                children.append({**child, "text": expanded})
                continue
            # Bare URL values become link annotations.
            for segment, is_url in segments:
                if is_url:
                    link_key = f"tpl-{next(keys)}"
                    mark_defs.append({"_key": link_key, "_type": "link", "href": segment})
                    children.append(
                        {"_type": "span", "_key": f"tpl-{next(keys)}", "text": segment, "marks": [*marks, link_key]}
                    )
                else:
                    children.append(
                        {"_type": "span", "_key": f"tpl-{next(keys)}", "text": segment, "marks": marks}
                    )

        block["markDefs"] = mark_defs
        block["children"] = children
        result.append(block)
    return result


def _split_by_urls(text: str, urls: list[str]) -> list[tuple[str, bool]]:
    if not urls:
        return [(text, False)]
    pattern = re.compile("|".join(re.escape(url) for url in urls))
    segments: list[tuple[str, bool]] = []
    last = 0
    for match in pattern.finditer(text):
        if match.start() > last:
            segments.append((text[last : match.start()], False))
        segments.append((match.group(0), True))
        last = match.end()
    if last < len(text):
        segments.append((text[last:], False))
    return segments or [(text, False)]


def blocks_to_text(blocks: Iterable[Mapping[str, Any]]) -> str:
    paragraphs: list[str] = []
    for block in blocks:
        if block.get("_type") != "block":
            continue
        text = "".join(
            child.get("text", "") for child in block.get("children") or [] if child.get("_type") == "span"
        )
        if block.get("listItem"):
            text = f"• {text}"
        paragraphs.append(text)
    return "\n\n".join(paragraphs)


def format_org_number(value: str | None) -> str | None:
    if not value:
        return None
    digits = re.sub(r"\D", "", value)
    if len(digits) != 9:
        return value
    return NBSP.join([digits[0:3], digits[3:6], digits[6:9]])


def format_amount(value: float, currency: str) -> str:
    grouped = f"{value:,.0f}".replace(",", NBSP)
    return f"{grouped} {currency}"


def format_long_date(value: date) -> str:
    return f"{value.day} {value.strftime('%B')} {value.year}"


def format_date_range(start: date, end: date | None) -> str:
    if end is None or end == start:
        return format_long_date(start)
    if (start.year, start.month) == (end.year, end.month):
        return f"{start.day}-{end.day} {start.strftime('%B')} {start.year}"
    if start.year == end.year:
        return f"{start.day} {start.strftime('%B')} - {end.day} {end.strftime('%B')} {end.year}"
    return f"{format_long_date(start)} - {format_long_date(end)}"


def build_email_variables(
    sponsor_name: str,
    conference: Conference,
    contact_names: str | None = None,
    sender_name: str | None = None,
    tier_name: str | None = None,
    signing_url: str | None = None,
    conference_url: str | None = None,
) -> dict[str, str]:
    variables = {"SPONSOR_NAME": sponsor_name, "CONFERENCE_TITLE": conference.title}
    if contact_names:
        variables["CONTACT_NAMES"] = contact_names
    if conference.organizer:
        variables["ORG_NAME"] = conference.organizer
    if conference.start_date:
        year, month, day = conference.start_date.split("-")
        variables["CONFERENCE_DATE"] = f"{day}/{month}-{year[2:]}"
        variables["CONFERENCE_YEAR"] = year
    if conference.city:
        variables["CONFERENCE_CITY"] = conference.city
    if conference_url:
        variables["CONFERENCE_URL"] = conference_url
        variables["SPONSOR_PAGE_URL"] = f"{conference_url.rstrip('/')}/sponsor"
    if sender_name:
        variables["SENDER_NAME"] = sender_name
    if tier_name:
        variables["TIER_NAME"] = tier_name
    if signing_url:
        variables["SIGNING_URL"] = signing_url
    return variables


def build_contract_variables(
    sponsor: Sponsor,
    conference: Conference,
    today: date,
    contact: ContactPerson | None = None,
    tier: Tier | None = None,
    addons: Sequence[Tier] = (),
    contract_value: float | None = None,
    contract_currency: str | None = None,
    sender_name: str | None = None,
) -> dict[str, str]:
    currency = contract_currency or DEFAULT_CURRENCY
    candidates: dict[str, str | None] = {
        "SPONSOR_NAME": sponsor.name,
        "SPONSOR_ORG_NUMBER": format_org_number(sponsor.org_number),
        "SPONSOR_ADDRESS": sponsor.address,
        "SPONSOR_WEBSITE": sponsor.website,
        "CONTACT_NAME": contact.name if contact else None,
        "CONTACT_EMAIL": contact.email if contact else None,
        "TIER_NAME": tier.title if tier else None,
        "TIER_TAGLINE": tier.tagline if tier else None,
        "ADDONS_LIST": ", ".join(addon.title for addon in addons) or None,
        "CONTRACT_VALUE": format_amount(contract_value, currency) if contract_value is not None else None,
        "CONTRACT_VALUE_NUMBER": f"{contract_value:.0f}" if contract_value is not None else None,
        "CONTRACT_CURRENCY": currency,
        "CONFERENCE_TITLE": conference.title,
        "CONFERENCE_CITY": conference.city,
        "ORG_NAME": conference.organizer,
        "ORG_ORG_NUMBER": format_org_number(conference.organizer_org_number),
        "ORG_EMAIL": conference.sponsor_email,
        "SENDER_NAME": sender_name,
        "TODAY_DATE": format_long_date(today),
    }
    if conference.start_date:
        start = date.fromisoformat(conference.start_date)
        end = date.fromisoformat(conference.end_date) if conference.end_date else None
        candidates["CONFERENCE_DATE"] = format_long_date(start)
        candidates["CONFERENCE_DATES"] = format_date_range(start, end)
        candidates["CONFERENCE_YEAR"] = str(start.year)
    return {key: value for key, value in candidates.items() if value}


def find_best_contract_template(
    templates: Iterable[ContractTemplate],
    tier_id: str | None = None,
    language: str | None = None,
) -> ContractTemplate | None:
    """Score active templates: tier match +4, language match +2, default +1."""
    best: ContractTemplate | None = None
    best_score = -1
    for template in sorted(templates, key=lambda t: not t.is_default):
        if not template.is_active:
            continue
        score = 0
        if tier_id and template.tier_id == tier_id:
            score += 4
        if language and template.language == language:
            score += 2
        if template.is_default:
            score += 1
        if score > best_score:
            best, best_score = template, score
    return best


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    body: str


def render_email(template: EmailTemplate, variables: Mapping[str, str]) -> RenderedEmail:
    return RenderedEmail(
        subject=substitute(template.subject, variables),
        body=blocks_to_text(substitute_blocks(template.body, variables)),
    )


DEFAULT_EMAIL_TEMPLATES: dict[str, EmailTemplate] = {
    CONTRACT_SENT: EmailTemplate(
        slug=CONTRACT_SENT,
        subject="Sponsorship agreement: {{{CONFERENCE_TITLE}}}",
        body=(
            text_block("Hi {{{CONTACT_NAMES}}},"),
            text_block(
                "Thank you for sponsoring {{{CONFERENCE_TITLE}}}. The sponsorship agreement for "
                "{{{SPONSOR_NAME}}} is ready for your signature."
            ),
            text_block("Review and sign the agreement here: {{{SIGNING_URL}}}"),
            text_block("Best regards,\n{{{SENDER_NAME}}}"),
        ),
    ),
    CONTRACT_REMINDER: EmailTemplate(
        slug=CONTRACT_REMINDER,
        subject="Reminder: Sponsorship agreement for {{{CONFERENCE_TITLE}}}",
        body=(
            text_block("Hi {{{CONTACT_NAMES}}},"),
            text_block(
                "This is a friendly reminder that the sponsorship agreement for "
                "{{{SPONSOR_NAME}}} is still waiting for your signature."
            ),
            text_block("Sign the agreement here: {{{SIGNING_URL}}}"),
            text_block("Best regards,\n{{{ORG_NAME}}}"),
        ),
    ),
    CONTRACT_SIGNED: EmailTemplate(
        slug=CONTRACT_SIGNED,
        subject="Signed: Sponsorship agreement for {{{CONFERENCE_TITLE}}}",
        body=(
            text_block("Hi {{{CONTACT_NAMES}}},"),
            text_block(
                "Thank you! The sponsorship agreement for {{{SPONSOR_NAME}}} has been signed. "
                "We look forward to seeing you at {{{CONFERENCE_TITLE}}}."
            ),
            text_block("Best regards,\n{{{ORG_NAME}}}"),
        ),
    ),
}
