from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict
from typing import Any, Protocol
from uuid import uuid4

from sponsorcrm.domain import rules
from sponsorcrm.domain.models import (
    Asset,
    BillingInfo,
    Conference,
    ContactPerson,
    ContractTemplate,
    Sponsor,
    SponsorForConference,
    Tier,
)
from sponsorcrm.domain.stages import (
    ContractStatus,
    InvoiceStatus,
    PipelineStatus,
    SignatureStatus,
    SigningProviderKind,
)
from sponsorcrm.errors import NotFoundError
from sponsorcrm.services.utils import dumps, normalize_tags, utc_now_iso
from sponsorcrm.store.sqlite import SqliteSession, SqliteStore


class _Reader(Protocol):
    def fetch_one(self, query: str, params: Iterable[object] | None = None): ...

    def fetch_all(self, query: str, params: Iterable[object] | None = None): ...


def create_organizer(store: SqliteStore, name: str, email: str | None = None) -> str:
    rules.require(name, "name")
    organizer_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "organizers",
            {"organizer_id": organizer_id, "name": name, "email": email, "created_at": utc_now_iso()},
        )
    return organizer_id


def create_conference(
    store: SqliteStore,
    title: str,
    city: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    organizer: str | None = None,
    organizer_org_number: str | None = None,
    sponsor_email: str | None = None,
    signing_provider: str | None = None,
) -> str:
    rules.require(title, "title")
    rules.parse_date(start_date, "start_date")
    rules.parse_date(end_date, "end_date")
    rules.validate_enum(signing_provider, [p.value for p in SigningProviderKind], "signing_provider")
    now = utc_now_iso()
    conference_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "conferences",
            {
                "conference_id": conference_id,
                "title": title,
                "city": city,
                "start_date": start_date,
                "end_date": end_date,
                "organizer": organizer,
                "organizer_org_number": organizer_org_number,
                "sponsor_email": sponsor_email,
                "signing_provider": signing_provider,
                "created_at": now,
                "updated_at": now,
            },
        )
    return conference_id


def create_tier(
    store: SqliteStore,
    conference_id: str,
    title: str,
    tagline: str | None = None,
    tier_type: str | None = None,
    prices: list[dict[str, Any]] | None = None,
) -> str:
    rules.require(title, "title")
    tier_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "tiers",
            {
                "tier_id": tier_id,
                "conference_id": conference_id,
                "title": title,
                "tagline": tagline,
                "tier_type": tier_type,
                "prices": dumps(prices or []),
                "created_at": utc_now_iso(),
            },
        )
    return tier_id


def create_sponsor(
    store: SqliteStore,
    name: str,
    website: str | None = None,
    contacts: Iterable[ContactPerson] = (),
    org_number: str | None = None,
    address: str | None = None,
    billing: BillingInfo | None = None,
    logo: str | None = None,
    logo_bright: str | None = None,
    logo_asset_id: str | None = None,
) -> str:
    rules.require(name, "name")
    contacts = list(contacts)
    for contact in contacts:
        rules.require(contact.name, "contact_persons.name")
    now = utc_now_iso()
    sponsor_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "sponsors",
            {
                "sponsor_id": sponsor_id,
                "name": name,
                "website": website,
                "logo": logo,
                "logo_bright": logo_bright,
                "logo_asset_id": logo_asset_id,
                "org_number": org_number,
                "address": address,
                "contact_persons": dumps([contact.to_dict() for contact in contacts]),
                "billing": dumps(asdict(billing)) if billing else None,
                "created_at": now,
                "updated_at": now,
            },
        )
    return sponsor_id


def add_to_conference(
    store: SqliteStore,
    sponsor_id: str,
    conference_id: str,
    tier_id: str | None = None,
    contract_value: float | None = None,
    contract_currency: str | None = None,
    assigned_to: str | None = None,
    tags: Iterable[str] | None = None,
    notes: str | None = None,
    contract_asset_id: str | None = None,
) -> str:
    """Enter a sponsor into the pipeline of one conference."""
    get_sponsor(store, sponsor_id)
    get_conference(store, conference_id)
    if contract_value is not None and contract_value < 0:
        raise rules.ValidationError("contract_value must not be negative.", "contract_value")
    now = utc_now_iso()
    sfc_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "sponsor_for_conference",
            {
                "sfc_id": sfc_id,
                "sponsor_id": sponsor_id,
                "conference_id": conference_id,
                "tier_id": tier_id,
                "addon_tier_ids": dumps([]),
                "status": PipelineStatus.PROSPECT.value,
                "contract_status": ContractStatus.NONE.value,
                "signature_status": SignatureStatus.NOT_STARTED.value,
                "invoice_status": InvoiceStatus.NOT_SENT.value,
                "contract_value": contract_value,
                "contract_currency": contract_currency,
                "reminder_count": 0,
                "tags": dumps(normalize_tags(tags)),
                "assigned_to": assigned_to,
                "contract_asset_id": contract_asset_id,
                "notes": notes,
                "created_at": now,
                "updated_at": now,
            },
        )
    return sfc_id


def create_contract_template(
    store: SqliteStore,
    conference_id: str,
    title: str,
    sections: list[dict[str, Any]],
    language: str = "en",
    tier_id: str | None = None,
    currency: str | None = None,
    header_text: str | None = None,
    footer_text: str | None = None,
    terms: list[dict[str, Any]] | None = None,
    is_default: bool = False,
    is_active: bool = True,
) -> str:
    rules.require(title, "title")
    rules.validate_enum(language, ["en", "nb"], "language")
    now = utc_now_iso()
    template_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "contract_templates",
            {
                "template_id": template_id,
                "conference_id": conference_id,
                "tier_id": tier_id,
                "title": title,
                "language": language,
                "currency": currency,
                "header_text": header_text,
                "footer_text": footer_text,
                "sections": dumps(sections),
                "terms": dumps(terms or []),
                "is_default": int(is_default),
                "is_active": int(is_active),
                "created_at": now,
                "updated_at": now,
            },
        )
    return template_id


def create_email_template(
    store: SqliteStore,
    slug: str,
    subject: str,
    body: list[dict[str, Any]],
    conference_id: str | None = None,
) -> str:
    rules.require(slug, "slug")
    rules.require(subject, "subject")
    template_id = str(uuid4())
    with store.session() as session:
        session.insert(
            "email_templates",
            {
                "template_id": template_id,
                "slug": slug,
                "conference_id": conference_id,
                "subject": subject,
                "body": dumps(body),
                "created_at": utc_now_iso(),
            },
        )
    return template_id


def store_asset(
    session: SqliteSession, filename: str, content_type: str, data: bytes, now: str
) -> str:
    asset_id = str(uuid4())
    session.insert(
        "assets",
        {
            "asset_id": asset_id,
            "filename": filename,
            "content_type": content_type,
            "size": len(data),
            "data": data,
            "created_at": now,
        },
    )
    return asset_id


def get_sponsor(reader: _Reader, sponsor_id: str) -> Sponsor:
    row = reader.fetch_one("SELECT * FROM sponsors WHERE sponsor_id = ?", (sponsor_id,))
    if row is None:
        raise NotFoundError(f"Sponsor not found: {sponsor_id}")
    return Sponsor.from_row(row)


def get_conference(reader: _Reader, conference_id: str) -> Conference:
    row = reader.fetch_one("SELECT * FROM conferences WHERE conference_id = ?", (conference_id,))
    if row is None:
        raise NotFoundError(f"Conference not found: {conference_id}")
    return Conference.from_row(row)


def get_tier(reader: _Reader, tier_id: str | None) -> Tier | None:
    if not tier_id:
        return None
    row = reader.fetch_one("SELECT * FROM tiers WHERE tier_id = ?", (tier_id,))
    return Tier.from_row(row) if row else None


def get_record(reader: _Reader, sfc_id: str) -> SponsorForConference:
    row = reader.fetch_one("SELECT * FROM sponsor_for_conference WHERE sfc_id = ?", (sfc_id,))
    if row is None:
        raise NotFoundError(f"Sponsor for conference not found: {sfc_id}")
    return SponsorForConference.from_row(row)


def find_record_by_signature_id(reader: _Reader, signature_id: str) -> SponsorForConference:
    row = reader.fetch_one(
        "SELECT * FROM sponsor_for_conference WHERE signature_id = ?", (signature_id,)
    )
    if row is None:
        raise NotFoundError(f"No contract found for agreement: {signature_id}")
    return SponsorForConference.from_row(row)


def get_asset(reader: _Reader, asset_id: str) -> Asset:
    row = reader.fetch_one("SELECT * FROM assets WHERE asset_id = ?", (asset_id,))
    if row is None:
        raise NotFoundError(f"Asset not found: {asset_id}")
    return Asset(
        asset_id=row["asset_id"],
        filename=row["filename"],
        content_type=row["content_type"],
        data=bytes(row["data"]),
        created_at=row["created_at"],
    )


def get_contract_template(reader: _Reader, template_id: str) -> ContractTemplate:
    row = reader.fetch_one("SELECT * FROM contract_templates WHERE template_id = ?", (template_id,))
    if row is None:
        raise NotFoundError(f"Contract template not found: {template_id}")
    return ContractTemplate.from_row(row)


def list_contract_templates(reader: _Reader, conference_id: str) -> list[ContractTemplate]:
    rows = reader.fetch_all(
        "SELECT * FROM contract_templates WHERE conference_id = ? AND is_active = 1",
        (conference_id,),
    )
    return [ContractTemplate.from_row(row) for row in rows]


def list_records(
    reader: _Reader, conference_id: str | None = None, status: str | None = None
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[str] = []
    if conference_id:
        clauses.append("sfc.conference_id = ?")
        params.append(conference_id)
    if status:
        clauses.append("sfc.status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    query = (
        "SELECT sfc.sfc_id, sponsors.name AS sponsor_name, conferences.title AS conference_title, "
        "sfc.status, sfc.contract_status, sfc.signature_status, sfc.invoice_status, "
        "sfc.contract_value, sfc.contract_currency, sfc.reminder_count, sfc.updated_at "
        "FROM sponsor_for_conference AS sfc "
        "JOIN sponsors ON sfc.sponsor_id = sponsors.sponsor_id "
        "JOIN conferences ON sfc.conference_id = conferences.conference_id "
        f"{where} ORDER BY sponsors.name"
    )
    return [dict(row) for row in reader.fetch_all(query, params)]
