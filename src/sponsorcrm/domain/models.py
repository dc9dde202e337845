from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def loads_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    return json.loads(value)


@dataclass(frozen=True)
class ContactPerson:
    name: str
    email: str | None = None
    phone: str | None = None
    role: str | None = None
    is_primary: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContactPerson:
        return cls(
            name=data.get("name") or "",
            email=data.get("email"),
            phone=data.get("phone"),
            role=data.get("role"),
            is_primary=bool(data.get("is_primary", data.get("isPrimary", False))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_primary": self.is_primary,
        }


@dataclass(frozen=True)
class BillingInfo:
    email: str | None = None
    reference: str | None = None
    comments: str | None = None


@dataclass(frozen=True)
class Sponsor:
    sponsor_id: str
    name: str
    website: str | None
    logo: str | None
    logo_bright: str | None
    logo_asset_id: str | None
    org_number: str | None
    address: str | None
    contact_persons: tuple[ContactPerson, ...]
    billing: BillingInfo | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Sponsor:
        billing = loads_json(row["billing"], None)
        return cls(
            sponsor_id=row["sponsor_id"],
            name=row["name"],
            website=row["website"],
            logo=row["logo"],
            logo_bright=row["logo_bright"],
            logo_asset_id=row["logo_asset_id"],
            org_number=row["org_number"],
            address=row["address"],
            contact_persons=tuple(
                ContactPerson.from_dict(item) for item in loads_json(row["contact_persons"], [])
            ),
            billing=BillingInfo(**billing) if billing else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def primary_contact(self) -> ContactPerson | None:
        for contact in self.contact_persons:
            if contact.is_primary:
                return contact
        return None


@dataclass(frozen=True)
class Conference:
    conference_id: str
    title: str
    city: str | None
    start_date: str | None
    end_date: str | None
    organizer: str | None
    organizer_org_number: str | None
    sponsor_email: str | None
    signing_provider: str | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Conference:
        return cls(
            conference_id=row["conference_id"],
            title=row["title"],
            city=row["city"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            organizer=row["organizer"],
            organizer_org_number=row["organizer_org_number"],
            sponsor_email=row["sponsor_email"],
            signing_provider=row["signing_provider"],
        )


@dataclass(frozen=True)
class Tier:
    tier_id: str
    conference_id: str
    title: str
    tagline: str | None
    tier_type: str | None
    prices: tuple[dict[str, Any], ...]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Tier:
        return cls(
            tier_id=row["tier_id"],
            conference_id=row["conference_id"],
            title=row["title"],
            tagline=row["tagline"],
            tier_type=row["tier_type"],
            prices=tuple(loads_json(row["prices"], [])),
        )


@dataclass(frozen=True)
class SponsorForConference:
    sfc_id: str
    sponsor_id: str
    conference_id: str
    tier_id: str | None
    addon_tier_ids: tuple[str, ...]
    status: str
    contract_status: str
    signature_status: str
    invoice_status: str
    contract_value: float | None
    contract_currency: str | None
    signer_name: str | None
    signer_email: str | None
    signing_url: str | None
    signature_id: str | None
    reminder_count: int
    tags: tuple[str, ...]
    assigned_to: str | None
    contract_template_id: str | None
    contract_asset_id: str | None
    contact_initiated_at: str | None
    contract_sent_at: str | None
    contract_signed_at: str | None
    contract_signed_by: str | None
    organizer_signed_by: str | None
    organizer_signed_at: str | None
    invoice_sent_at: str | None
    invoice_paid_at: str | None
    notes: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SponsorForConference:
        values = dict(row)
        values["addon_tier_ids"] = tuple(loads_json(values.get("addon_tier_ids"), []))
        values["tags"] = tuple(loads_json(values.get("tags"), []))
        values["reminder_count"] = int(values.get("reminder_count") or 0)
        return cls(**values)


@dataclass(frozen=True)
class ActivityDraft:
    """An activity not yet written; committed in the same write as the change it describes."""

    activity_type: str
    description: str
    old_value: str | None = None
    new_value: str | None = None
    additional_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Activity:
    activity_id: str
    sfc_id: str
    activity_type: str
    description: str
    metadata: dict[str, Any]
    created_by: str
    created_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Activity:
        return cls(
            activity_id=row["activity_id"],
            sfc_id=row["sfc_id"],
            activity_type=row["activity_type"],
            description=row["description"],
            metadata=loads_json(row["metadata"], {}),
            created_by=row["created_by"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class Asset:
    asset_id: str
    filename: str
    content_type: str
    data: bytes
    created_at: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class TemplateSection:
    heading: str
    body: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class ContractTemplate:
    template_id: str
    conference_id: str
    tier_id: str | None
    title: str
    language: str
    currency: str | None
    header_text: str | None
    footer_text: str | None
    sections: tuple[TemplateSection, ...]
    terms: tuple[dict[str, Any], ...]
    is_default: bool
    is_active: bool

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ContractTemplate:
        sections = tuple(
            TemplateSection(heading=item.get("heading") or "", body=tuple(item.get("body") or []))
            for item in loads_json(row["sections"], [])
        )
        return cls(
            template_id=row["template_id"],
            conference_id=row["conference_id"],
            tier_id=row["tier_id"],
            title=row["title"],
            language=row["language"],
            currency=row["currency"],
            header_text=row["header_text"],
            footer_text=row["footer_text"],
            sections=sections,
            terms=tuple(loads_json(row["terms"], [])),
            is_default=bool(row["is_default"]),
            is_active=bool(row["is_active"]),
        )


@dataclass(frozen=True)
class EmailTemplate:
    slug: str
    subject: str
    body: tuple[dict[str, Any], ...]
    conference_id: str | None = None
