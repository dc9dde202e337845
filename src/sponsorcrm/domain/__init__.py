from sponsorcrm.domain.models import (
    Activity,
    ActivityDraft,
    Asset,
    Conference,
    ContactPerson,
    ContractTemplate,
    EmailTemplate,
    Sponsor,
    SponsorForConference,
    Tier,
)
from sponsorcrm.domain.rules import ValidationError

__all__ = [
    "Activity",
    "ActivityDraft",
    "Asset",
    "Conference",
    "ContactPerson",
    "ContractTemplate",
    "EmailTemplate",
    "Sponsor",
    "SponsorForConference",
    "Tier",
    "ValidationError",
]
